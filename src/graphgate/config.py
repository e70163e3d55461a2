"""Process configuration from the environment (and an optional .env file)."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_CLIENT_ID = "084a3e9f-a9f4-43f7-89f9-d229cf97853e"
DEFAULT_TENANT_ID = "common"
DEFAULT_AUTHORITY_HOST = "https://login.microsoftonline.com"
DEFAULT_GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
DEFAULT_CACHE_DIR = Path.home() / ".graphgate"


def _flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes")


@dataclass
class Settings:
    client_id: str = DEFAULT_CLIENT_ID
    tenant_id: str = DEFAULT_TENANT_ID
    client_secret: str | None = None
    authority_host: str = DEFAULT_AUTHORITY_HOST
    graph_base_url: str = DEFAULT_GRAPH_BASE_URL
    org_mode: bool = False
    read_only: bool = False
    enabled_tools: str | None = None
    catalog_path: Path | None = None
    token_store: str = "auto"  # auto | keyring | file
    cache_dir: Path = field(default_factory=lambda: DEFAULT_CACHE_DIR)
    http_timeout: float = 30.0
    access_token: str | None = None

    @property
    def authority(self) -> str:
        return f"{self.authority_host.rstrip('/')}/{self.tenant_id}"

    @classmethod
    def from_env(cls, dotenv: bool = True) -> Settings:
        """Build settings from GRAPHGATE_* environment variables.

        Raises:
            ValueError: If a numeric variable cannot be parsed
        """
        if dotenv:
            load_dotenv()

        catalog = os.getenv("GRAPHGATE_CATALOG")
        cache_dir = os.getenv("GRAPHGATE_CACHE_DIR")
        timeout = os.getenv("GRAPHGATE_HTTP_TIMEOUT")

        return cls(
            client_id=os.getenv("GRAPHGATE_CLIENT_ID") or DEFAULT_CLIENT_ID,
            tenant_id=os.getenv("GRAPHGATE_TENANT_ID") or DEFAULT_TENANT_ID,
            client_secret=os.getenv("GRAPHGATE_CLIENT_SECRET") or None,
            authority_host=os.getenv("GRAPHGATE_AUTHORITY_HOST") or DEFAULT_AUTHORITY_HOST,
            graph_base_url=os.getenv("GRAPHGATE_GRAPH_BASE_URL") or DEFAULT_GRAPH_BASE_URL,
            org_mode=_flag("GRAPHGATE_ORG_MODE"),
            read_only=_flag("GRAPHGATE_READ_ONLY"),
            enabled_tools=os.getenv("GRAPHGATE_ENABLED_TOOLS") or None,
            catalog_path=Path(catalog) if catalog else None,
            token_store=os.getenv("GRAPHGATE_TOKEN_STORE") or "auto",
            cache_dir=Path(cache_dir) if cache_dir else DEFAULT_CACHE_DIR,
            http_timeout=float(timeout) if timeout else 30.0,
            access_token=os.getenv("GRAPHGATE_ACCESS_TOKEN") or None,
        )
