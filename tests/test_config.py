from pathlib import Path

import pytest

from graphgate.config import (
    DEFAULT_CLIENT_ID,
    DEFAULT_GRAPH_BASE_URL,
    Settings,
)


class TestSettingsFromEnv:
    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for name in (
            "GRAPHGATE_CLIENT_ID",
            "GRAPHGATE_TENANT_ID",
            "GRAPHGATE_CLIENT_SECRET",
            "GRAPHGATE_ORG_MODE",
            "GRAPHGATE_READ_ONLY",
            "GRAPHGATE_ENABLED_TOOLS",
            "GRAPHGATE_CATALOG",
            "GRAPHGATE_TOKEN_STORE",
            "GRAPHGATE_CACHE_DIR",
            "GRAPHGATE_HTTP_TIMEOUT",
            "GRAPHGATE_ACCESS_TOKEN",
            "GRAPHGATE_GRAPH_BASE_URL",
            "GRAPHGATE_AUTHORITY_HOST",
        ):
            monkeypatch.delenv(name, raising=False)

    def test_defaults(self):
        # Act
        settings = Settings.from_env(dotenv=False)

        # Assert
        assert settings.client_id == DEFAULT_CLIENT_ID
        assert settings.graph_base_url == DEFAULT_GRAPH_BASE_URL
        assert settings.authority == "https://login.microsoftonline.com/common"
        assert settings.token_store == "auto"
        assert not settings.org_mode
        assert settings.access_token is None

    def test_environment_overrides(self, monkeypatch):
        # Arrange
        monkeypatch.setenv("GRAPHGATE_CLIENT_ID", "client-123")
        monkeypatch.setenv("GRAPHGATE_TENANT_ID", "contoso.onmicrosoft.com")
        monkeypatch.setenv("GRAPHGATE_ORG_MODE", "true")
        monkeypatch.setenv("GRAPHGATE_READ_ONLY", "1")
        monkeypatch.setenv("GRAPHGATE_ENABLED_TOOLS", "mail|calendar")
        monkeypatch.setenv("GRAPHGATE_CATALOG", "/etc/graphgate/catalog.json")
        monkeypatch.setenv("GRAPHGATE_HTTP_TIMEOUT", "12.5")

        # Act
        settings = Settings.from_env(dotenv=False)

        # Assert
        assert settings.client_id == "client-123"
        assert settings.authority == "https://login.microsoftonline.com/contoso.onmicrosoft.com"
        assert settings.org_mode
        assert settings.read_only
        assert settings.enabled_tools == "mail|calendar"
        assert settings.catalog_path == Path("/etc/graphgate/catalog.json")
        assert settings.http_timeout == 12.5

    def test_invalid_timeout_raises(self, monkeypatch):
        # Arrange
        monkeypatch.setenv("GRAPHGATE_HTTP_TIMEOUT", "soon")

        # Act & Assert
        with pytest.raises(ValueError):
            Settings.from_env(dotenv=False)
