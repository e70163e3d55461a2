"""Wires settings into a running gateway."""

from __future__ import annotations

import logging
from typing import Self

import httpx

from graphgate.auth.manager import CredentialManager
from graphgate.auth.scopes import ScopeTiers
from graphgate.auth.services.tokens import TokenEndpointClient
from graphgate.auth.store import TokenStore, create_token_store
from graphgate.catalog import filter_operations, load_catalog
from graphgate.client.dispatcher import RequestDispatcher, unroutable_operations
from graphgate.client.sessions import SessionAffinityCache
from graphgate.config import Settings
from graphgate.tools.auth import AuthTools
from graphgate.tools.graph import register_graph_tools
from graphgate.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class Gateway:
    """Owns the credential manager, dispatcher and tool registry of a process."""

    def __init__(
        self,
        settings: Settings,
        credentials: CredentialManager,
        http_client: httpx.AsyncClient,
        dispatcher: RequestDispatcher,
        registry: ToolRegistry,
        auth_tools: AuthTools,
    ):
        self.settings = settings
        self.credentials = credentials
        self.dispatcher = dispatcher
        self.registry = registry
        self.auth_tools = auth_tools
        self._http_client = http_client

    @classmethod
    async def create(cls, settings: Settings, store: TokenStore | None = None) -> Self:
        """Build and load a gateway.

        Raises:
            CatalogError: If the catalog cannot be loaded or filtered
            TokenStoreError: If the persisted cache is unreadable
        """
        operations = load_catalog(settings.catalog_path)
        scope_tiers = ScopeTiers.from_operations(operations)
        tools = filter_operations(
            operations,
            read_only=settings.read_only,
            enabled_tools=settings.enabled_tools,
        )
        for operation in unroutable_operations(tools):
            logger.warning(
                f"Operation {operation.alias} ({operation.path}) is outside every "
                f"resource-scoped prefix and has no resource parameter"
            )

        if store is None:
            store = create_token_store(settings.token_store, settings.cache_dir)

        credentials = CredentialManager(
            store,
            TokenEndpointClient(timeout=settings.http_timeout),
            scope_tiers,
            client_id=settings.client_id,
            authority=settings.authority,
            client_secret=settings.client_secret,
            org_mode=settings.org_mode,
        )
        await credentials.load()
        if settings.access_token:
            credentials.accept_external_token(settings.access_token)

        http_client = httpx.AsyncClient(timeout=settings.http_timeout)
        sessions = SessionAffinityCache(
            http_client, settings.graph_base_url, timeout=settings.http_timeout
        )
        dispatcher = RequestDispatcher(
            credentials,
            sessions,
            http_client,
            settings.graph_base_url,
            timeout=settings.http_timeout,
        )

        registry = ToolRegistry()
        auth_tools = AuthTools(credentials, dispatcher)
        auth_tools.register(registry)
        register_graph_tools(registry, dispatcher, tools)

        logger.info(
            f"Gateway ready with {len(tools)} of {len(operations)} operations"
            f"{' (read-only)' if settings.read_only else ''}"
        )
        return cls(settings, credentials, http_client, dispatcher, registry, auth_tools)

    async def close(self) -> None:
        """Close workbook sessions and release HTTP clients."""
        await self.auth_tools.close()
        results = await self.dispatcher.close_all_sessions()
        for result in results:
            if not result.success:
                logger.warning(result.message)
        await self._http_client.aclose()
        await self.credentials.close()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
