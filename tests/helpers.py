"""Test doubles and builders shared across the suite."""

import time
from unittest.mock import AsyncMock

import httpx

from graphgate.auth.manager import CredentialManager
from graphgate.auth.models.accounts import Account, CredentialRecord, ScopeTier, TokenCache
from graphgate.auth.scopes import ScopeTiers
from graphgate.auth.store import TokenStore

ACCOUNT_ID = "oid-1.tid-1"
SCOPE_TIERS = ScopeTiers(
    base=("User.Read", "Files.ReadWrite", "offline_access"),
    expanded=("User.Read", "Files.ReadWrite", "Sites.Read.All", "offline_access"),
)


class MemoryTokenStore(TokenStore):
    """Keeps the cache in memory and counts saves."""

    def __init__(self, cache: TokenCache | None = None):
        self.cache = cache or TokenCache()
        self.saves = 0

    def load(self) -> TokenCache:
        return self.cache.model_copy(deep=True)

    def save(self, cache: TokenCache) -> None:
        self.cache = cache.model_copy(deep=True)
        self.saves += 1


def make_record(
    account_id: str = ACCOUNT_ID,
    tier: ScopeTier = ScopeTier.BASE,
    access_token: str = "access-base",
    refresh_token: str | None = "refresh-base",
    expires_in: float = 3600,
) -> CredentialRecord:
    return CredentialRecord(
        home_account_id=account_id,
        tier=tier,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=time.time() + expires_in,
    )


def signed_in_cache(*records: CredentialRecord) -> TokenCache:
    records = records or (make_record(),)
    account_ids = []
    for record in records:
        if record.home_account_id not in account_ids:
            account_ids.append(record.home_account_id)
    return TokenCache(
        accounts=[Account(home_account_id=account_id) for account_id in account_ids],
        records=list(records),
        selected_account_id=account_ids[-1],
    )


async def make_manager(
    cache: TokenCache | None = None, **kwargs
) -> tuple[CredentialManager, MemoryTokenStore, AsyncMock]:
    store = MemoryTokenStore(cache)
    token_client = AsyncMock()
    manager = CredentialManager(
        store,
        token_client,
        SCOPE_TIERS,
        client_id="client-123",
        authority="https://login.example.com/common",
        refresh_backoff=0,
        **kwargs,
    )
    await manager.load()
    return manager, store, token_client


class FakeCredentials:
    """Stands in for CredentialManager in dispatcher tests."""

    def __init__(self, expand_result: bool = True, expanded: bool = False):
        self.tokens = ["token-1", "token-2", "token-3"]
        self.issued = 0
        self.refreshes = 0
        self.expansions = 0
        self.expand_result = expand_result
        self.expanded = expanded
        self.uses_external_token = False

    async def get_token(self, force_refresh: bool = False) -> str:
        if force_refresh:
            self.refreshes += 1
            self.issued += 1
        return self.tokens[self.issued]

    def has_expanded_scope_permissions(self) -> bool:
        return self.expanded

    async def expand_scope_tier(self) -> bool:
        self.expansions += 1
        if self.expand_result:
            self.expanded = True
            self.issued += 1
        return self.expand_result


class GraphStub:
    """Scripted upstream for httpx.MockTransport.

    Responses are queued per (method, path) and every request is recorded.
    A queued exception is raised instead of answering.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], list[httpx.Response]] = {}

    def add(self, method: str, path: str, *responses: httpx.Response | Exception) -> None:
        self.routes.setdefault((method, path), []).extend(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"error": {"code": "itemNotFound"}})
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == method and request.url.path == path
        ]
