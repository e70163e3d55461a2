"""Credential lifecycle across accounts and scope tiers.

The CredentialManager is the only component that mutates credential records.
One instance exists per process and is handed to the dispatcher and the tool
layer explicitly.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from functools import partial

from graphgate.auth.models.accounts import (
    Account,
    CredentialRecord,
    ScopeTier,
    TokenCache,
)
from graphgate.auth.models.tokens import RefreshTokenRequest, TokenResponse
from graphgate.auth.primitives.claims import account_from_id_token
from graphgate.auth.scopes import ScopeTiers
from graphgate.auth.services.device_flow import DeviceCodeFlow, InstructionsCallback
from graphgate.auth.services.tokens import TokenEndpointClient
from graphgate.auth.store import TokenStore
from graphgate.errors import AuthRefreshFailed, NoCredential, TokenNetworkError

logger = logging.getLogger(__name__)

# OAuth errors meaning the user has to consent again interactively
CONSENT_ERRORS = {"interaction_required", "consent_required", "invalid_grant"}
CONSENT_ERROR_CODES = ("AADSTS65001", "AADSTS50076", "AADSTS50079")


class CredentialManager:
    """Acquires, persists, selects and upgrades OAuth2 credentials.

    Mutations (refresh, tier expansion, account changes) are serialized per
    account. Concurrent refreshes for the same account share one upstream
    call: later callers await the in-flight refresh instead of starting their
    own.
    """

    def __init__(
        self,
        store: TokenStore,
        token_client: TokenEndpointClient,
        scope_tiers: ScopeTiers,
        *,
        client_id: str,
        authority: str,
        client_secret: str | None = None,
        org_mode: bool = False,
        refresh_backoff: float = 1.0,
    ):
        """Initialize credential manager.

        Args:
            store: Durable storage for the credential cache
            token_client: Client for the identity provider's endpoints
            scope_tiers: Scopes requested for each tier
            client_id: Application (client) id registered with the provider
            authority: Authority URL, e.g. https://login.microsoftonline.com/common
            client_secret: Optional secret for confidential clients
            org_mode: Request the expanded tier from the first login
            refresh_backoff: Seconds to wait before retrying a failed refresh
        """
        self._store = store
        self._token_client = token_client
        self.scope_tiers = scope_tiers
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_endpoint = f"{authority.rstrip('/')}/oauth2/v2.0/token"
        self.refresh_backoff = refresh_backoff

        self._device_flow = DeviceCodeFlow(
            token_client,
            device_code_endpoint=f"{authority.rstrip('/')}/oauth2/v2.0/devicecode",
            token_endpoint=self.token_endpoint,
            client_id=client_id,
        )

        self._cache = TokenCache()
        self._external_token: str | None = None
        self._requested_tier = ScopeTier.EXPANDED if org_mode else ScopeTier.BASE

        self._account_locks: dict[str, asyncio.Lock] = {}
        self._refreshes: dict[str, asyncio.Task[CredentialRecord]] = {}
        self._interactive_lock = asyncio.Lock()

    # ================================
    # Persistence
    # ================================

    async def load(self) -> None:
        """Load persisted accounts. TokenStoreError here is fatal at startup."""
        self._cache = await asyncio.to_thread(self._store.load)
        logger.debug(f"Loaded {len(self._cache.accounts)} cached account(s)")

    async def _persist(self) -> None:
        snapshot = self._cache.model_copy(deep=True)
        await asyncio.to_thread(self._store.save, snapshot)

    # ================================
    # State
    # ================================

    @property
    def selected_account_id(self) -> str | None:
        return self._cache.selected_account_id

    @property
    def uses_external_token(self) -> bool:
        return self._external_token is not None

    @property
    def current_tier(self) -> ScopeTier:
        """Tier the next interactive grant requests. Never moves back to BASE."""
        if self.has_expanded_scope_permissions():
            return ScopeTier.EXPANDED
        return self._requested_tier

    def has_expanded_scope_permissions(self) -> bool:
        """True if the selected account holds an expanded-tier record."""
        account_id = self._cache.selected_account_id
        if account_id is None:
            return False
        return self._cache.find_record(account_id, ScopeTier.EXPANDED) is not None

    def _active_record(self, account_id: str) -> CredentialRecord | None:
        """Expanded record if the account has one, otherwise the base record."""
        return self._cache.find_record(
            account_id, ScopeTier.EXPANDED
        ) or self._cache.find_record(account_id, ScopeTier.BASE)

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        return self._account_locks.setdefault(account_id, asyncio.Lock())

    def _put_record(self, record: CredentialRecord) -> None:
        self._cache.records = [
            existing
            for existing in self._cache.records
            if not (
                existing.home_account_id == record.home_account_id
                and existing.tier == record.tier
            )
        ]
        self._cache.records.append(record)

    def _put_account(self, account: Account) -> None:
        """Insert or replace the account, moving it to most-recent position."""
        self._cache.accounts = [
            existing
            for existing in self._cache.accounts
            if existing.home_account_id != account.home_account_id
        ]
        self._cache.accounts.append(account)

    # ================================
    # Acquisition
    # ================================

    async def acquire_interactive(
        self,
        on_instructions: InstructionsCallback,
        tier: ScopeTier | None = None,
    ) -> CredentialRecord:
        """Run a device code grant and cache the result.

        The new account becomes the selected account.

        Args:
            on_instructions: Invoked once with the verification URL and code
            tier: Tier to request; defaults to the current tier

        Raises:
            AuthTimeout: If the device code expired
            AuthDenied: If the user declined
        """
        async with self._interactive_lock:
            tier = self.current_tier if tier is None else max(tier, self.current_tier)
            scopes = self.scope_tiers.for_tier(tier)
            logger.info(f"Starting device code login for {tier.name.lower()} tier")

            response = await self._device_flow.run(scopes, on_instructions)
            account = account_from_id_token(response.id_token)

            async with self._lock_for(account.home_account_id):
                record = response.to_record(account.home_account_id, tier)
                self._put_account(account)
                self._put_record(record)
                self._cache.selected_account_id = account.home_account_id
                self._external_token = None
                await self._persist()

            logger.info(f"Signed in as {account.username or account.home_account_id}")
            return record

    def accept_external_token(self, token: str) -> None:
        """Use a caller-supplied token verbatim. It is never refreshed."""
        self._external_token = token
        logger.info("Using externally supplied access token")

    # ================================
    # Token access
    # ================================

    async def get_token(self, force_refresh: bool = False) -> str:
        """Return a valid access token for the selected account.

        Args:
            force_refresh: Refresh even if the cached token looks valid

        Raises:
            NoCredential: If no account is cached
            AuthRefreshFailed: If the silent refresh failed
        """
        if self._external_token is not None:
            return self._external_token

        account_id = self._cache.selected_account_id
        if account_id is None:
            raise NoCredential("No account is signed in")

        record = self._active_record(account_id)
        if record is None:
            raise NoCredential(f"No cached credential for account {account_id}")

        if not force_refresh and record.is_valid():
            return record.access_token

        record = await self._refresh(account_id)
        return record.access_token

    async def _refresh(self, account_id: str) -> CredentialRecord:
        """Refresh the account's active record, joining any in-flight refresh."""
        task = self._refreshes.get(account_id)
        if task is None:
            task = asyncio.create_task(self._refresh_record(account_id))
            self._refreshes[account_id] = task
            task.add_done_callback(partial(self._forget_refresh, account_id))
        else:
            logger.debug(f"Joining in-flight refresh for {account_id}")
        return await asyncio.shield(task)

    def _forget_refresh(
        self, account_id: str, task: asyncio.Task[CredentialRecord]
    ) -> None:
        if self._refreshes.get(account_id) is task:
            del self._refreshes[account_id]

    async def _refresh_record(self, account_id: str) -> CredentialRecord:
        async with self._lock_for(account_id):
            record = self._active_record(account_id)
            if record is None:
                raise NoCredential(f"No cached credential for account {account_id}")
            if not record.can_refresh():
                raise AuthRefreshFailed("Cached credential has no refresh token")

            response = await self._request_refresh(
                record.refresh_token, self.scope_tiers.for_tier(record.tier)
            )
            if not response.is_success():
                raise AuthRefreshFailed(
                    f"Token refresh rejected: {response.describe_error()}"
                )
            if self._cache.find_account(account_id) is None:
                raise NoCredential(f"Account {account_id} was signed out during refresh")

            refreshed = response.to_record(account_id, record.tier, record.refresh_token)
            self._put_record(refreshed)
            await self._persist()

        logger.info(f"Refreshed access token for {account_id}")
        return refreshed

    async def _request_refresh(
        self, refresh_token: str, scopes: tuple[str, ...]
    ) -> TokenResponse:
        """Call the refresh grant, retrying once on network failure."""
        request = RefreshTokenRequest(
            token_endpoint=self.token_endpoint,
            refresh_token=refresh_token,
            client_id=self.client_id,
            scopes=scopes,
            client_secret=self.client_secret,
        )

        try:
            return await self._token_client.refresh_access_token(request)
        except TokenNetworkError as e:
            logger.warning(f"Token refresh failed, retrying once: {e}")

        await asyncio.sleep(self.refresh_backoff)
        try:
            return await self._token_client.refresh_access_token(request)
        except TokenNetworkError as e:
            raise AuthRefreshFailed(f"Token refresh failed after retry: {e}") from e

    # ================================
    # Scope escalation
    # ================================

    async def expand_scope_tier(self) -> bool:
        """Silently upgrade the selected account to the expanded tier.

        Returns:
            True if an expanded record is now cached, False if the provider
            demands new interactive consent. In that case the next interactive
            grant requests the expanded scopes.

        Raises:
            NoCredential: If no account is cached
            AuthRefreshFailed: If the provider could not be reached, or
                rejected the request for a reason other than consent
        """
        if self._external_token is not None:
            logger.info("Cannot expand scopes of an externally supplied token")
            return False

        account_id = self._cache.selected_account_id
        if account_id is None:
            raise NoCredential("No account is signed in")

        async with self._lock_for(account_id):
            if self._cache.find_record(account_id, ScopeTier.EXPANDED) is not None:
                return True

            base = self._cache.find_record(account_id, ScopeTier.BASE)
            if base is None or not base.can_refresh():
                self._requested_tier = ScopeTier.EXPANDED
                return False

            response = await self._request_refresh(
                base.refresh_token, self.scope_tiers.expanded
            )
            if not response.is_success():
                if self._needs_consent(response):
                    logger.info(
                        f"Silent scope expansion refused: {response.describe_error()}"
                    )
                    self._requested_tier = ScopeTier.EXPANDED
                    return False
                raise AuthRefreshFailed(
                    f"Scope expansion failed: {response.describe_error()}"
                )
            if self._cache.find_account(account_id) is None:
                raise NoCredential(f"Account {account_id} was signed out during expansion")

            expanded = response.to_record(
                account_id, ScopeTier.EXPANDED, base.refresh_token
            )
            self._put_record(expanded)
            await self._persist()

        logger.info(f"Expanded scopes for {account_id}")
        return True

    @staticmethod
    def _needs_consent(response: TokenResponse) -> bool:
        if response.error in CONSENT_ERRORS:
            return True
        description = response.error_description or ""
        return any(code in description for code in CONSENT_ERROR_CODES)

    # ================================
    # Accounts
    # ================================

    def list_accounts(self) -> list[Account]:
        return [account.model_copy() for account in self._cache.accounts]

    async def select_account(self, account_id: str) -> bool:
        """Switch the selected account. Unknown ids return False."""
        if self._cache.find_account(account_id) is None:
            return False

        async with self._lock_for(account_id):
            self._cache.selected_account_id = account_id
            await self._persist()

        logger.info(f"Selected account {account_id}")
        return True

    async def remove_account(self, account_id: str) -> bool:
        """Evict an account and all of its records. Unknown ids return False."""
        if self._cache.find_account(account_id) is None:
            return False

        async with self._lock_for(account_id):
            self._cache.accounts = [
                account
                for account in self._cache.accounts
                if account.home_account_id != account_id
            ]
            self._cache.records = [
                record
                for record in self._cache.records
                if record.home_account_id != account_id
            ]
            if self._cache.selected_account_id == account_id:
                remaining = self._cache.accounts
                self._cache.selected_account_id = (
                    remaining[-1].home_account_id if remaining else None
                )
            await self._persist()

        logger.info(f"Removed account {account_id}")
        return True

    async def logout(self) -> None:
        """Forget every account and any external token.

        Waits for refreshes and expansions already holding an account lock,
        so none of them can write a record back after the cache is cleared.
        """
        self._external_token = None
        async with AsyncExitStack() as stack:
            for account_id in sorted(self._account_locks):
                await stack.enter_async_context(self._account_locks[account_id])
            self._cache = TokenCache()
            await self._persist()
        logger.info("Logged out of all accounts")

    async def close(self) -> None:
        await self._token_client.close()
