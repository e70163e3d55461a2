"""Account, scope tier and credential record models.

Credential records are mutable so the manager can refresh them in place; the
persisted TokenCache is a pydantic model so it serializes the same way every
time it is saved.
"""

from __future__ import annotations

import time
from enum import IntEnum

from pydantic import BaseModel, Field


class ScopeTier(IntEnum):
    """Ordered permission tiers. EXPANDED adds organization-only scopes."""

    BASE = 0
    EXPANDED = 1


class Account(BaseModel):
    """One signed-in identity."""

    home_account_id: str
    username: str = ""
    name: str = ""


class CredentialRecord(BaseModel):
    """One cached token grant for an (account, tier) pair."""

    home_account_id: str
    tier: ScopeTier = ScopeTier.BASE
    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_at: float | None = None  # Unix timestamp
    scopes: list[str] = Field(default_factory=list)

    def is_valid(self, buffer_seconds: float = 30.0) -> bool:
        """Check if access token is valid with optional buffer.

        Args:
            buffer_seconds: Treat the token as expired this many seconds early
        """
        if not self.access_token:
            return False

        if self.expires_at is None:
            return True

        return time.time() < (self.expires_at - buffer_seconds)

    def can_refresh(self) -> bool:
        return bool(self.refresh_token)


class TokenCache(BaseModel):
    """Everything the Token Store persists.

    Accounts are kept in acquisition order; the last one is the most recently
    acquired.
    """

    accounts: list[Account] = Field(default_factory=list)
    records: list[CredentialRecord] = Field(default_factory=list)
    selected_account_id: str | None = None

    def find_account(self, home_account_id: str) -> Account | None:
        for account in self.accounts:
            if account.home_account_id == home_account_id:
                return account
        return None

    def find_record(
        self, home_account_id: str, tier: ScopeTier
    ) -> CredentialRecord | None:
        for record in self.records:
            if record.home_account_id == home_account_id and record.tier == tier:
                return record
        return None
