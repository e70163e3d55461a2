"""Scope sets for the base and expanded tiers.

The base tier covers personal-account operations. The expanded tier adds the
organization-only scopes (directory, Teams channels, SharePoint sites) that
catalog operations declare as work scopes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from graphgate.auth.models.accounts import ScopeTier
from graphgate.client.binding import OperationDescriptor

# Needed for refresh tokens and the id_token that identifies the account
RESERVED_SCOPES = ("offline_access", "openid", "profile")
DEFAULT_BASE_SCOPES = ("User.Read",)


@dataclass(frozen=True)
class ScopeTiers:
    """Requested scope set per tier."""

    base: tuple[str, ...]
    expanded: tuple[str, ...]

    def for_tier(self, tier: ScopeTier) -> tuple[str, ...]:
        return self.expanded if tier is ScopeTier.EXPANDED else self.base

    @classmethod
    def from_operations(cls, operations: Iterable[OperationDescriptor]) -> ScopeTiers:
        """Collect the scopes every catalog operation needs.

        Order is stable so the same catalog always produces the same request.
        """
        base: list[str] = list(DEFAULT_BASE_SCOPES)
        work: list[str] = []
        for operation in operations:
            for scope in operation.scopes:
                if scope not in base:
                    base.append(scope)
            for scope in operation.org_scopes:
                if scope not in work:
                    work.append(scope)

        expanded = base + [scope for scope in work if scope not in base]
        return cls(
            base=tuple(base) + RESERVED_SCOPES,
            expanded=tuple(expanded) + RESERVED_SCOPES,
        )
