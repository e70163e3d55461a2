"""Retry and escalation state machine for one dispatched call.

No I/O happens here. The dispatcher feeds it each response status and acts on
the returned decision.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from graphgate.errors import (
    GatewayError,
    InsufficientScope,
    Unauthorized,
    UpstreamError,
)

SCOPE_ERROR_SIGNATURE = re.compile(r"scope|permission|privilege", re.IGNORECASE)


class RetryState(str, Enum):
    INITIAL = "initial"
    REFRESHED = "refreshed"
    ESCALATED = "escalated"
    TERMINAL = "terminal"


class Action(str, Enum):
    RETURN = "return"
    REFRESH_AND_RETRY = "refresh_and_retry"
    ESCALATE_AND_RETRY = "escalate_and_retry"
    FAIL = "fail"


@dataclass(frozen=True)
class Decision:
    action: Action
    error: type[GatewayError] | None = None


def is_scope_error(body: str) -> bool:
    return bool(SCOPE_ERROR_SIGNATURE.search(body or ""))


@dataclass
class RetryStateMachine:
    """Tracks which failure classes have already used their one retry."""

    state: RetryState = RetryState.INITIAL
    refreshed: bool = False
    escalated: bool = False

    def next(
        self,
        status: int,
        body: str = "",
        *,
        tier_expanded: bool = False,
        can_refresh: bool = True,
    ) -> Decision:
        """Decide what to do with a response.

        Args:
            status: HTTP status code of the latest attempt
            body: Response body text, checked for a scope error signature
            tier_expanded: True if the credential is already at the expanded tier
            can_refresh: False when the token cannot be refreshed at all
        """
        if self.state is RetryState.TERMINAL:
            raise RuntimeError("Retry state machine already terminated")

        if 200 <= status < 300:
            return Decision(Action.RETURN)

        if status == 401:
            if self.refreshed or not can_refresh:
                return self._fail(Unauthorized)
            self.refreshed = True
            self.state = RetryState.REFRESHED
            return Decision(Action.REFRESH_AND_RETRY)

        if status == 403 and is_scope_error(body):
            if self.escalated or tier_expanded:
                return self._fail(InsufficientScope)
            self.escalated = True
            self.state = RetryState.ESCALATED
            return Decision(Action.ESCALATE_AND_RETRY)

        return self._fail(UpstreamError)

    def escalation_refused(self) -> Decision:
        """Silent expansion returned False; the call cannot be retried."""
        return self._fail(InsufficientScope)

    def _fail(self, error: type[GatewayError]) -> Decision:
        self.state = RetryState.TERMINAL
        return Decision(Action.FAIL, error)
