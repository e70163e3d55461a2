"""Exception hierarchy for the authenticated Graph gateway.

Every failure that can reach a caller is a GatewayError subclass carrying a
stable ``kind`` code and a remediation hint.
"""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    kind = "gateway_error"
    hint: str | None = None

    def __init__(
        self,
        message: str = "",
        *,
        status: int | None = None,
        body: str | None = None,
        hint: str | None = None,
    ):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.status = status
        self.body = body
        if hint:
            self.hint = hint

    def to_dict(self) -> dict[str, Any]:
        """Structured form handed back to callers."""
        result: dict[str, Any] = {"error": self.kind, "message": self.message}
        if self.status is not None:
            result["status"] = self.status
        if self.body:
            result["body"] = self.body
        if self.hint:
            result["hint"] = self.hint
        return result


# ================================
# Credential errors
# ================================


class NoCredential(GatewayError):
    """No account is cached and no interactive flow has been run."""

    kind = "no_credential"
    hint = "Run the login tool (device code flow) first."


class AuthTimeout(GatewayError):
    """Device code expired before the user completed sign-in."""

    kind = "auth_timeout"
    hint = "Start the login again and finish it before the code expires."


class AuthDenied(GatewayError):
    """User or identity provider rejected the interactive grant."""

    kind = "auth_denied"
    hint = "Sign-in was declined. Start the login again to retry."


class AuthRefreshFailed(GatewayError):
    """Silent refresh failed after its single retry."""

    kind = "auth_refresh_failed"
    hint = "Cached credentials could not be refreshed. Run the login tool again."


class TokenStoreError(GatewayError):
    """Persisted credential state could not be read or written."""

    kind = "token_store_error"


# ================================
# Dispatch errors
# ================================


class Unauthorized(GatewayError):
    """Token rejected even after one forced refresh."""

    kind = "unauthorized"
    hint = "The access token was rejected twice. Run the login tool again."


class InsufficientScope(GatewayError):
    """Upstream rejected the call for permission reasons."""

    kind = "insufficient_scope"
    hint = (
        "This operation needs organization scopes. Run the login tool with "
        "expanded=true to grant them."
    )


class UpstreamError(GatewayError):
    """Any other non-2xx response, or a timed out upstream call."""

    kind = "upstream_error"


class MissingResourceContext(GatewayError):
    """Operation needs a stateful resource but none could be determined."""

    kind = "missing_resource_context"
    hint = "Pass the workbook file path for this operation."


class InvalidRequest(GatewayError):
    """Parameters could not be bound to the operation."""

    kind = "invalid_request"


class CatalogError(GatewayError):
    """Operation catalog is malformed."""

    kind = "catalog_error"


class TokenEndpointError(GatewayError):
    """Token endpoint returned something that is not an OAuth response."""

    kind = "token_endpoint_error"


class TokenNetworkError(TokenEndpointError):
    """Token endpoint could not be reached."""

    kind = "token_network_error"
