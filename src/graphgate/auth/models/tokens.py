"""Token endpoint request and response models.

Covers the device authorization grant (RFC 8628) and the refresh grant
(RFC 6749 Section 6) against the Microsoft identity platform v2.0 endpoints.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from pydantic import BaseModel

from graphgate.auth.models.accounts import CredentialRecord, ScopeTier

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"


@dataclass(frozen=True)
class DeviceCodeRequest:
    """Device authorization request (RFC 8628 Section 3.1)."""

    device_code_endpoint: str
    client_id: str
    scopes: tuple[str, ...]

    def to_form_data(self) -> dict[str, str]:
        return {"client_id": self.client_id, "scope": " ".join(self.scopes)}


class DeviceCodeResponse(BaseModel):
    """Device authorization response (RFC 8628 Section 3.2)."""

    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int = 900
    interval: int = 5
    message: str | None = None

    def instructions(self) -> str:
        """Human readable sign-in instructions."""
        if self.message:
            return self.message
        return (
            f"To sign in, use a web browser to open the page {self.verification_uri} "
            f"and enter the code {self.user_code} to authenticate."
        )


@dataclass(frozen=True)
class DeviceTokenRequest:
    """Device access token request (RFC 8628 Section 3.4)."""

    token_endpoint: str
    device_code: str
    client_id: str
    grant_type: str = DEVICE_CODE_GRANT

    def to_form_data(self) -> dict[str, str]:
        return {
            "grant_type": self.grant_type,
            "device_code": self.device_code,
            "client_id": self.client_id,
        }


@dataclass(frozen=True)
class RefreshTokenRequest:
    """OAuth 2.0 refresh token request parameters (RFC 6749 Section 6).

    Passing a wider scope set than the original grant is how a cached refresh
    token is upgraded to the expanded tier without new interactive consent.
    """

    # Required fields first
    token_endpoint: str
    refresh_token: str
    client_id: str

    # Optional fields with defaults last
    scopes: tuple[str, ...] = ()
    client_secret: str | None = None
    grant_type: str = "refresh_token"

    def to_form_data(self) -> dict[str, str]:
        """Convert to form data for application/x-www-form-urlencoded request."""
        data = {
            "grant_type": self.grant_type,
            "refresh_token": self.refresh_token,
            "client_id": self.client_id,
        }

        if self.scopes:
            data["scope"] = " ".join(self.scopes)
        if self.client_secret:
            data["client_secret"] = self.client_secret

        return data


class TokenResponse(BaseModel):
    """OAuth 2.0 token response (RFC 6749 Section 5).

    Represents both successful responses (Section 5.1) and error responses
    (Section 5.2).
    """

    # Success response fields
    access_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None
    refresh_token: str | None = None
    scope: str | None = None
    id_token: str | None = None

    # Error response fields
    error: str | None = None
    error_description: str | None = None
    error_codes: list[int] | None = None

    def is_success(self) -> bool:
        return self.error is None and self.access_token is not None

    def is_error(self) -> bool:
        return self.error is not None

    def describe_error(self) -> str:
        return f"{self.error}: {self.error_description or 'No description provided'}"

    def calculate_expires_at(self) -> float | None:
        if self.expires_in is None:
            return None
        return time.time() + self.expires_in

    def to_record(
        self,
        home_account_id: str,
        tier: ScopeTier,
        previous_refresh_token: str | None = None,
    ) -> CredentialRecord:
        """Convert a successful response into a CredentialRecord.

        Keeps the previous refresh token when the endpoint does not rotate it.

        Raises:
            ValueError: If response is not successful
        """
        if not self.is_success():
            raise ValueError("Cannot convert error response to CredentialRecord")

        return CredentialRecord(
            home_account_id=home_account_id,
            tier=tier,
            access_token=self.access_token,
            refresh_token=self.refresh_token or previous_refresh_token,
            token_type=self.token_type,
            expires_at=self.calculate_expires_at(),
            scopes=self.scope.split() if self.scope else [],
        )
