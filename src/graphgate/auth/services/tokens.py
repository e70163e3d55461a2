"""OAuth 2.0 token endpoint client.

Implements the device authorization grant (RFC 8628) and the refresh grant
(RFC 6749 Section 6) against the Microsoft identity platform.
"""

from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError

from graphgate.auth.models.tokens import (
    DeviceCodeRequest,
    DeviceCodeResponse,
    DeviceTokenRequest,
    RefreshTokenRequest,
    TokenResponse,
)
from graphgate.errors import TokenEndpointError, TokenNetworkError

logger = logging.getLogger(__name__)

FORM_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json",
}


class TokenEndpointClient:
    """Talks to the identity provider's device code and token endpoints.

    Uses application/x-www-form-urlencoded encoding as required by OAuth 2.0.
    OAuth error responses come back as TokenResponse objects with ``error``
    set; only transport and parsing failures raise.
    """

    def __init__(self, timeout: float = 30.0):
        """Initialize token endpoint client.

        Args:
            timeout: HTTP request timeout in seconds
        """
        self.timeout = timeout
        self._http_client = httpx.AsyncClient(timeout=timeout)

    async def request_device_code(
        self, device_request: DeviceCodeRequest
    ) -> DeviceCodeResponse:
        """Start a device authorization grant.

        Raises:
            TokenNetworkError: If the endpoint cannot be reached
            TokenEndpointError: If the endpoint rejects the request or the
                response cannot be parsed
        """
        logger.debug(
            f"Requesting device code at {device_request.device_code_endpoint}"
        )

        try:
            response = await self._http_client.post(
                device_request.device_code_endpoint,
                data=device_request.to_form_data(),
                headers=FORM_HEADERS,
            )
        except httpx.TransportError as e:
            raise TokenNetworkError(
                f"HTTP error during device code request: {e}"
            ) from e

        try:
            response_data = response.json()
        except ValueError as e:
            raise TokenEndpointError(
                f"Invalid device code response format: {e}",
                status=response.status_code,
            ) from e

        if response.status_code != 200:
            error = TokenResponse(**response_data)
            raise TokenEndpointError(
                f"Device code request failed: {error.describe_error()}",
                status=response.status_code,
                body=response.text,
            )

        try:
            return DeviceCodeResponse(**response_data)
        except ValidationError as e:
            raise TokenEndpointError(
                f"Invalid device code response format: {e}"
            ) from e

    async def poll_device_token(
        self, token_request: DeviceTokenRequest
    ) -> TokenResponse:
        """Poll the token endpoint once for a device code grant.

        ``authorization_pending`` and ``slow_down`` arrive as error responses;
        the caller decides whether to keep polling.
        """
        return await self._post_token_request(
            token_request.token_endpoint, token_request.to_form_data(), "device poll"
        )

    async def refresh_access_token(
        self, refresh_request: RefreshTokenRequest
    ) -> TokenResponse:
        """Refresh an access token using a refresh token.

        Raises:
            TokenNetworkError: If the endpoint cannot be reached
            TokenEndpointError: If the response cannot be parsed
        """
        logger.debug(f"Refreshing access token at {refresh_request.token_endpoint}")
        return await self._post_token_request(
            refresh_request.token_endpoint, refresh_request.to_form_data(), "refresh"
        )

    async def _post_token_request(
        self, endpoint: str, form_data: dict[str, str], purpose: str
    ) -> TokenResponse:
        logger.debug(
            f"Token request ({purpose}): grant_type={form_data['grant_type']}, "
            f"client_id={form_data['client_id']}, "
            f"scope={form_data.get('scope', 'none')}"
        )

        try:
            response = await self._http_client.post(
                endpoint, data=form_data, headers=FORM_HEADERS
            )
        except httpx.TransportError as e:
            raise TokenNetworkError(f"HTTP error during {purpose}: {e}") from e

        return self._parse_token_response(response)

    def _parse_token_response(self, response: httpx.Response) -> TokenResponse:
        """Parse token endpoint response into TokenResponse.

        Handles both successful responses (200) and error responses (400+)
        according to RFC 6749 Section 5.

        Raises:
            TokenEndpointError: If response cannot be parsed
        """
        try:
            response_data = response.json()
        except ValueError as e:
            raise TokenEndpointError(
                f"Invalid token response format: {e}",
                status=response.status_code,
                body=response.text,
            ) from e

        try:
            token_response = TokenResponse(**response_data)
        except (TypeError, ValidationError) as e:
            raise TokenEndpointError(f"Invalid token response format: {e}") from e

        if response.status_code == 200:
            if token_response.access_token is None:
                raise TokenEndpointError(
                    "Token response missing required access_token"
                )
            logger.debug("Token request successful")
        elif token_response.error is None:
            raise TokenEndpointError(
                f"Token endpoint returned {response.status_code} without an error code",
                status=response.status_code,
                body=response.text,
            )
        elif token_response.error not in ("authorization_pending", "slow_down"):
            logger.warning(
                f"Token request failed with {response.status_code}: "
                f"{token_response.describe_error()}"
            )

        return token_response

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        await self._http_client.aclose()
