"""Device authorization grant orchestration (RFC 8628).

Requests a device code, hands the sign-in instructions to the caller, then
polls the token endpoint until the user finishes signing in out-of-band.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Awaitable, Callable

from graphgate.auth.models.tokens import (
    DeviceCodeRequest,
    DeviceTokenRequest,
    TokenResponse,
)
from graphgate.auth.services.tokens import TokenEndpointClient
from graphgate.errors import AuthDenied, AuthTimeout, TokenEndpointError

logger = logging.getLogger(__name__)

InstructionsCallback = Callable[[str], None] | Callable[[str], Awaitable[None]]

DENIED_ERRORS = {"authorization_declined", "access_denied", "bad_verification_code"}
SLOW_DOWN_INCREMENT = 5


class DeviceCodeFlow:
    """Runs one device code grant to completion.

    There is no internal timeout beyond the device code's own expiry.
    """

    def __init__(
        self,
        token_client: TokenEndpointClient,
        device_code_endpoint: str,
        token_endpoint: str,
        client_id: str,
    ):
        self._token_client = token_client
        self.device_code_endpoint = device_code_endpoint
        self.token_endpoint = token_endpoint
        self.client_id = client_id

    async def run(
        self, scopes: tuple[str, ...], on_instructions: InstructionsCallback
    ) -> TokenResponse:
        """Run the grant and return the successful token response.

        Args:
            scopes: Scopes to request
            on_instructions: Invoked exactly once with the verification URL
                and user code

        Raises:
            AuthTimeout: If the device code expired before sign-in finished
            AuthDenied: If the user declined the request
            TokenEndpointError: For any other upstream failure
        """
        device_code = await self._token_client.request_device_code(
            DeviceCodeRequest(
                device_code_endpoint=self.device_code_endpoint,
                client_id=self.client_id,
                scopes=scopes,
            )
        )
        logger.info("Device code issued, waiting for user to sign in")

        result = on_instructions(device_code.instructions())
        if inspect.isawaitable(result):
            await result

        deadline = time.monotonic() + device_code.expires_in
        interval = device_code.interval
        token_request = DeviceTokenRequest(
            token_endpoint=self.token_endpoint,
            device_code=device_code.device_code,
            client_id=self.client_id,
        )

        while True:
            if time.monotonic() >= deadline:
                raise AuthTimeout("Device code expired before sign-in completed")

            await asyncio.sleep(interval)
            response = await self._token_client.poll_device_token(token_request)

            if response.is_success():
                logger.info("Device code sign-in completed")
                return response

            if response.error == "authorization_pending":
                continue
            if response.error == "slow_down":
                interval += SLOW_DOWN_INCREMENT
                continue
            if response.error == "expired_token":
                raise AuthTimeout(response.describe_error())
            if response.error in DENIED_ERRORS:
                raise AuthDenied(response.describe_error())

            raise TokenEndpointError(response.describe_error())
