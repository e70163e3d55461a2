"""Tests for the device code grant polling loop."""

from unittest.mock import AsyncMock

import pytest

from graphgate.auth.models.tokens import DeviceCodeResponse, TokenResponse
from graphgate.auth.services import device_flow
from graphgate.auth.services.device_flow import DeviceCodeFlow
from graphgate.errors import AuthDenied, AuthTimeout, TokenEndpointError

SCOPES = ("User.Read", "offline_access")


def device_code(interval: int = 0, expires_in: int = 900) -> DeviceCodeResponse:
    return DeviceCodeResponse(
        device_code="device-abc",
        user_code="ABCD-EFGH",
        verification_uri="https://microsoft.com/devicelogin",
        interval=interval,
        expires_in=expires_in,
    )


class TestDeviceCodeFlow:
    def setup_method(self):
        # Arrange
        self.token_client = AsyncMock()
        self.token_client.request_device_code.return_value = device_code()
        self.flow = DeviceCodeFlow(
            self.token_client,
            device_code_endpoint="https://login.example.com/devicecode",
            token_endpoint="https://login.example.com/token",
            client_id="client-123",
        )
        self.instructions: list[str] = []

    async def test_polls_until_sign_in_completes(self):
        # Arrange
        self.token_client.poll_device_token.side_effect = [
            TokenResponse(error="authorization_pending"),
            TokenResponse(error="authorization_pending"),
            TokenResponse(access_token="access-xyz", refresh_token="refresh-abc"),
        ]

        # Act
        result = await self.flow.run(SCOPES, self.instructions.append)

        # Assert
        assert result.access_token == "access-xyz"
        assert self.token_client.poll_device_token.await_count == 3
        assert len(self.instructions) == 1
        assert "ABCD-EFGH" in self.instructions[0]

        device_request = self.token_client.request_device_code.call_args[0][0]
        assert device_request.scopes == SCOPES
        assert device_request.client_id == "client-123"

    async def test_awaits_async_instructions_callback(self):
        # Arrange
        callback = AsyncMock()
        self.token_client.poll_device_token.return_value = TokenResponse(
            access_token="access-xyz"
        )

        # Act
        await self.flow.run(SCOPES, callback)

        # Assert
        callback.assert_awaited_once()

    async def test_slow_down_increases_interval(self, monkeypatch):
        # Arrange
        sleep = AsyncMock()
        monkeypatch.setattr(device_flow.asyncio, "sleep", sleep)
        self.token_client.request_device_code.return_value = device_code(interval=2)
        self.token_client.poll_device_token.side_effect = [
            TokenResponse(error="slow_down"),
            TokenResponse(access_token="access-xyz"),
        ]

        # Act
        await self.flow.run(SCOPES, self.instructions.append)

        # Assert
        assert [call.args[0] for call in sleep.await_args_list] == [2, 7]

    async def test_expired_token_raises_timeout(self):
        # Arrange
        self.token_client.poll_device_token.return_value = TokenResponse(
            error="expired_token", error_description="The device code expired"
        )

        # Act & Assert
        with pytest.raises(AuthTimeout):
            await self.flow.run(SCOPES, self.instructions.append)

    async def test_zero_lifetime_code_times_out_without_polling(self):
        # Arrange
        self.token_client.request_device_code.return_value = device_code(expires_in=0)

        # Act & Assert
        with pytest.raises(AuthTimeout):
            await self.flow.run(SCOPES, self.instructions.append)
        self.token_client.poll_device_token.assert_not_awaited()

    @pytest.mark.parametrize(
        "error", ["authorization_declined", "access_denied", "bad_verification_code"]
    )
    async def test_declined_sign_in_raises_denied(self, error):
        # Arrange
        self.token_client.poll_device_token.return_value = TokenResponse(error=error)

        # Act & Assert
        with pytest.raises(AuthDenied):
            await self.flow.run(SCOPES, self.instructions.append)

    async def test_unexpected_error_raises_endpoint_error(self):
        # Arrange
        self.token_client.poll_device_token.return_value = TokenResponse(
            error="invalid_client"
        )

        # Act & Assert
        with pytest.raises(TokenEndpointError, match="invalid_client"):
            await self.flow.run(SCOPES, self.instructions.append)
