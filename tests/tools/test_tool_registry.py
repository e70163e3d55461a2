import json
from unittest.mock import AsyncMock

import pytest
from pydantic import BaseModel

from graphgate.errors import UpstreamError
from graphgate.tools.models import Tool, ToolResult
from graphgate.tools.registry import ToolRegistry


class EchoArguments(BaseModel):
    text: str
    repeat: int = 1


def echo_tool() -> Tool:
    return Tool(
        name="echo",
        description="Echo text",
        input_schema=EchoArguments.model_json_schema(),
    )


class TestToolRegistry:
    def test_register_stores_tool_model_and_handler(self):
        # Arrange
        registry = ToolRegistry()
        tool = echo_tool()
        handler = AsyncMock()

        # Act
        registry.register(tool, EchoArguments, handler)

        # Assert
        assert registry.registered["echo"] is tool
        assert registry.argument_models["echo"] is EchoArguments
        assert registry.handlers["echo"] is handler
        assert registry.list_tools() == [tool]

    async def test_call_passes_validated_arguments(self):
        # Arrange
        registry = ToolRegistry()
        expected = ToolResult.text("hi hi")
        handler = AsyncMock(return_value=expected)
        registry.register(echo_tool(), EchoArguments, handler)

        # Act
        result = await registry.call("echo", {"text": "hi", "repeat": "2"})

        # Assert
        assert result is expected
        handler.assert_awaited_once_with(EchoArguments(text="hi", repeat=2))

    async def test_invalid_arguments_return_error_result(self):
        # Arrange
        registry = ToolRegistry()
        handler = AsyncMock()
        registry.register(echo_tool(), EchoArguments, handler)

        # Act
        result = await registry.call("echo", {"repeat": 2})

        # Assert
        assert result.is_error
        payload = json.loads(result.content[0].text)
        assert payload["error"] == "invalid_request"
        assert "text" in payload["message"]
        handler.assert_not_awaited()

    async def test_gateway_errors_become_structured_results(self):
        # Arrange
        registry = ToolRegistry()
        handler = AsyncMock(
            side_effect=UpstreamError("Graph said no", status=502, body="bad gateway")
        )
        registry.register(echo_tool(), EchoArguments, handler)

        # Act
        result = await registry.call("echo", {"text": "hi"})

        # Assert
        assert result.is_error
        assert json.loads(result.content[0].text) == {
            "error": "upstream_error",
            "message": "Graph said no",
            "status": 502,
            "body": "bad gateway",
        }

    async def test_unexpected_errors_become_generic_results(self):
        # Arrange
        registry = ToolRegistry()
        handler = AsyncMock(side_effect=RuntimeError("boom"))
        registry.register(echo_tool(), EchoArguments, handler)

        # Act
        result = await registry.call("echo", {"text": "hi"})

        # Assert
        assert result.is_error
        assert "Tool execution failed: boom" in result.content[0].text

    async def test_call_raises_keyerror_for_unknown_tool(self):
        # Arrange
        registry = ToolRegistry()

        # Act & Assert
        with pytest.raises(KeyError):
            await registry.call("unknown-tool", {})
