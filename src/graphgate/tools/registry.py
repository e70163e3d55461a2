import logging
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ValidationError

from graphgate.errors import GatewayError, InvalidRequest
from graphgate.tools.models import Tool, ToolResult

logger = logging.getLogger(__name__)

ToolHandler = Callable[[BaseModel], Awaitable[ToolResult]]


class ToolRegistry:
    def __init__(self):
        self.registered: dict[str, Tool] = {}
        self.handlers: dict[str, ToolHandler] = {}
        self.argument_models: dict[str, type[BaseModel]] = {}

    def register(
        self,
        tool: Tool,
        arguments_model: type[BaseModel],
        handler: ToolHandler,
    ) -> None:
        """Register a tool with its argument model and handler.

        Arguments are validated against the model before the handler runs.
        Handlers should return ToolResult with is_error=True for failures;
        uncaught GatewayErrors become structured error results and anything
        else becomes a generic "Tool execution failed" message.

        Args:
            tool: Tool definition with name, description, and schema.
            arguments_model: Pydantic model the arguments must satisfy.
            handler: Async function receiving the validated arguments.
        """
        self.registered[tool.name] = tool
        self.argument_models[tool.name] = arguments_model
        self.handlers[tool.name] = handler

    def list_tools(self) -> list[Tool]:
        return list(self.registered.values())

    async def call(self, name: str, arguments: dict[str, Any] | None = None) -> ToolResult:
        """Validate arguments and run a tool.

        Raises:
            KeyError: If the requested tool is not registered.
        """
        handler = self.handlers[name]  # Can raise KeyError
        model = self.argument_models[name]

        try:
            validated = model.model_validate(arguments or {})
        except ValidationError as e:
            return ToolResult.error(
                InvalidRequest(f"Invalid arguments for {name}: {e}").to_dict()
            )

        try:
            return await handler(validated)
        except GatewayError as e:
            logger.error(f"Error in tool {name}: {e.message}")
            return ToolResult.error(e.to_dict())
        except Exception as e:
            logger.exception(f"Unexpected error in tool {name}")
            return ToolResult.error({"error": f"Tool execution failed: {e}"})
