"""Tool definitions and results handed to the invocation layer."""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, Field


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    text: str


class Tool(BaseModel):
    """A callable action with a JSON schema for its arguments."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict)
    read_only: bool = False


class ToolResult(BaseModel):
    """Outcome of a tool call.

    Failures are results with ``is_error`` set, never exceptions.
    """

    content: list[TextContent]
    is_error: bool = False

    @classmethod
    def text(cls, text: str) -> ToolResult:
        return cls(content=[TextContent(text=text)])

    @classmethod
    def json(cls, payload: Any, *, is_error: bool = False) -> ToolResult:
        return cls(content=[TextContent(text=json.dumps(payload))], is_error=is_error)

    @classmethod
    def error(cls, payload: dict[str, Any]) -> ToolResult:
        return cls.json(payload, is_error=True)
