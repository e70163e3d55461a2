"""Catalog operations exposed as tools."""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, create_model

from graphgate.client.binding import OperationDescriptor, ParameterDescriptor
from graphgate.client.dispatcher import RequestDispatcher
from graphgate.tools.models import Tool, ToolResult
from graphgate.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

JSON_TYPES: dict[str, Any] = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
    "array": list[Any],
    "object": dict[str, Any],
}

RAW_RESPONSE_FIELD = "rawResponse"


def _field_name(name: str) -> str:
    # Prefixed so names like "json" or "schema" never shadow BaseModel members
    return "p_" + re.sub(r"\W", "_", name)


def _annotation(parameter: ParameterDescriptor) -> Any:
    declared = parameter.schema.get("type")
    if isinstance(declared, str):
        return JSON_TYPES.get(declared, Any)
    return Any


def build_arguments_model(operation: OperationDescriptor) -> type[BaseModel]:
    """Generate a pydantic model validating the arguments of one operation.

    Fields keep the wire names of their parameters as aliases, so the model
    validates and dumps the same dictionaries the binder consumes.
    """
    fields: dict[str, Any] = {}
    for parameter in operation.parameters:
        annotation = _annotation(parameter)
        if parameter.required:
            fields[_field_name(parameter.name)] = (
                annotation,
                Field(..., alias=parameter.name, description=parameter.description or None),
            )
        else:
            fields[_field_name(parameter.name)] = (
                annotation | None if annotation is not Any else Any,
                Field(None, alias=parameter.name, description=parameter.description or None),
            )

    if operation.resource_parameter:
        fields[_field_name(operation.resource_parameter)] = (
            str | None,
            Field(
                None,
                alias=operation.resource_parameter,
                description="Path of the workbook file, e.g. /Reports/Q1.xlsx",
            ),
        )

    fields[_field_name(RAW_RESPONSE_FIELD)] = (
        bool,
        Field(
            False,
            alias=RAW_RESPONSE_FIELD,
            description="Return JSON bodies without removing OData metadata",
        ),
    )

    model_name = "".join(part.capitalize() for part in re.split(r"\W+", operation.alias) if part)
    return create_model(
        f"{model_name}Arguments",
        __config__=ConfigDict(populate_by_name=True, extra="forbid"),
        **fields,
    )


def operation_tool(operation: OperationDescriptor, arguments_model: type[BaseModel]) -> Tool:
    return Tool(
        name=operation.alias,
        description=operation.description or f"{operation.method} {operation.path}",
        input_schema=arguments_model.model_json_schema(by_alias=True),
        read_only=operation.is_read_only,
    )


def register_graph_tools(
    registry: ToolRegistry,
    dispatcher: RequestDispatcher,
    operations: Iterable[OperationDescriptor],
) -> int:
    """Register one tool per catalog operation.

    Returns:
        The number of tools registered
    """
    count = 0
    for operation in operations:
        arguments_model = build_arguments_model(operation)
        registry.register(
            operation_tool(operation, arguments_model),
            arguments_model,
            _operation_handler(dispatcher, operation),
        )
        count += 1

    logger.info(f"Registered {count} Graph tools")
    return count


def _operation_handler(dispatcher: RequestDispatcher, operation: OperationDescriptor):
    async def handle(arguments: BaseModel) -> ToolResult:
        params = arguments.model_dump(by_alias=True, exclude_none=True)
        raw_response = params.pop(RAW_RESPONSE_FIELD, False)
        response = await dispatcher.dispatch(operation, params, raw_response=raw_response)
        return ToolResult.text(response.to_text())

    return handle
