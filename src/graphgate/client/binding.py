"""Operation descriptors and parameter binding.

Each declared parameter is routed by its tag through a fixed table of binding
strategies: Path values are percent-encoded into the template, Query values
into the query string, Header values attached verbatim, and a single Body
value becomes the JSON payload.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable
from urllib.parse import quote

from graphgate.errors import InvalidRequest

logger = logging.getLogger(__name__)

# OData system query options, exposed without their "$" prefix
RESERVED_QUERY_NAMES = frozenset(
    {"filter", "select", "expand", "orderby", "skip", "top", "count", "search", "format"}
)
BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})
LEGACY_BODY_NAME = "body"

# Same unreserved set as JavaScript's encodeURIComponent
_UNRESERVED = "-_.!~*'()"


class ParamTag(str, Enum):
    PATH = "Path"
    QUERY = "Query"
    HEADER = "Header"
    BODY = "Body"


@dataclass(frozen=True)
class ParameterDescriptor:
    name: str
    tag: ParamTag
    required: bool = False
    schema: dict[str, Any] = field(default_factory=dict)
    description: str = ""


@dataclass(frozen=True)
class OperationDescriptor:
    """One catalog operation. Immutable per call."""

    method: str
    path: str
    parameters: tuple[ParameterDescriptor, ...] = ()
    alias: str = ""
    description: str = ""
    scopes: tuple[str, ...] = ()
    org_scopes: tuple[str, ...] = ()
    resource_parameter: str | None = None

    @property
    def is_read_only(self) -> bool:
        return self.method.upper() == "GET"


@dataclass
class BoundRequest:
    """Result of binding parameters. Never modified across retries."""

    method: str
    path: str
    query: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    has_body: bool = False
    resource_path: str | None = None

    @property
    def path_with_query(self) -> str:
        if not self.query:
            return self.path
        query_string = "&".join(
            f"{quote(name, safe='$')}={encode_component(value)}"
            for name, value in self.query.items()
        )
        separator = "&" if "?" in self.path else "?"
        return f"{self.path}{separator}{query_string}"


def encode_component(value: str) -> str:
    return quote(value, safe=_UNRESERVED)


def format_value(value: Any) -> str:
    """Render a parameter value the way the upstream API expects it."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(format_value(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value)
    return str(value)


def query_name(name: str) -> str:
    lowered = name.lower()
    if lowered in RESERVED_QUERY_NAMES:
        return f"${lowered}"
    return name


def validate_descriptor(descriptor: OperationDescriptor) -> None:
    """Check that each parameter name has exactly one tag and at most one Body.

    Raises:
        InvalidRequest: If the descriptor is inconsistent
    """
    tags: dict[str, ParamTag] = {}
    body_names: list[str] = []
    for parameter in descriptor.parameters:
        previous = tags.get(parameter.name)
        if previous is not None and previous is not parameter.tag:
            raise InvalidRequest(
                f"Parameter '{parameter.name}' of {descriptor.alias or descriptor.path} "
                f"is declared as both {previous.value} and {parameter.tag.value}"
            )
        tags[parameter.name] = parameter.tag
        if parameter.tag is ParamTag.BODY and parameter.name not in body_names:
            body_names.append(parameter.name)

    if len(body_names) > 1:
        raise InvalidRequest(
            f"{descriptor.alias or descriptor.path} declares more than one body "
            f"parameter: {', '.join(body_names)}"
        )


# ================================
# Binding strategies
# ================================


def _colon_placeholder(name: str) -> re.Pattern[str]:
    return re.compile(rf":{re.escape(name)}(?=[^\w]|$)")


def has_placeholder(path: str, name: str) -> bool:
    return f"{{{name}}}" in path or bool(_colon_placeholder(name).search(path))


def _bind_path(request: BoundRequest, name: str, value: Any) -> None:
    encoded = encode_component(format_value(value))
    path = request.path.replace(f"{{{name}}}", encoded)
    request.path = _colon_placeholder(name).sub(lambda _: encoded, path)


def _bind_query(request: BoundRequest, name: str, value: Any) -> None:
    request.query[query_name(name)] = format_value(value)


def _bind_header(request: BoundRequest, name: str, value: Any) -> None:
    request.headers[name] = format_value(value)


def _bind_body(request: BoundRequest, name: str, value: Any) -> None:
    request.body = value
    request.has_body = True


BINDERS: dict[ParamTag, Callable[[BoundRequest, str, Any], None]] = {
    ParamTag.PATH: _bind_path,
    ParamTag.QUERY: _bind_query,
    ParamTag.HEADER: _bind_header,
    ParamTag.BODY: _bind_body,
}


def bind_parameters(
    descriptor: OperationDescriptor, params: dict[str, Any]
) -> BoundRequest:
    """Bind caller parameters to the descriptor's method and path template.

    Raises:
        InvalidRequest: If the descriptor is inconsistent or a path
            parameter is missing
    """
    validate_descriptor(descriptor)

    method = descriptor.method.upper()
    request = BoundRequest(method=method, path=descriptor.path)
    declared = {parameter.name: parameter for parameter in descriptor.parameters}

    for name, value in params.items():
        if value is None:
            continue

        if name == descriptor.resource_parameter:
            request.resource_path = str(value)
            continue

        parameter = declared.get(name)
        if parameter is not None:
            BINDERS[parameter.tag](request, name, value)
        elif name == LEGACY_BODY_NAME:
            _bind_body(request, name, value)
            logger.debug("Bound legacy body parameter")
        else:
            logger.debug(f"Ignoring undeclared parameter '{name}'")

    for parameter in descriptor.parameters:
        if parameter.tag is ParamTag.PATH and has_placeholder(request.path, parameter.name):
            raise InvalidRequest(
                f"Missing path parameter '{parameter.name}' for {descriptor.path}"
            )

    if method not in BODY_METHODS:
        request.body = None
        request.has_body = False

    return request
