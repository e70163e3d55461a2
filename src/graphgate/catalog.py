"""Operation catalog loading and filtering.

The catalog is a pre-generated JSON list of Graph operations. Each entry
becomes an immutable OperationDescriptor for the dispatcher.
"""

from __future__ import annotations

import json
import logging
import re
from importlib import resources
from pathlib import Path
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from graphgate.client.binding import (
    OperationDescriptor,
    ParameterDescriptor,
    ParamTag,
)
from graphgate.errors import CatalogError

logger = logging.getLogger(__name__)

HTTP_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}


class CatalogParameter(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    type: ParamTag
    required: bool = False
    description: str = ""
    json_schema: dict[str, Any] = Field(default_factory=dict, alias="schema")


class CatalogEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    alias: str
    method: str
    path_pattern: str = Field(alias="pathPattern")
    description: str = ""
    parameters: list[CatalogParameter] = Field(default_factory=list)
    scopes: list[str] = Field(default_factory=list)
    work_scopes: list[str] = Field(default_factory=list, alias="workScopes")
    resource_parameter: str | None = Field(default=None, alias="resourceParameter")

    def to_descriptor(self) -> OperationDescriptor:
        method = self.method.upper()
        if method not in HTTP_METHODS:
            raise CatalogError(f"Operation {self.alias} has unsupported method {self.method}")

        return OperationDescriptor(
            method=method,
            path=self.path_pattern,
            parameters=tuple(
                ParameterDescriptor(
                    name=parameter.name,
                    tag=parameter.type,
                    required=parameter.required,
                    schema=parameter.json_schema,
                    description=parameter.description,
                )
                for parameter in self.parameters
            ),
            alias=self.alias,
            description=self.description,
            scopes=tuple(self.scopes),
            org_scopes=tuple(self.work_scopes),
            resource_parameter=self.resource_parameter,
        )


def parse_catalog(entries: list[dict[str, Any]]) -> list[OperationDescriptor]:
    """Turn raw catalog entries into descriptors.

    Raises:
        CatalogError: If an entry is malformed or an alias repeats
    """
    descriptors = []
    seen: set[str] = set()
    for index, raw in enumerate(entries):
        try:
            entry = CatalogEntry.model_validate(raw)
        except ValidationError as e:
            raise CatalogError(f"Invalid catalog entry #{index}: {e}") from e

        if entry.alias in seen:
            raise CatalogError(f"Duplicate operation alias '{entry.alias}'")
        seen.add(entry.alias)
        descriptors.append(entry.to_descriptor())

    return descriptors


def load_catalog(path: Path | None = None) -> list[OperationDescriptor]:
    """Load the catalog from a file, or the bundled one if no path is given.

    Raises:
        CatalogError: If the file cannot be read or parsed
    """
    try:
        if path is None:
            text = (
                resources.files("graphgate.data")
                .joinpath("endpoints.json")
                .read_text(encoding="utf-8")
            )
        else:
            text = Path(path).read_text(encoding="utf-8")
        entries = json.loads(text)
    except (OSError, ValueError) as e:
        raise CatalogError(f"Failed to load operation catalog: {e}") from e

    if not isinstance(entries, list):
        raise CatalogError("Operation catalog must be a JSON list")

    descriptors = parse_catalog(entries)
    logger.debug(f"Loaded {len(descriptors)} operations")
    return descriptors


def filter_operations(
    operations: Iterable[OperationDescriptor],
    *,
    read_only: bool = False,
    enabled_tools: str | None = None,
) -> list[OperationDescriptor]:
    """Apply read-only mode and the enabled-tools pattern.

    Raises:
        CatalogError: If the enabled-tools pattern is not a valid regex
    """
    pattern = None
    if enabled_tools:
        try:
            pattern = re.compile(enabled_tools, re.IGNORECASE)
        except re.error as e:
            raise CatalogError(f"Invalid enabled tools pattern '{enabled_tools}': {e}") from e

    kept = []
    for operation in operations:
        if read_only and not operation.is_read_only:
            logger.info(f"Skipping write operation {operation.alias} in read-only mode")
            continue
        if pattern is not None and not pattern.search(operation.alias):
            continue
        kept.append(operation)
    return kept
