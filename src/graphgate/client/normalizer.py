"""Response normalization.

Classifies upstream bodies into JSON, text or opaque binary and strips OData
metadata from JSON trees, keeping only what pagination needs.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

METADATA_PREFIX = "@odata"
KEPT_METADATA = frozenset({"@odata.nextLink", "@odata.count"})

SUCCESS_MESSAGE = "Operation completed successfully"


class ResponseKind(str, Enum):
    JSON = "json"
    TEXT = "text"
    BINARY = "binary"
    EMPTY = "empty"


@dataclass(frozen=True)
class NormalizedResponse:
    kind: ResponseKind
    data: Any = None
    content_type: str | None = None
    content_length: int | None = None

    @property
    def next_link(self) -> str | None:
        if self.kind is ResponseKind.JSON and isinstance(self.data, dict):
            return self.data.get("@odata.nextLink")
        return None

    def to_text(self) -> str:
        """Render as the text handed back to the caller."""
        if self.kind is ResponseKind.TEXT:
            return self.data
        if self.kind is ResponseKind.EMPTY:
            return json.dumps({"message": SUCCESS_MESSAGE})
        return json.dumps(self.data)


def strip_metadata(value: Any) -> Any:
    """Return a copy of a JSON tree without OData metadata keys."""
    if isinstance(value, dict):
        return {
            key: strip_metadata(item)
            for key, item in value.items()
            if not key.startswith(METADATA_PREFIX) or key in KEPT_METADATA
        }
    if isinstance(value, list):
        return [strip_metadata(item) for item in value]
    return value


def normalize(
    status_code: int,
    content_type: str | None,
    content: bytes,
    *,
    raw: bool = False,
) -> NormalizedResponse:
    """Classify a successful response body.

    Args:
        status_code: HTTP status of the response
        content_type: Declared Content-Type header, if any
        content: Raw body bytes
        raw: Skip metadata stripping
    """
    if status_code == 204 or not content:
        return NormalizedResponse(kind=ResponseKind.EMPTY, content_type=content_type)

    media_type = (content_type or "").split(";")[0].strip().lower()

    if media_type.startswith("text/"):
        return NormalizedResponse(
            kind=ResponseKind.TEXT,
            data=content.decode(errors="replace"),
            content_type=content_type,
            content_length=len(content),
        )

    if not media_type or "json" in media_type:
        try:
            tree = json.loads(content)
        except ValueError:
            return NormalizedResponse(
                kind=ResponseKind.TEXT,
                data=content.decode(errors="replace"),
                content_type=content_type,
                content_length=len(content),
            )
        return NormalizedResponse(
            kind=ResponseKind.JSON,
            data=tree if raw else strip_metadata(tree),
            content_type=content_type,
            content_length=len(content),
        )

    return NormalizedResponse(
        kind=ResponseKind.BINARY,
        data={
            "message": "Binary or non-JSON content received",
            "contentType": content_type,
            "contentLength": len(content),
        },
        content_type=content_type,
        content_length=len(content),
    )


def normalize_response(response: httpx.Response, *, raw: bool = False) -> NormalizedResponse:
    return normalize(
        response.status_code,
        response.headers.get("content-type"),
        response.content,
        raw=raw,
    )
