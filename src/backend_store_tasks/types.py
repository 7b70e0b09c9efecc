"""
MIT License
Copyright (c) 2026 backend-store-tasks contributors
See LICENSE file for full license text.

Job record and JSON types shared by the encoder, plugin, and engine.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeAlias

JSONPrimitive: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONPrimitive | list["JSONValue"] | dict[str, "JSONValue"]
JSONObject: TypeAlias = dict[str, JSONValue]

# Projection applied to a request context before it is stored with a job.
ContextTransform: TypeAlias = Callable[[Any], Any]


@dataclass(frozen=True, slots=True)
class JobRecord:
    """
    Wire-level unit of work handed to the queue engine.

    Attributes:
        method: Store method that handles the job; also the routing key.
        payload: Opaque payload passed verbatim to the handler.
        context: Originating request context, already transformed.
        cid: Correlation id of the request that created the job.

    ``None`` fields are treated as absent and left out of the wire form.
    """

    method: str
    payload: Any = None
    context: Any = None
    cid: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the wire form, omitting absent fields."""
        data: dict[str, Any] = {"method": self.method}
        if self.payload is not None:
            data["payload"] = self.payload
        if self.context is not None:
            data["context"] = self.context
        if self.cid is not None:
            data["cid"] = self.cid
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> JobRecord:
        """Parse a wire-form record; ``method`` is required."""
        method = data.get("method")
        if not isinstance(method, str) or not method:
            raise ValueError("job record requires a non-empty 'method'")
        cid = data.get("cid")
        return cls(
            method=method,
            payload=data.get("payload"),
            context=data.get("context"),
            cid=cid if isinstance(cid, str) else None,
        )
