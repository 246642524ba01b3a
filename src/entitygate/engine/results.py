"""Result envelope returned by every tool call.

Exactly one of ``data`` / ``error`` is meaningful, selected by ``status``:

- ``ok``: ``data`` holds the shaped response (may be None for a missed get)
- ``error``: ``error`` holds ``{code, message, details}``
- ``timeout``: ``error`` holds the ``TIMEOUT`` code; the store never answered in time
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from enum import StrEnum
from typing import Any

from entitygate.contracts.enums import ErrorCode
from entitygate.contracts.errors import ToolError, ToolErrorPayload


class CallStatus(StrEnum):
    OK = "ok"
    ERROR = "error"
    TIMEOUT = "timeout"


@dataclass(frozen=True, slots=True)
class ToolResult:
    """Outcome of one tool call."""

    status: CallStatus
    tool_name: str
    request_id: str
    data: Any = None
    error: ToolErrorPayload | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, tool_name: str, request_id: str, data: Any, meta: dict[str, Any]) -> ToolResult:
        return cls(status=CallStatus.OK, tool_name=tool_name, request_id=request_id, data=data, meta=meta)

    @classmethod
    def failure(cls, tool_name: str, request_id: str, error: ToolError, meta: dict[str, Any]) -> ToolResult:
        status = CallStatus.TIMEOUT if error.code is ErrorCode.TIMEOUT else CallStatus.ERROR
        return cls(status=status, tool_name=tool_name, request_id=request_id, error=error.to_payload(), meta=meta)

    @property
    def ok(self) -> bool:
        return self.status is CallStatus.OK

    @property
    def error_code(self) -> str | None:
        return self.error["code"] if self.error is not None else None

    def to_dict(self) -> dict[str, Any]:
        """JSON-compatible form (dates as ISO strings, Decimals as strings)."""
        body: dict[str, Any] = {
            "status": self.status.value,
            "tool_name": self.tool_name,
            "request_id": self.request_id,
            "meta": self.meta,
        }
        if self.status is CallStatus.OK:
            body["data"] = self.data
        else:
            body["error"] = self.error
        result: dict[str, Any] = _json_safe(body)
        return result


def _json_value(obj: Any) -> Any:
    """Convert a single store value to a JSON-safe primitive."""
    if obj is None or isinstance(obj, str | int | bool | float):
        return obj
    if isinstance(obj, datetime | date | time):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, bytes):
        return base64.b64encode(obj).decode("ascii")
    return obj


def _json_safe(data: Any) -> Any:
    if isinstance(data, dict):
        return {k: _json_safe(v) for k, v in data.items()}
    if isinstance(data, list | tuple):
        return [_json_safe(v) for v in data]
    return _json_value(data)
