"""Error contracts.

TypedDict schemas for the structured error payload returned to callers,
plus the exception used inside the executor to short-circuit a call with
a specific taxonomy code.
"""

from __future__ import annotations

from typing import Any, NotRequired, TypedDict

from entitygate.contracts.enums import ErrorCode


class ValidationIssue(TypedDict):
    """One violated input constraint.

    Mirrors the shape of pydantic's ``ValidationError.errors()`` entries.
    """

    loc: list[str | int]
    msg: str
    type: str


class ToolErrorPayload(TypedDict):
    """Schema for the ``error`` member of a failed tool result."""

    code: str  # One of ErrorCode
    message: str  # Human-readable summary
    details: dict[str, Any]
    issues: NotRequired[list[ValidationIssue]]


class ToolError(Exception):
    """Raised inside an operation to end the call with a specific error code.

    The executor converts this into a failed ``ToolResult``; it never crosses
    the executor boundary.

    Attributes:
        code: Taxonomy code reported to the caller
        message: Human-readable summary
        details: Structured context (known services, validation issues, ...)
    """

    def __init__(self, code: ErrorCode, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def to_payload(self) -> ToolErrorPayload:
        return {"code": self.code.value, "message": self.message, "details": self.details}
