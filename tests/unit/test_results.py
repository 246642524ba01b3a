"""Tests for the tool result envelope."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from entitygate.contracts.enums import ErrorCode
from entitygate.contracts.errors import ToolError
from entitygate.engine.results import CallStatus, ToolResult


class TestToolResult:
    def test_success_envelope(self) -> None:
        result = ToolResult.success("shop_Products_get", "req-1", {"ID": 1}, {"latency_ms": 1.0})
        assert result.ok
        assert result.to_dict() == {
            "status": "ok",
            "tool_name": "shop_Products_get",
            "request_id": "req-1",
            "meta": {"latency_ms": 1.0},
            "data": {"ID": 1},
        }

    def test_failure_envelope(self) -> None:
        error = ToolError(ErrorCode.NO_FIELDS, "No fields to update were provided", {"keys": {"ID": 1}})
        result = ToolResult.failure("shop_Products_update", "req-2", error, {})
        body = result.to_dict()
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "NO_FIELDS",
            "message": "No fields to update were provided",
            "details": {"keys": {"ID": 1}},
        }
        assert "data" not in body
        assert result.error_code == "NO_FIELDS"

    def test_timeout_status(self) -> None:
        result = ToolResult.failure("t", "r", ToolError(ErrorCode.TIMEOUT, "slow"), {})
        assert result.status is CallStatus.TIMEOUT
        assert not result.ok

    def test_json_compatible_values(self) -> None:
        result = ToolResult.success("t", "r", {"on": date(2024, 1, 2), "amount": Decimal("1.50")}, {})
        assert result.to_dict()["data"] == {"on": "2024-01-02", "amount": "1.50"}
