"""Operation execution: state machine, timeout race, result envelope."""

from entitygate.engine.executor import CallState, Operation, OperationExecutor, strip_omitted
from entitygate.engine.results import CallStatus, ToolResult

__all__ = [
    "CallState",
    "CallStatus",
    "Operation",
    "OperationExecutor",
    "ToolResult",
    "strip_omitted",
]
