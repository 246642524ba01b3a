# src/entitygate/engine/executor.py
"""Operation executor: validate, resolve, compile, execute, shape.

Every call walks one state machine::

    received -> validated -> resolved -> compiled -> executing -> {succeeded | failed | timed_out}

and every failure leaves as a ``ToolResult`` carrying one ``ErrorCode``;
nothing raised inside a call propagates past ``OperationExecutor.run``.

Timeout handling:
    The execution phase races a timer. When the timer wins, the open
    transaction (if any) is rolled back best-effort and the caller gets
    ``TIMEOUT``. The store call itself is not aborted. If it completes
    later, its result is discarded and logged, and its transaction is
    rolled back instead of committed.

    A commit that has already been issued when the timer fires cannot be
    recalled, so the executor waits for it and reports its real outcome.
    A ``TIMEOUT`` result therefore always means nothing was committed.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable, Coroutine, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, cast

import structlog
from pydantic import BaseModel, ValidationError

from entitygate.contracts.access import Identity
from entitygate.contracts.entity import EntityDescriptor
from entitygate.contracts.enums import FAILURE_CODES, KEYED_MODES, ErrorCode, OperationMode, ReturnMode
from entitygate.contracts.errors import ToolError, ValidationIssue
from entitygate.contracts.query import QueryArgs
from entitygate.core.access import mutation_identity
from entitygate.core.config import GatewaySettings
from entitygate.engine.results import ToolResult
from entitygate.query.compiler import CompiledQuery, Expansion, QueryCompileError, QueryCompiler
from entitygate.query.tables import decode_row
from entitygate.store.protocols import BackingService, Transaction
from entitygate.store.registry import ServiceRegistry
from entitygate.synthesis.composition import EntityResolver
from entitygate.synthesis.keys import normalize_key_arguments

logger = structlog.get_logger(__name__)


class CallState(StrEnum):
    RECEIVED = "received"
    VALIDATED = "validated"
    RESOLVED = "resolved"
    COMPILED = "compiled"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True, slots=True)
class Operation:
    """One synthesized operation: what the registrar binds a tool name to."""

    tool_name: str
    mode: OperationMode
    descriptor: EntityDescriptor
    contract: type[BaseModel]


@dataclass(frozen=True, slots=True)
class WritePlan:
    """Field mapping of a mutation, prepared before the transaction opens."""

    keys: dict[str, Any]
    payload: dict[str, Any]


class _Call:
    """Per-call bookkeeping: state transitions, expiry flag, cleanup hook."""

    def __init__(self, operation: Operation, request_id: str) -> None:
        self.state = CallState.RECEIVED
        self.expired = False
        self.committing = False
        self.transaction: Transaction | None = None
        self.log = logger.bind(tool=operation.tool_name, request_id=request_id)
        self.log.debug("Call state", state=self.state.value)

    def advance(self, state: CallState) -> None:
        self.log.debug("Call state", state=state.value, previous=self.state.value)
        self.state = state


async def best_effort(action: Callable[[], Awaitable[None]], log: Any, what: str) -> None:
    """Run a cleanup action; failures are logged, never raised."""
    try:
        await action()
    except Exception as e:
        log.warning("Cleanup failed", action=what, error=str(e), error_type=type(e).__name__)


def validation_issues(error: ValidationError) -> list[ValidationIssue]:
    return [{"loc": list(issue["loc"]), "msg": issue["msg"], "type": issue["type"]} for issue in error.errors()]


def strip_omitted(descriptor: EntityDescriptor, record: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """Remove omitted fields (and foreign keys of omitted associations) from a response record."""
    if record is None:
        return None
    hidden = descriptor.hidden_columns()
    return {k: v for k, v in record.items() if k not in hidden}


class OperationExecutor:
    """Runs synthesized operations against live backing services.

    Example:
        executor = OperationExecutor(registry, settings, resolver=catalog)
        result = await executor.run(operation, {"top": 5}, identity)
        result.to_dict()
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        settings: GatewaySettings,
        compiler: QueryCompiler | None = None,
        resolver: EntityResolver | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            registry: Live backing services
            settings: Gateway settings (timeout, key matching, auth)
            compiler: Query compiler; built from ``resolver`` when omitted
            resolver: Entity catalog used to follow associations for ``expand``
        """
        self._registry = registry
        self._settings = settings
        self._compiler = compiler or QueryCompiler(resolver=resolver)

    @property
    def settings(self) -> GatewaySettings:
        return self._settings

    async def run(self, operation: Operation, raw_arguments: Any, identity: Identity) -> ToolResult:
        """Execute one call. Never raises; every outcome is a ``ToolResult``."""
        request_id = uuid.uuid4().hex
        started = time.perf_counter()
        call = _Call(operation, request_id)

        def meta() -> dict[str, Any]:
            return {
                "latency_ms": round((time.perf_counter() - started) * 1000, 3),
                "timeout_ms": self._settings.timeout_ms,
            }

        try:
            arguments = self._validate(operation, raw_arguments)
            call.advance(CallState.VALIDATED)
            service = self._resolve(operation.descriptor)
            call.advance(CallState.RESOLVED)
            work = self._prepare(call, operation, service, arguments, identity)
            call.advance(CallState.COMPILED)
            data = await self._race(call, work)
        except ToolError as e:
            call.advance(CallState.TIMED_OUT if e.code is ErrorCode.TIMEOUT else CallState.FAILED)
            call.log.info("Call failed", code=e.code.value, error=e.message)
            return ToolResult.failure(operation.tool_name, request_id, e, meta())
        except QueryCompileError as e:
            call.advance(CallState.FAILED)
            call.log.info("Call failed", code=ErrorCode.FILTER_PARSE_ERROR.value, error=str(e))
            error = ToolError(ErrorCode.FILTER_PARSE_ERROR, str(e))
            return ToolResult.failure(operation.tool_name, request_id, error, meta())
        except Exception as e:
            code = FAILURE_CODES[operation.mode]
            call.advance(CallState.FAILED)
            call.log.warning("Call failed", code=code.value, error=str(e), error_type=type(e).__name__)
            error = ToolError(code, f"{operation.mode.value} failed: {e}", {"error_type": type(e).__name__})
            return ToolResult.failure(operation.tool_name, request_id, error, meta())

        call.advance(CallState.SUCCEEDED)
        return ToolResult.success(operation.tool_name, request_id, data, meta())

    # === Phases ===

    def _validate(self, operation: Operation, raw_arguments: Any) -> BaseModel:
        descriptor = operation.descriptor
        if operation.mode in KEYED_MODES:
            raw_arguments = normalize_key_arguments(
                raw_arguments,
                descriptor.key_types(),
                case_insensitive=self._settings.case_insensitive_keys,
                allow_shorthand=operation.mode is not OperationMode.UPDATE,
            )
        elif raw_arguments is None:
            raw_arguments = {}
        elif not isinstance(raw_arguments, Mapping):
            raise ToolError(ErrorCode.INVALID_INPUT, "Arguments must be an object")
        try:
            return operation.contract.model_validate(raw_arguments)
        except ValidationError as e:
            raise ToolError(
                ErrorCode.INVALID_INPUT,
                f"Invalid arguments for {operation.tool_name}: {e.error_count()} issue(s)",
                {"issues": validation_issues(e)},
            ) from e

    def _resolve(self, descriptor: EntityDescriptor) -> BackingService:
        service = self._registry.resolve(descriptor.owning_service)
        if service is None:
            raise ToolError(
                ErrorCode.ERR_MISSING_SERVICE,
                f"Service '{descriptor.owning_service}' is not available",
                {"service": descriptor.owning_service, "known_services": self._registry.names()},
            )
        return service

    def _prepare(
        self,
        call: _Call,
        operation: Operation,
        service: BackingService,
        arguments: BaseModel,
        identity: Identity,
    ) -> Coroutine[Any, Any, Any]:
        """Compile the statement or field mapping and return the coroutine that executes it."""
        descriptor = operation.descriptor
        if operation.mode is OperationMode.QUERY:
            query_args = cast(QueryArgs, arguments)
            compiled = self._compiler.compile(descriptor, query_args)
            return self._query(service, descriptor, compiled, query_args)
        if operation.mode is OperationMode.GET:
            compiled = self._compiler.key_lookup(descriptor, arguments.model_dump())
            return self._get(service, descriptor, compiled)

        plan = self._plan_write(operation, arguments)
        tx_identity = mutation_identity(identity, self._settings.auth)
        return self._mutate(call, operation, service, plan, tx_identity)

    def _plan_write(self, operation: Operation, arguments: BaseModel) -> WritePlan:
        values = arguments.model_dump(exclude_unset=True)
        if operation.mode is OperationMode.CREATE:
            return WritePlan(keys={}, payload=values)
        keys = {name: values.pop(name) for name in operation.descriptor.key_types()}
        if operation.mode is OperationMode.UPDATE and not values:
            raise ToolError(ErrorCode.NO_FIELDS, "No fields to update were provided", {"keys": keys})
        return WritePlan(keys=keys, payload=values)

    async def _race(self, call: _Call, work: Coroutine[Any, Any, Any]) -> Any:
        call.advance(CallState.EXECUTING)
        task = asyncio.ensure_future(work)
        done, _ = await asyncio.wait({task}, timeout=self._settings.timeout_seconds)
        if task in done:
            return task.result()
        if call.committing:
            call.log.warning("Timeout reached during commit; awaiting its outcome")
            return await task

        call.expired = True
        if call.transaction is not None:
            await best_effort(call.transaction.rollback, call.log, "rollback")
        task.add_done_callback(lambda t: self._discard_late(call, t))
        raise ToolError(
            ErrorCode.TIMEOUT,
            f"Store did not respond within {self._settings.timeout_seconds:g}s",
            {"timeout_ms": self._settings.timeout_ms},
        )

    @staticmethod
    def _discard_late(call: _Call, task: asyncio.Future[Any]) -> None:
        if task.cancelled():
            call.log.warning("Late completion discarded", outcome="cancelled")
            return
        error = task.exception()
        if error is not None:
            call.log.warning("Late completion discarded", outcome="error", error=str(error))
        else:
            call.log.warning("Late completion discarded", outcome="ok")

    # === Execution ===

    async def _query(
        self,
        service: BackingService,
        descriptor: EntityDescriptor,
        compiled: CompiledQuery,
        args: QueryArgs,
    ) -> Any:
        rows = await service.execute(compiled.statement(args.return_mode, args.aggregate))
        if args.return_mode is ReturnMode.COUNT:
            return {"count": rows[0]["count"] if rows else 0}
        if args.return_mode is ReturnMode.AGGREGATE:
            return dict(rows[0]) if rows else {}
        for expansion in compiled.expansions:
            await self._expand(expansion, rows)
        records = []
        for row in rows:
            record = strip_omitted(descriptor, decode_row(descriptor, row)) or {}
            for name in compiled.link_columns:
                record.pop(name, None)
            records.append(record)
        return records

    async def _expand(self, expansion: Expansion, rows: list[dict[str, Any]]) -> None:
        """Attach the associated records of ``expansion`` to each row, in place."""
        values = expansion.link_values(rows)
        related: list[dict[str, Any]] = []
        if values:
            service = self._resolve(expansion.target)
            related = await service.execute(expansion.statement(values))

        target = expansion.target
        grouped: dict[Any, list[dict[str, Any]]] = {}
        for row in related:
            record = strip_omitted(target, decode_row(target, row)) or {}
            grouped.setdefault(row[expansion.target_column], []).append(record)
        for row in rows:
            matches = grouped.get(row.get(expansion.link_column), [])
            if expansion.many:
                row[expansion.name] = [dict(match) for match in matches]
            else:
                row[expansion.name] = dict(matches[0]) if matches else None

    async def _get(self, service: BackingService, descriptor: EntityDescriptor, compiled: CompiledQuery) -> Any:
        rows = await service.execute(compiled.rows())
        if not rows:
            return None
        return strip_omitted(descriptor, decode_row(descriptor, rows[0]))

    async def _mutate(
        self,
        call: _Call,
        operation: Operation,
        service: BackingService,
        plan: WritePlan,
        identity: Identity,
    ) -> Any:
        descriptor = operation.descriptor
        tx = service.transaction(identity)
        call.transaction = tx
        try:
            if operation.mode is OperationMode.CREATE:
                data: Any = strip_omitted(descriptor, await tx.insert(descriptor, plan.payload))
            elif operation.mode is OperationMode.UPDATE:
                data = strip_omitted(descriptor, await tx.update(descriptor, plan.keys, plan.payload))
            else:
                data = {"deleted": await tx.delete(descriptor, plan.keys)}
            if call.expired:
                raise ToolError(ErrorCode.TIMEOUT, "Completed after the call timed out; discarded")
            call.committing = True
            await tx.commit()
        except Exception:
            await best_effort(tx.rollback, call.log, "rollback")
            raise
        return data
