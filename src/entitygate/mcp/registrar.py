# src/entitygate/mcp/registrar.py
"""Tool registration: one tool per permitted (entity, mode) pair.

Tool names follow ``<service>_<entity>_<mode>`` (last dotted segment of each),
or ``<tool_name>_<mode>`` when the entity declares a custom name. Each tool
carries its synthesized pydantic contract, the JSON schema published to
callers, and an async handler bound to the executor.
"""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

import structlog
from pydantic import BaseModel

from entitygate.contracts.access import AccessRights, Identity
from entitygate.contracts.entity import EntityDescriptor
from entitygate.contracts.enums import OperationMode
from entitygate.core.access import resolve_access
from entitygate.core.catalog import EntityCatalog
from entitygate.core.config import GatewaySettings
from entitygate.engine.executor import Operation, OperationExecutor
from entitygate.engine.results import ToolResult
from entitygate.synthesis.synthesizer import SchemaSynthesizer

logger = structlog.get_logger(__name__)

ToolHandler = Callable[[Any, Identity], Awaitable[ToolResult]]

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")

_MODE_VERBS = {
    OperationMode.QUERY: "Query",
    OperationMode.GET: "Get",
    OperationMode.CREATE: "Create",
    OperationMode.UPDATE: "Update",
    OperationMode.DELETE: "Delete",
}


@dataclass(frozen=True, slots=True)
class EntityTool:
    """A registered tool: name, published contract and bound handler."""

    name: str
    title: str
    description: str
    mode: OperationMode
    input_model: type[BaseModel]
    input_schema: dict[str, Any]
    handler: ToolHandler
    operation: Operation


def _last_segment(name: str) -> str:
    return name.rsplit(".", 1)[-1]


def tool_name(descriptor: EntityDescriptor, mode: OperationMode) -> str:
    if descriptor.name_override:
        base = descriptor.name_override
    else:
        base = f"{_last_segment(descriptor.owning_service)}_{_last_segment(descriptor.target_id)}"
    return _UNSAFE_NAME_CHARS.sub("_", f"{base}_{mode.value}")


def is_permitted(mode: OperationMode, access: AccessRights) -> bool:
    if mode in (OperationMode.QUERY, OperationMode.GET):
        return access.can_read
    if mode is OperationMode.CREATE:
        return access.can_create
    if mode is OperationMode.UPDATE:
        return access.can_update
    return access.can_delete


def hint_suffix(descriptor: EntityDescriptor, mode: OperationMode) -> str:
    hint = descriptor.mode_hint(mode)
    return f" Hint: {hint}" if hint else ""


def describe(descriptor: EntityDescriptor, mode: OperationMode, settings: GatewaySettings) -> str:
    """Tool description text for one mode."""
    subject = f"{descriptor.display_name} ({descriptor.qualified_name})"
    keys = ", ".join(descriptor.key_types())
    foreign_keys = [
        f"{fk} -> {assoc.target}"
        for fk, assoc in descriptor.foreign_keys().items()
        if fk not in descriptor.hidden_columns()
    ]
    if mode is OperationMode.QUERY:
        text = (
            f"Query {subject}. Use 'where' for filters, 'orderby' for sorting, 'select' for columns, "
            f"'top' (max {settings.max_top}, default {settings.default_top}) and 'skip' for paging, "
            "'q' for text search. Set return='count' for a row count or return='aggregate' with 'aggregate' specs."
        )
        if foreign_keys:
            text += f" Associations are filtered by foreign key: {', '.join(foreign_keys)}."
        expandable = descriptor.expandable_associations()
        if expandable:
            text += f" Use 'expand' to include associated records: {', '.join(expandable)}."
    elif mode is OperationMode.GET:
        text = f"Get one record of {subject} by key ({keys})."
    elif mode is OperationMode.CREATE:
        text = f"Create a record of {subject}."
        if foreign_keys:
            text += f" Set associations through their foreign keys: {', '.join(foreign_keys)}."
        if descriptor.deep_insert:
            text += f" Nested records can be created with: {', '.join(descriptor.deep_insert)}."
    elif mode is OperationMode.UPDATE:
        text = f"Update a record of {subject} identified by {keys}. Only the given fields change."
    else:
        text = f"Delete a record of {subject} identified by {keys}."
    return text + hint_suffix(descriptor, mode)


def build_entity_tools(
    descriptor: EntityDescriptor,
    catalog: EntityCatalog,
    executor: OperationExecutor,
    settings: GatewaySettings,
    access: AccessRights,
) -> list[EntityTool]:
    """Synthesize the tools of one entity.

    Modes default to ``settings.default_modes`` when the entity declares none.
    Modes the access rights forbid, and keyed modes of keyless entities, are
    not synthesized.
    """
    requested = descriptor.operation_modes or settings.default_modes
    permitted = [mode for mode in requested if is_permitted(mode, access)]
    synthesizer = SchemaSynthesizer(catalog, max_top=settings.max_top, default_top=settings.default_top)
    contracts = synthesizer.synthesize(descriptor, permitted)

    tools = []
    for mode, contract in contracts.items():
        name = tool_name(descriptor, mode)
        operation = Operation(tool_name=name, mode=mode, descriptor=descriptor, contract=contract)

        async def handler(arguments: Any, identity: Identity, _operation: Operation = operation) -> ToolResult:
            return await executor.run(_operation, arguments, identity)

        tools.append(
            EntityTool(
                name=name,
                title=f"{_MODE_VERBS[mode]} {descriptor.display_name}",
                description=describe(descriptor, mode, settings),
                mode=mode,
                input_model=contract,
                input_schema=contract.model_json_schema(by_alias=True),
                handler=handler,
                operation=operation,
            )
        )
    return tools


def build_all_tools(
    catalog: EntityCatalog,
    executor: OperationExecutor,
    settings: GatewaySettings,
    identity: Identity,
    entities: Iterable[EntityDescriptor] | None = None,
) -> dict[str, EntityTool]:
    """Tools for every catalog entity, keyed by tool name.

    Raises:
        ValueError: If two entities produce the same tool name
    """
    tools: dict[str, EntityTool] = {}
    for descriptor in entities if entities is not None else catalog:
        access = resolve_access(identity, descriptor.restrictions)
        for tool in build_entity_tools(descriptor, catalog, executor, settings, access):
            if tool.name in tools:
                raise ValueError(f"Duplicate tool name '{tool.name}' ({descriptor.qualified_name})")
            tools[tool.name] = tool
    logger.info("Tools registered", tools=len(tools), entities=len(catalog))
    return tools
