# src/entitygate/mcp/server.py
"""MCP server exposing synthesized entity operations.

Usage:
    # Direct execution
    python -m entitygate.mcp.server --config ./gateway.yaml

    # Or as an MCP server
    entitygate-mcp --config ./gateway.yaml --user alice --role support

This file contains only MCP protocol machinery: tool listing, dispatch,
store wiring and the CLI entry point. Contracts come from the synthesizer,
execution from the executor.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
import uuid
from pathlib import Path
from typing import Any

import structlog
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from entitygate.contracts.access import PRIVILEGED_IDENTITY, Identity
from entitygate.contracts.enums import ErrorCode
from entitygate.contracts.errors import ToolError
from entitygate.core.catalog import EntityCatalog, load_catalog
from entitygate.core.config import GatewaySettings, load_settings
from entitygate.core.logging import configure_logging
from entitygate.engine.executor import OperationExecutor
from entitygate.engine.results import ToolResult
from entitygate.mcp.registrar import EntityTool, build_all_tools
from entitygate.store.registry import ServiceRegistry
from entitygate.store.sqlalchemy_store import SqlAlchemyService

logger = structlog.get_logger(__name__)


def render_result(result: ToolResult) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(result.to_dict(), indent=2))]


async def dispatch(
    tools: dict[str, EntityTool],
    name: str,
    arguments: dict[str, Any] | None,
    caller: Identity,
) -> list[TextContent]:
    """Route one tool call to its handler and render the envelope as JSON text."""
    tool = tools.get(name)
    if tool is None:
        logger.info("Unknown tool requested", tool=name)
        error = ToolError(ErrorCode.INVALID_INPUT, f"Unknown tool: {name}", {"tool": name})
        return render_result(ToolResult.failure(name, uuid.uuid4().hex, error, {"latency_ms": 0.0}))
    return render_result(await tool.handler(arguments, caller))


def open_services(settings: GatewaySettings, catalog: EntityCatalog) -> ServiceRegistry:
    """One SQLAlchemy-backed service per catalog service, all on ``settings.database_url``."""
    registry = ServiceRegistry()
    for service in catalog.services():
        registry.register(SqlAlchemyService.from_url(service, settings.database_url, catalog.entities_of(service), catalog))
    return registry


def close_services(registry: ServiceRegistry) -> None:
    """Dispose the SQLAlchemy services opened by ``open_services``."""
    for name in registry.names():
        service = registry.resolve(name)
        if isinstance(service, SqlAlchemyService):
            service.close()


def create_server(
    settings: GatewaySettings,
    catalog: EntityCatalog,
    registry: ServiceRegistry,
    *,
    identity: Identity | None = None,
) -> Server:
    """Create MCP server with one tool per permitted entity operation.

    Args:
        settings: Gateway settings
        catalog: Entity catalog to expose
        registry: Live backing services
        identity: Caller identity; defaults to the privileged identity
            when authentication is disabled

    Returns:
        Configured MCP Server
    """
    caller = identity or (PRIVILEGED_IDENTITY if settings.auth == "none" else Identity(user_id="anonymous"))
    executor = OperationExecutor(registry, settings, resolver=catalog)
    tools: dict[str, EntityTool] = build_all_tools(catalog, executor, settings, caller)
    server = Server("entitygate")

    @server.list_tools()  # type: ignore[misc, no-untyped-call, untyped-decorator]  # MCP SDK decorators lack type stubs
    async def list_tools() -> list[Tool]:
        return [
            Tool(name=tool.name, title=tool.title, description=tool.description, inputSchema=tool.input_schema)
            for tool in tools.values()
        ]

    # Input validation belongs to the executor so failures carry the gateway's error codes.
    @server.call_tool(validate_input=False)  # type: ignore[misc, untyped-decorator]  # MCP SDK decorators lack type stubs
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        return await dispatch(tools, name, arguments, caller)

    return server


async def run_server(
    settings: GatewaySettings,
    catalog: EntityCatalog,
    registry: ServiceRegistry,
    *,
    identity: Identity | None = None,
) -> None:
    """Run the MCP server with stdio transport."""
    server = create_server(settings, catalog, registry, identity=identity)
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="entitygate MCP Server - typed entity operations over a SQL store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Serve the catalog named in the config file
    entitygate-mcp --config ./gateway.yaml

    # Override the database and act as a specific user
    entitygate-mcp --config ./gateway.yaml --database sqlite:///./data/shop.db --user alice --role support

Environment Variables:
    ENTITYGATE_CONFIG: Default config path if --config not specified
    ENTITYGATE_*: Overrides for individual settings (e.g. ENTITYGATE_TIMEOUT_SECONDS=5)
""",
    )
    parser.add_argument("--config", "-c", default=None, help="Gateway settings YAML")
    parser.add_argument("--catalog", default=None, help="Entity catalog YAML (overrides catalog_path)")
    parser.add_argument("--database", "-d", default=None, help="Database URL (overrides database_url)")
    parser.add_argument("--user", default=None, help="Caller user id for mutation transactions")
    parser.add_argument("--role", action="append", default=[], help="Caller role (repeatable)")

    args = parser.parse_args()

    config_path: str | None = args.config or os.environ.get("ENTITYGATE_CONFIG")
    if config_path is None:
        sys.stderr.write("Error: --config is required (or set ENTITYGATE_CONFIG).\n")
        sys.exit(1)

    try:
        settings = load_settings(Path(config_path))
    except FileNotFoundError as e:
        sys.stderr.write(f"Error: {e}\n")
        sys.exit(1)

    overrides: dict[str, Any] = {}
    if args.catalog is not None:
        overrides["catalog_path"] = args.catalog
    if args.database is not None:
        overrides["database_url"] = args.database
    if overrides:
        settings = settings.model_copy(update=overrides)

    configure_logging(json_output=settings.logging.json_output, level=settings.logging.level)

    if settings.catalog_path is None:
        sys.stderr.write("Error: no catalog configured (set catalog_path or pass --catalog).\n")
        sys.exit(1)

    catalog = load_catalog(Path(settings.catalog_path))
    registry = open_services(settings, catalog)

    identity: Identity | None = None
    if args.user is not None:
        identity = Identity(user_id=args.user, roles=frozenset(args.role))

    logger.info("Starting MCP server", services=registry.names(), database=settings.database_url)

    try:
        asyncio.run(run_server(settings, catalog, registry, identity=identity))
    finally:
        close_services(registry)


if __name__ == "__main__":
    main()
