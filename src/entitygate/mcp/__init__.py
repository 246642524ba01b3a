# src/entitygate/mcp/__init__.py
"""MCP (Model Context Protocol) server for entitygate.

Publishes one tool per permitted entity operation:
- <service>_<entity>_query: filter, sort, page, count and aggregate records
- <service>_<entity>_get: fetch one record by key
- <service>_<entity>_create: create a record, with nested composed children
- <service>_<entity>_update: change fields of a record
- <service>_<entity>_delete: delete a record
"""

from entitygate.mcp.registrar import EntityTool, build_all_tools, build_entity_tools, tool_name
from entitygate.mcp.server import create_server, main

__all__ = ["EntityTool", "build_all_tools", "build_entity_tools", "create_server", "main", "tool_name"]
