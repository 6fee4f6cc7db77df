"""await-command MCP server.

Exposes a single tool, await_command, that runs a shell command under a
deadline with pattern-based completion and optional polling.

Usage:
    uvx await-command-mcp
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from mcp.server import Server
from mcp.types import TextContent, Tool

from .config import Config
from .handlers import AwaitCommandHandler, ToolContext, ToolHandler
from .orchestrator import RequestRegistry
from .shared.response_formatter import format_error_response

__all__ = ["create_server"]

logger = logging.getLogger(__name__)


def create_server(
    config: Config,
    registry: RequestRegistry | None = None,
    tool_ctx: ToolContext | None = None,
) -> Server:
    """Create the MCP Server.

    Args:
        config: Server configuration
        registry: Request registry (lets signals cancel running commands)
        tool_ctx: Shared tool context; created from config/registry if omitted
    """
    server = Server("await-command-mcp")
    ctx = tool_ctx or ToolContext(config=config, registry=registry)
    handlers: dict[str, ToolHandler] = {
        handler.name: handler for handler in (AwaitCommandHandler(),)
    }

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        tools = [
            Tool(
                name=handler.name,
                description=handler.description,
                inputSchema=handler.get_input_schema(),
            )
            for handler in handlers.values()
        ]
        logger.debug(f"[MCP] list_tools called, returning {[t.name for t in tools]}")
        return tools

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        logger.debug(
            f"[MCP] call_tool request:\n"
            f"  Tool: {name}\n"
            f"  Arguments: {json.dumps(arguments, ensure_ascii=False, default=str)[:500]}"
        )

        handler = handlers.get(name)
        if handler is None:
            return format_error_response(f"Unknown tool '{name}'")

        try:
            return await handler.handle(arguments or {}, ctx)

        except asyncio.CancelledError:
            logger.info(f"Tool '{name}' cancelled")
            raise

        except Exception as e:
            logger.error(f"Tool '{name}' failed: type={type(e).__name__}, msg={e}")
            return format_error_response(str(e))

    return server
