"""Agent Memory MCP Server -- Standalone stdio-based MCP server."""

import asyncio
import collections
import logging
import os
import sys
import time
from typing import Optional

from mcp.server import Server
from mcp.types import TextContent, Tool

from agent_memory.server.handlers import WRITE_TOOLS, build_handlers
from agent_memory.server.tool_schemas import TOOL_SCHEMAS
from agent_memory.sqlite_store import SQLiteStore

logger = logging.getLogger("agent_memory.server")

SERVER_NAME = "agent-memory"

# Idle watchdog: exit after this many seconds without a tool call.
# Override with AGENT_MEMORY_IDLE_TIMEOUT env var. 0 = disabled.
_IDLE_TIMEOUT = int(os.environ.get("AGENT_MEMORY_IDLE_TIMEOUT", "3600"))
_last_activity: float = time.monotonic()

# ---------------------------------------------------------------------------
# Rate limiting: sliding-window counters
# ---------------------------------------------------------------------------
_GLOBAL_RATE_LIMIT = int(os.environ.get("AGENT_MEMORY_RATE_LIMIT_GLOBAL", "300"))  # per minute
_WRITE_RATE_LIMIT = int(os.environ.get("AGENT_MEMORY_RATE_LIMIT_WRITE", "60"))  # per minute
_RATE_WINDOW_S = 60.0

_global_timestamps: collections.deque = collections.deque()
_write_timestamps: collections.deque = collections.deque()


def _admit(window: collections.deque, limit: int, now: float) -> bool:
    """Drop timestamps older than the window; record *now* if under *limit*."""
    cutoff = now - _RATE_WINDOW_S
    while window and window[0] < cutoff:
        window.popleft()
    if len(window) >= limit:
        return False
    window.append(now)
    return True


def _check_rate_limit(tool_name: str) -> Optional[str]:
    """Return an error message if a rate limit is exceeded, else None.

    Every call counts against the global window; write tools also count
    against the write window.
    """
    now = time.monotonic()
    if not _admit(_global_timestamps, _GLOBAL_RATE_LIMIT, now):
        return f"Rate limit exceeded: {_GLOBAL_RATE_LIMIT} calls/min globally. Try again shortly."
    if tool_name in WRITE_TOOLS and not _admit(_write_timestamps, _WRITE_RATE_LIMIT, now):
        return f"Rate limit exceeded: {_WRITE_RATE_LIMIT} write calls/min. Try again shortly."
    return None


def create_server(store: SQLiteStore) -> Server:
    """Build an MCP Server whose tools operate on *store*."""
    server = Server(SERVER_NAME)
    handlers = build_handlers(store)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """Return all agent memory tools."""
        return [
            Tool(
                name=schema["name"],
                description=schema["description"],
                inputSchema=schema["inputSchema"],
            )
            for schema in TOOL_SCHEMAS
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict) -> list[TextContent]:
        """Dispatch tool call to the appropriate handler."""
        global _last_activity
        _last_activity = time.monotonic()

        rate_err = _check_rate_limit(name)
        if rate_err:
            return [TextContent(type="text", text=rate_err)]

        handler = handlers.get(name)
        if not handler:
            return [TextContent(type="text", text=f"Unknown tool: {name}")]

        try:
            result = await handler(arguments or {})
            # Extract text from MCP response format
            content_list = result.get("content", [{}])
            text = content_list[0].get("text", str(result)) if content_list else str(result)
            return [TextContent(type="text", text=text)]
        except Exception as e:
            logger.error("Tool %s failed: %s", name, e)
            return [TextContent(type="text", text=f"Error in {name}: {e}")]

    return server


async def _idle_watchdog(store: SQLiteStore):
    """Exit the process if no tool call has been received within the timeout."""
    while True:
        await asyncio.sleep(30)
        idle = time.monotonic() - _last_activity
        if idle >= _IDLE_TIMEOUT:
            logger.warning("Idle for %.0fs (limit %ds), shutting down.", idle, _IDLE_TIMEOUT)
            store.close()
            os._exit(0)


async def main(db_path=None):
    """Entry point for the agent memory MCP server (stdio transport)."""
    from mcp.server.stdio import stdio_server

    logging.basicConfig(level=logging.WARNING, stream=sys.stderr)
    logger.info("Starting agent memory MCP server...")

    store = SQLiteStore(db_path)
    server = create_server(store)

    # Keep a reference; unreferenced tasks can be garbage collected.
    _watchdog_task = asyncio.create_task(_idle_watchdog(store)) if _IDLE_TIMEOUT > 0 else None

    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
    finally:
        if _watchdog_task is not None:
            _watchdog_task.cancel()
        store.close()


if __name__ == "__main__":
    asyncio.run(main())
