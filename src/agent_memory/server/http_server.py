"""Agent Memory HTTP Server — Streamable HTTP transport for the MCP server.

Wraps the stdio MCP server in a Starlette ASGI app using the MCP SDK's
StreamableHTTPSessionManager, so clients that cannot spawn a subprocess
(containers, remote editors) can reach the same tools.
"""

import contextlib
import logging
import os
import secrets
from collections.abc import AsyncIterator
from pathlib import Path

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route
from starlette.types import Receive, Scope, Send

from mcp.server.streamable_http_manager import StreamableHTTPSessionManager

from agent_memory.crypto import memory_home

logger = logging.getLogger("agent_memory.server.http")


def api_key_path() -> Path:
    return memory_home() / "api_key"


def get_or_create_api_key() -> str:
    """AGENT_MEMORY_API_KEY if set, else the key file under the memory home (created on demand)."""
    env_key = os.environ.get("AGENT_MEMORY_API_KEY", "").strip()
    if env_key:
        return env_key
    path = api_key_path()
    if path.exists():
        return path.read_text().strip()
    key = secrets.token_urlsafe(32)
    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    path.write_text(key + "\n")
    path.chmod(0o600)
    logger.info("Generated HTTP API key at %s", path)
    return key


def create_http_app(server, api_key: str | None = None) -> Starlette:
    """Create a Starlette ASGI app wrapping the MCP server.

    Args:
        server: An MCP Server from ``mcp_server.create_server``.
        api_key: Optional API key for authentication. None disables auth.
    """
    session_manager = StreamableHTTPSessionManager(
        app=server,
        json_response=True,
        stateless=True,
    )

    async def mcp_asgi_app(scope: Scope, receive: Receive, send: Send) -> None:
        """ASGI app for the /mcp endpoint — delegates to StreamableHTTPSessionManager."""
        if api_key:
            request = Request(scope, receive)
            provided = request.headers.get("x-api-key") or request.query_params.get("api_key")
            if provided is None or not secrets.compare_digest(provided, api_key):
                response = JSONResponse({"error": "Unauthorized"}, status_code=401)
                await response(scope, receive, send)
                return
        await session_manager.handle_request(scope, receive, send)

    async def health(request: Request):
        from agent_memory import __version__

        return JSONResponse({"status": "ok", "server": "agent-memory", "version": __version__})

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with session_manager.run():
            yield

    app = Starlette(
        routes=[
            Mount("/mcp", app=mcp_asgi_app),
            Route("/health", endpoint=health),
        ],
        lifespan=lifespan,
    )
    return app


async def run_http(host: str, port: int, api_key: str | None, db_path=None) -> None:
    """Open the store, create the HTTP app, run uvicorn."""
    import uvicorn

    from agent_memory.server.mcp_server import create_server
    from agent_memory.sqlite_store import SQLiteStore

    store = SQLiteStore(db_path)
    try:
        app = create_http_app(create_server(store), api_key=api_key)
        config = uvicorn.Config(app, host=host, port=port, log_level="info")
        srv = uvicorn.Server(config)
        await srv.serve()
    finally:
        store.close()
