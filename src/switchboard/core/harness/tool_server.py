"""
Expose client tools to a harness as a local MCP server.

Backends only call external tools through MCP. For each query with client
tools, the adapter starts a streamable-HTTP MCP server on the loopback
interface, protected by a per-query bearer token, and hands the backend an
``McpHttpServerConfig`` pointing at it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import secrets
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

import mcp.types as types
import uvicorn
from mcp.server.lowlevel import Server
from mcp.server.streamable_http_manager import StreamableHTTPSessionManager
from starlette.responses import JSONResponse

from .models import ClientTool, McpHttpServerConfig

logger = logging.getLogger(__name__)

TOOL_SERVER_NAME = "switchboard_client_tools"
TOOL_SERVER_HOST = "127.0.0.1"

# Seconds to wait for uvicorn to bind before giving up
STARTUP_TIMEOUT = 10.0


class ToolServerError(Exception):
    """Raised when a client tool call cannot be completed."""


async def dispatch_tool_call(
    tools: dict[str, ClientTool], name: str, arguments: dict[str, Any] | None
) -> str:
    """
    Run a client tool and return its text content.

    Raises:
        ToolServerError: For unknown tools, error results and handler failures
    """
    tool = tools.get(name)
    if tool is None:
        raise ToolServerError(f"Unknown tool: {name}")

    try:
        result = await tool.handler(arguments or {})
    except Exception as e:
        logger.debug(f"Client tool {name} raised: {e}")
        raise ToolServerError(str(e)) from e

    if result.error is not None:
        raise ToolServerError(result.error)
    return result.content or ""


def build_mcp_server(tools: list[ClientTool]) -> Server:
    """Create the low-level MCP server that lists and dispatches ``tools``."""
    by_name = {tool.name: tool for tool in tools}
    server: Server = Server(TOOL_SERVER_NAME)

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return [
            types.Tool(
                name=tool.name,
                description=tool.definition.description,
                inputSchema=tool.definition.input_schema,
            )
            for tool in tools
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[types.TextContent]:
        # Raised exceptions are returned to the backend as isError results
        text = await dispatch_tool_call(by_name, name, arguments)
        return [types.TextContent(type="text", text=text)]

    return server


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves the host's signal handling alone."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


@dataclass
class ToolServerHandle:
    """A running client-tool server and the config a backend needs to reach it."""

    server_name: str
    mcp_server: McpHttpServerConfig
    _server: _EmbeddedServer | None = None
    _task: asyncio.Task[None] | None = None

    async def stop(self) -> None:
        """Shut the server down. Safe to call more than once."""
        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                try:
                    await asyncio.wait_for(self._task, timeout=5.0)
                except asyncio.TimeoutError:
                    self._task.cancel()
                    await asyncio.gather(self._task, return_exceptions=True)
            self._task = None


async def start_tool_server(tools: list[ClientTool]) -> ToolServerHandle:
    """
    Start an MCP server exposing ``tools`` on a random loopback port.

    Returns:
        Handle with the HTTP config to give the backend and a ``stop()``
    """
    token = secrets.token_hex(32)
    expected = f"Bearer {token}".encode()
    session_manager = StreamableHTTPSessionManager(
        app=build_mcp_server(tools), json_response=True, stateless=True
    )

    async def app(scope: dict[str, Any], receive: Any, send: Any) -> None:
        if scope["type"] != "http":
            return
        headers = dict(scope.get("headers") or [])
        if headers.get(b"authorization") != expected:
            response = JSONResponse({"error": "Unauthorized"}, status_code=401)
            await response(scope, receive, send)
            return
        await session_manager.handle_request(scope, receive, send)

    server = _EmbeddedServer(
        uvicorn.Config(
            app, host=TOOL_SERVER_HOST, port=0, lifespan="off", log_level="warning"
        )
    )

    async def serve() -> None:
        async with session_manager.run():
            await server.serve()

    task = asyncio.create_task(serve())
    loop = asyncio.get_running_loop()
    deadline = loop.time() + STARTUP_TIMEOUT
    while not server.started:
        if task.done():
            # Surface the bind/startup failure
            task.result()
            raise ToolServerError("Client tool server exited during startup")
        if loop.time() > deadline:
            server.should_exit = True
            task.cancel()
            raise ToolServerError("Client tool server did not start in time")
        await asyncio.sleep(0.01)

    port = server.servers[0].sockets[0].getsockname()[1]
    logger.debug(f"Client tool server listening on {TOOL_SERVER_HOST}:{port}")
    return ToolServerHandle(
        server_name=TOOL_SERVER_NAME,
        mcp_server=McpHttpServerConfig(
            url=f"http://{TOOL_SERVER_HOST}:{port}/mcp",
            headers={"Authorization": f"Bearer {token}"},
        ),
        _server=server,
        _task=task,
    )
