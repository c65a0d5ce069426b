"""
Tool Server Clients

A ToolClient is one live connection to a named tool server, speaking MCP
over either transport:
- local:  spawned subprocess, JSON-RPC over stdio
- remote: pre-addressed endpoint, server-sent events

Each client owns a dedicated worker task that opens the connection, serves
queued calls one at a time, and closes the connection from the same task.
Callers therefore never see two in-flight requests on one handle, and the
transport's context managers are entered and exited by a single task.
"""

import asyncio
import os
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager, AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import structlog
from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError

TRANSPORT_ALIASES = {
    "local": "local",
    "stdio": "local",
    "remote": "remote",
    "sse": "remote",
}

logger = structlog.get_logger()


class ToolTransportError(Exception):
    """Connection to a tool server broke, timed out or could not be opened."""


@dataclass
class ToolServerConfig:
    """
    Configuration of one named tool server.

    ``args`` may contain ``{repoPath}``, substituted from the connect context.
    """

    name: str
    type: str = "local"
    command: str | None = None
    args: list[str] = field(default_factory=list)
    url: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    disabled: bool = False
    timeout: float = 30.0
    tools: list[str] = field(default_factory=list)
    description: str = ""

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> "ToolServerConfig":
        kind = TRANSPORT_ALIASES.get(str(data.get("type", "local")).lower())
        if kind is None:
            raise ValueError(f"Unknown transport for tool server '{name}': {data.get('type')}")
        if kind == "local" and not data.get("command") and not data.get("disabled"):
            raise ValueError(f"Tool server '{name}' is local but has no command")
        if kind == "remote" and not data.get("url") and not data.get("disabled"):
            raise ValueError(f"Tool server '{name}' is remote but has no url")
        return cls(
            name=name,
            type=kind,
            command=data.get("command"),
            args=[str(a) for a in data.get("args", [])],
            url=data.get("url"),
            env={k: str(v) for k, v in (data.get("env") or {}).items()},
            disabled=bool(data.get("disabled", False)),
            timeout=float(data.get("timeout", 30.0)),
            tools=list(data.get("tools", [])),
            description=data.get("description", ""),
        )

    def resolved_args(self, context: dict[str, Any] | None) -> list[str]:
        repo_path = (context or {}).get("repo_path")
        if repo_path is None:
            return list(self.args)
        return [arg.replace("{repoPath}", str(repo_path)) for arg in self.args]


SessionFactory = Callable[[ToolServerConfig, dict[str, Any]], AbstractAsyncContextManager[Any]]


@asynccontextmanager
async def open_mcp_session(server: ToolServerConfig, context: dict[str, Any]):
    """Open and initialize an MCP ClientSession for ``server``."""
    async with AsyncExitStack() as stack:
        if server.type == "local":
            params = StdioServerParameters(
                command=server.command,
                args=server.resolved_args(context),
                env={**os.environ, **server.env} if server.env else None,
            )
            read, write = await stack.enter_async_context(stdio_client(params))
        else:
            read, write = await stack.enter_async_context(sse_client(server.url))
        session = await stack.enter_async_context(ClientSession(read, write))
        await session.initialize()
        yield session


def _content_to_text(content: list[Any]) -> str:
    parts = []
    for item in content or []:
        text = getattr(item, "text", None)
        parts.append(text if text is not None else str(item))
    return "\n".join(parts)


class ToolClient:
    """One serialized connection to a tool server, scoped to a session."""

    CLOSE_TIMEOUT = 5.0

    def __init__(
        self,
        server: ToolServerConfig,
        session_id: str,
        context: dict[str, Any] | None = None,
        session_factory: SessionFactory = open_mcp_session,
    ):
        self.server = server
        self.session_id = session_id
        self.context = dict(context or {})
        self._session_factory = session_factory
        self._queue: asyncio.Queue = asyncio.Queue()
        self._ready: asyncio.Future | None = None
        self._worker: asyncio.Task | None = None
        self.alive = False
        self.logger = logger.bind(
            component="tool_client", tool=server.name, session_id=session_id
        )

    @property
    def tool_name(self) -> str:
        return self.server.name

    @property
    def kind(self) -> str:
        return self.server.type

    async def start(self) -> "ToolClient":
        """
        Open the connection.

        Raises:
            ToolTransportError: If the server could not be reached
        """
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._worker = asyncio.create_task(self._run(), name=f"tool-client-{self.tool_name}")
        try:
            await self._ready
        except Exception as e:
            raise ToolTransportError(f"Failed to connect to '{self.tool_name}': {e}") from e
        self.alive = True
        self.logger.info("tool_client_connected", kind=self.kind)
        return self

    async def call(self, method: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """
        Invoke ``method`` on the server.

        Returns a result dict; a tool-reported error is a result with
        success=False, not an exception.

        Raises:
            ToolTransportError: If the connection is dead or broke during the call
        """

        async def op(session):
            result = await session.call_tool(method, arguments)
            text = _content_to_text(result.content)
            if getattr(result, "isError", False):
                return {"success": False, "error": text or f"{method} failed"}
            return {"success": True, "output": text}

        return await self._submit(op)

    async def list_methods(self) -> list[dict[str, Any]]:
        async def op(session):
            response = await session.list_tools()
            return [
                {
                    "name": tool.name,
                    "description": tool.description or "",
                    "input_schema": getattr(tool, "inputSchema", None) or {},
                }
                for tool in response.tools
            ]

        return await self._submit(op)

    async def close(self) -> None:
        if self._worker is None or self._worker.done():
            self.alive = False
            return
        self._queue.put_nowait(None)
        try:
            await asyncio.wait_for(self._worker, timeout=self.CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            self.logger.warning("tool_client_close_timeout")
        self.alive = False

    async def _submit(self, op: Callable[[Any], Awaitable[Any]]) -> Any:
        if not self.alive:
            raise ToolTransportError(f"Connection to '{self.tool_name}' is closed")
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((op, future))
        return await future

    async def _run(self) -> None:
        try:
            async with self._session_factory(self.server, self.context) as session:
                self._ready.set_result(None)
                await self._serve(session)
        except Exception as e:
            if not self._ready.done():
                self._ready.set_exception(e)
            else:
                self.logger.warning("tool_client_connection_lost", error=str(e))
        finally:
            self.alive = False
            self._fail_pending()
            self.logger.debug("tool_client_worker_stopped")

    async def _serve(self, session: Any) -> None:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            op, future = item
            if future.done():
                continue
            try:
                result = await asyncio.wait_for(op(session), timeout=self.server.timeout)
            except McpError as e:
                # protocol-level rejection of this one call; the connection is fine
                if not future.done():
                    future.set_result({"success": False, "error": str(e)})
                continue
            except asyncio.TimeoutError:
                self._resolve_error(
                    future, ToolTransportError(f"'{self.tool_name}' timed out after {self.server.timeout}s")
                )
                return
            except Exception as e:
                self._resolve_error(future, ToolTransportError(str(e) or type(e).__name__))
                return
            if not future.done():
                future.set_result(result)

    def _fail_pending(self) -> None:
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not None:
                self._resolve_error(item[1], ToolTransportError(f"Connection to '{self.tool_name}' closed"))

    @staticmethod
    def _resolve_error(future: asyncio.Future, error: Exception) -> None:
        if not future.done():
            future.set_exception(error)
