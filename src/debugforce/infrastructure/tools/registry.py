"""
Tool Client Registry

Keeps connections to the configured tool servers, cached per
(tool name, session id). The registry is the only resource shared across the
concurrent scenarios of a session:
- cache access is guarded by one lock
- concurrent connects for the same pair share a single connection attempt
- a failed attempt is dropped from the cache so the next connect retries
- calls on one client are serialized by that client's worker

Failures are per tool. A disabled or unreachable server never affects the
others.
"""

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any

import structlog

from debugforce.core.domain.errors import ToolDisabledError, ToolUnavailableError
from debugforce.infrastructure.tools.mcp_client import (
    SessionFactory,
    ToolClient,
    ToolServerConfig,
    ToolTransportError,
    open_mcp_session,
)


@dataclass(frozen=True)
class ToolDescriptor:
    """Public description of a configured tool server."""

    name: str
    kind: str
    description: str
    disabled: bool
    methods: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "description": self.description,
            "disabled": self.disabled,
            "methods": list(self.methods),
        }


class ToolClientRegistry:
    """
    Registry of tool server connections.

    Example:
        >>> registry = ToolClientRegistry.from_config({"fs": {"type": "local", "command": "fs-server"}})
        >>> client = await registry.connect("fs", session_id, {"repo_path": "/repo"})
        >>> result = await registry.invoke(client, "read_file", {"path": "README.md"})
    """

    def __init__(
        self,
        servers: list[ToolServerConfig],
        session_factory: SessionFactory = open_mcp_session,
    ):
        self._servers = {server.name: server for server in servers}
        self._session_factory = session_factory
        self._clients: dict[tuple[str, str], asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self.logger = structlog.get_logger().bind(component="tool_registry")

    @classmethod
    def from_config(
        cls,
        tool_servers: dict[str, dict[str, Any]] | None,
        session_factory: SessionFactory = open_mcp_session,
    ) -> "ToolClientRegistry":
        servers = [
            ToolServerConfig.from_dict(name, data or {})
            for name, data in (tool_servers or {}).items()
        ]
        return cls(servers, session_factory=session_factory)

    def get_server(self, tool_name: str) -> ToolServerConfig | None:
        return self._servers.get(tool_name)

    def list_available(self) -> list[ToolDescriptor]:
        return [
            ToolDescriptor(
                name=server.name,
                kind=server.type,
                description=server.description,
                disabled=server.disabled,
                methods=tuple(server.tools),
            )
            for server in self._servers.values()
        ]

    async def connect(
        self,
        tool_name: str,
        session_id: str,
        context: dict[str, Any] | None = None,
    ) -> ToolClient:
        """
        Return the live client for (tool_name, session_id), connecting if needed.

        Raises:
            ToolDisabledError: If the server is disabled (no I/O is attempted)
            ToolUnavailableError: If the server is unknown or unreachable
        """
        server = self._servers.get(tool_name)
        if server is None:
            raise ToolUnavailableError(f"Unknown tool server: {tool_name}")
        if server.disabled:
            raise ToolDisabledError(f"Tool server is disabled: {tool_name}")

        key = (tool_name, session_id)
        async with self._lock:
            task = self._clients.get(key)
            if task is not None and self._is_stale(task):
                del self._clients[key]
                task = None
            if task is None:
                self.logger.info("tool_connecting", tool=tool_name, session_id=session_id)
                task = asyncio.create_task(self._open(server, session_id, context))
                self._clients[key] = task

        try:
            return await asyncio.shield(task)
        except ToolTransportError as e:
            async with self._lock:
                if self._clients.get(key) is task:
                    del self._clients[key]
            self.logger.warning(
                "tool_connect_failed", tool=tool_name, session_id=session_id, error=str(e)
            )
            raise ToolUnavailableError(str(e)) from e

    async def invoke(
        self,
        client: ToolClient,
        method: str,
        arguments: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Invoke ``method`` through ``client``.

        A dead or disconnected client gets exactly one reconnect attempt.

        Raises:
            ToolUnavailableError: If the call failed again after reconnecting
        """
        arguments = arguments or {}
        if client.alive:
            try:
                return await client.call(method, arguments)
            except ToolTransportError as e:
                self.logger.warning(
                    "tool_call_transport_error",
                    tool=client.tool_name,
                    method=method,
                    error=str(e),
                )

        fresh = await self._reconnect(client)
        try:
            return await fresh.call(method, arguments)
        except ToolTransportError as e:
            raise ToolUnavailableError(
                f"Tool '{client.tool_name}' unavailable after reconnect: {e}"
            ) from e

    async def validate(self, tool_name: str) -> dict[str, Any]:
        """Connect with a throwaway session and report what the server offers."""
        session_id = f"validation-{uuid.uuid4().hex[:8]}"
        try:
            client = await self.connect(tool_name, session_id)
            methods = await client.list_methods()
            return {
                "connected": True,
                "tools": [m["name"] for m in methods],
                "error": None,
            }
        except (ToolDisabledError, ToolUnavailableError, ToolTransportError) as e:
            return {"connected": False, "tools": [], "error": str(e)}
        finally:
            await self.close_session(session_id)

    async def close_session(self, session_id: str) -> None:
        async with self._lock:
            keys = [key for key in self._clients if key[1] == session_id]
            tasks = [self._clients.pop(key) for key in keys]
        await self._close_tasks(tasks)
        if tasks:
            self.logger.info("tool_session_closed", session_id=session_id, clients=len(tasks))

    async def close(self) -> None:
        async with self._lock:
            tasks = list(self._clients.values())
            self._clients.clear()
        await self._close_tasks(tasks)

    async def _open(
        self,
        server: ToolServerConfig,
        session_id: str,
        context: dict[str, Any] | None,
    ) -> ToolClient:
        client = ToolClient(
            server, session_id, context, session_factory=self._session_factory
        )
        return await client.start()

    async def _reconnect(self, client: ToolClient) -> ToolClient:
        self.logger.info("tool_reconnecting", tool=client.tool_name, session_id=client.session_id)
        key = (client.tool_name, client.session_id)
        async with self._lock:
            task = self._clients.get(key)
            if (
                task is not None
                and task.done()
                and not task.cancelled()
                and task.exception() is None
                and task.result() is client
            ):
                del self._clients[key]
        await client.close()
        return await self.connect(client.tool_name, client.session_id, client.context)

    async def _close_tasks(self, tasks: list[asyncio.Task]) -> None:
        for task in tasks:
            if not task.done():
                task.cancel()
                continue
            if task.cancelled() or task.exception() is not None:
                continue
            await task.result().close()

    @staticmethod
    def _is_stale(task: asyncio.Task) -> bool:
        if not task.done():
            return False
        if task.cancelled() or task.exception() is not None:
            return True
        return not task.result().alive
