"""
Unit tests for ToolClientRegistry and ToolClient.

Tool servers are replaced by an in-memory session factory, so no process
or network connection is ever opened.
"""

import asyncio
from contextlib import asynccontextmanager
from types import SimpleNamespace

import pytest
from mcp.shared.exceptions import McpError
from mcp.types import ErrorData

from debugforce.core.domain.errors import ToolDisabledError, ToolUnavailableError
from debugforce.infrastructure.tools.mcp_client import ToolClient, ToolServerConfig
from debugforce.infrastructure.tools.native import ToolServerTool
from debugforce.infrastructure.tools.registry import ToolClientRegistry

TOOL_SERVERS = {
    "filesystem": {
        "type": "stdio",
        "command": "fs-server",
        "args": ["--root", "{repoPath}"],
        "tools": ["read_file"],
        "description": "Read repository files",
    },
    "search": {"type": "local", "command": "search-server"},
    "issue-tracker": {"type": "remote", "disabled": True},
}


class FakeSession:
    """In-memory MCP session recording call concurrency."""

    def __init__(self, broken=False):
        self.broken = broken
        self.in_flight = 0
        self.max_in_flight = 0
        self.calls = []

    async def call_tool(self, name, arguments):
        if self.broken:
            raise ConnectionResetError("pipe closed")
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            self.calls.append((name, arguments))
            return SimpleNamespace(
                content=[SimpleNamespace(text=f"{name} ok")],
                isError=name == "fail",
            )
        finally:
            self.in_flight -= 1

    async def list_tools(self):
        return SimpleNamespace(tools=[
            SimpleNamespace(name="read_file", description="Read a file", inputSchema={"type": "object"}),
        ])


class FakeSessionFactory:
    """Session factory double: counts connection attempts per server."""

    def __init__(self):
        self.opened = []
        self.sessions = []
        self.unreachable = set()
        self.broken_sessions = 0

    @asynccontextmanager
    async def __call__(self, server, context):
        self.opened.append((server.name, dict(context)))
        if server.name in self.unreachable:
            raise ConnectionRefusedError(f"{server.name} refused")
        broken = self.broken_sessions > 0
        if broken:
            self.broken_sessions -= 1
        session = FakeSession(broken=broken)
        self.sessions.append(session)
        yield session


@pytest.fixture
def factory():
    return FakeSessionFactory()


@pytest.fixture
def registry(factory):
    return ToolClientRegistry.from_config(TOOL_SERVERS, session_factory=factory)


class TestToolServerConfig:
    """Tests for tool server configuration parsing."""

    def test_transport_aliases(self):
        assert ToolServerConfig.from_dict("a", {"type": "stdio", "command": "x"}).type == "local"
        assert ToolServerConfig.from_dict("b", {"type": "sse", "url": "http://h/sse"}).type == "remote"

    def test_local_requires_command(self):
        with pytest.raises(ValueError):
            ToolServerConfig.from_dict("a", {"type": "local"})

    def test_disabled_needs_no_command(self):
        assert ToolServerConfig.from_dict("a", {"type": "local", "disabled": True}).disabled

    def test_unknown_transport(self):
        with pytest.raises(ValueError):
            ToolServerConfig.from_dict("a", {"type": "carrier-pigeon", "command": "x"})

    def test_repo_path_substitution(self):
        server = ToolServerConfig.from_dict("fs", TOOL_SERVERS["filesystem"])
        assert server.resolved_args({"repo_path": "/repo"}) == ["--root", "/repo"]
        assert server.resolved_args(None) == ["--root", "{repoPath}"]


class TestConnect:
    """Tests for ToolClientRegistry.connect."""

    @pytest.mark.asyncio
    async def test_disabled_tool_fails_without_io(self, registry, factory):
        with pytest.raises(ToolDisabledError):
            await registry.connect("issue-tracker", "session-1")
        assert factory.opened == []

    @pytest.mark.asyncio
    async def test_unknown_tool(self, registry):
        with pytest.raises(ToolUnavailableError):
            await registry.connect("nope", "session-1")

    @pytest.mark.asyncio
    async def test_connection_cached_per_session(self, registry, factory):
        first = await registry.connect("filesystem", "session-1", {"repo_path": "/repo"})
        again = await registry.connect("filesystem", "session-1", {"repo_path": "/repo"})
        other = await registry.connect("filesystem", "session-2", {"repo_path": "/repo"})

        assert first is again
        assert first is not other
        assert len(factory.opened) == 2
        assert factory.opened[0] == ("filesystem", {"repo_path": "/repo"})
        await registry.close()

    @pytest.mark.asyncio
    async def test_concurrent_connects_share_one_attempt(self, registry, factory):
        clients = await asyncio.gather(
            registry.connect("filesystem", "session-1"),
            registry.connect("filesystem", "session-1"),
        )

        assert clients[0] is clients[1]
        assert len(factory.opened) == 1
        await registry.close()

    @pytest.mark.asyncio
    async def test_unreachable_server_retried_on_next_connect(self, registry, factory):
        factory.unreachable.add("search")

        with pytest.raises(ToolUnavailableError):
            await registry.connect("search", "session-1")

        factory.unreachable.clear()
        client = await registry.connect("search", "session-1")

        assert client.alive
        assert len(factory.opened) == 2
        await registry.close()

    @pytest.mark.asyncio
    async def test_failures_are_per_tool(self, registry, factory):
        factory.unreachable.add("search")

        with pytest.raises(ToolUnavailableError):
            await registry.connect("search", "session-1")
        client = await registry.connect("filesystem", "session-1")
        result = await registry.invoke(client, "read_file", {"path": "a"})

        assert result == {"success": True, "output": "read_file ok"}
        await registry.close()


class TestInvoke:
    """Tests for ToolClientRegistry.invoke."""

    @pytest.mark.asyncio
    async def test_concurrent_scenarios_share_serialized_client(self, registry, factory):
        async def scenario(n):
            client = await registry.connect("filesystem", "session-1")
            return await registry.invoke(client, "read_file", {"path": f"file-{n}"})

        results = await asyncio.gather(*(scenario(n) for n in range(4)))

        assert all(r["success"] for r in results)
        assert len(factory.sessions) == 1
        session = factory.sessions[0]
        assert session.max_in_flight == 1
        assert sorted(args["path"] for _, args in session.calls) == [f"file-{n}" for n in range(4)]
        await registry.close()

    @pytest.mark.asyncio
    async def test_tool_error_is_result(self, registry):
        client = await registry.connect("filesystem", "session-1")

        result = await registry.invoke(client, "fail", {})

        assert result["success"] is False
        assert client.alive
        await registry.close()

    @pytest.mark.asyncio
    async def test_reconnects_once_after_transport_error(self, registry, factory):
        factory.broken_sessions = 1
        client = await registry.connect("filesystem", "session-1")

        result = await registry.invoke(client, "read_file", {"path": "a"})

        assert result["success"] is True
        assert len(factory.opened) == 2
        assert client.alive is False
        await registry.close()

    @pytest.mark.asyncio
    async def test_unavailable_after_failed_reconnect(self, registry, factory):
        factory.broken_sessions = 2
        client = await registry.connect("filesystem", "session-1")

        with pytest.raises(ToolUnavailableError):
            await registry.invoke(client, "read_file", {"path": "a"})
        assert len(factory.opened) == 2
        await registry.close()

    @pytest.mark.asyncio
    async def test_closed_client_reconnects(self, registry, factory):
        client = await registry.connect("filesystem", "session-1")
        await registry.close_session("session-1")
        assert client.alive is False

        result = await registry.invoke(client, "read_file", {})

        assert result["success"] is True
        assert len(factory.opened) == 2
        await registry.close()


class TestToolClient:
    """Tests for a single serialized tool server connection."""

    @pytest.mark.asyncio
    async def test_rejection_after_caller_cancelled_keeps_connection(self):
        gate = asyncio.Event()

        class RejectingSession:
            async def call_tool(self, name, arguments):
                if name == "slow_reject":
                    await gate.wait()
                    raise McpError(ErrorData(code=-32601, message="method not found"))
                return SimpleNamespace(content=[SimpleNamespace(text="ok")], isError=False)

        @asynccontextmanager
        async def session_factory(server, context):
            yield RejectingSession()

        server = ToolServerConfig.from_dict("search", {"type": "local", "command": "search-server"})
        client = await ToolClient(server, "session-1", session_factory=session_factory).start()

        call = asyncio.create_task(client.call("slow_reject", {}))
        await asyncio.sleep(0.01)
        call.cancel()
        await asyncio.gather(call, return_exceptions=True)
        gate.set()

        result = await asyncio.wait_for(client.call("read_file", {}), timeout=1)

        assert result == {"success": True, "output": "ok"}
        assert client.alive is True
        await client.close()


class TestRegistryMetadata:
    """Tests for listing and validating tool servers."""

    def test_list_available(self, registry):
        descriptors = {d.name: d for d in registry.list_available()}

        assert set(descriptors) == {"filesystem", "search", "issue-tracker"}
        assert descriptors["issue-tracker"].disabled
        assert descriptors["filesystem"].methods == ("read_file",)
        assert descriptors["filesystem"].to_dict()["kind"] == "local"

    @pytest.mark.asyncio
    async def test_validate(self, registry):
        report = await registry.validate("filesystem")

        assert report == {"connected": True, "tools": ["read_file"], "error": None}

    @pytest.mark.asyncio
    async def test_validate_disabled(self, registry, factory):
        report = await registry.validate("issue-tracker")

        assert report["connected"] is False
        assert "disabled" in report["error"]
        assert factory.opened == []


class TestToolServerTool:
    """Tests for the agent-facing tool server proxy."""

    @pytest.mark.asyncio
    async def test_invokes_method(self, registry, factory):
        tool = ToolServerTool(registry, "filesystem", "session-1", {"repo_path": "/repo"})

        result = await tool.execute(method="read_file", arguments={"path": "README.md"})

        assert result == {"success": True, "output": "read_file ok"}
        assert factory.sessions[0].calls == [("read_file", {"path": "README.md"})]
        assert tool.parameters_schema["properties"]["method"]["enum"] == ["read_file"]
        await registry.close()

    @pytest.mark.asyncio
    async def test_disabled_tool_is_error_result(self, registry):
        tool = ToolServerTool(registry, "issue-tracker", "session-1")

        result = await tool.execute(method="search")

        assert result["success"] is False
        assert result["error_code"] == "ToolDisabled"
