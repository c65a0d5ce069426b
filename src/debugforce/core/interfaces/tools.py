"""
Tool Protocol

Uniform interface for everything a scenario agent can invoke, whether it is
backed by the sandbox or by a remote tool server.
"""

from typing import Any, Protocol


class ToolProtocol(Protocol):
    """
    Protocol for agent tools.

    ``execute`` returns a result dict and does not raise for tool-level
    failures:
        {"success": True, "output": ...}
        {"success": False, "error": str, "error_code": str | None}
    """

    @property
    def name(self) -> str:
        ...

    @property
    def description(self) -> str:
        ...

    @property
    def parameters_schema(self) -> dict[str, Any]:
        ...

    async def execute(self, **kwargs: Any) -> dict[str, Any]:
        ...


class ToolRegistryProtocol(Protocol):
    """
    Protocol for the tool client registry shared by all scenarios.

    ``connect`` raises ToolDisabledError or ToolUnavailableError; ``invoke``
    raises ToolUnavailableError once its single reconnect attempt failed.
    """

    async def connect(self, tool_name: str, session_id: str, context: dict[str, Any] | None = None) -> Any:
        ...

    async def invoke(self, client: Any, method: str, arguments: dict[str, Any]) -> dict[str, Any]:
        ...

    def list_available(self) -> list[Any]:
        ...

    async def close_session(self, session_id: str) -> None:
        ...
