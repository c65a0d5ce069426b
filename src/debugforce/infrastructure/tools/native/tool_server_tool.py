"""
Tool server proxy.

Exposes one configured tool server to a scenario agent as a single tool
taking ``{method, arguments}``. Connections go through the shared registry
with the scenario's session id, so sibling scenarios reuse one connection.
"""

from typing import Any

from debugforce.core.domain.errors import ToolDisabledError, ToolUnavailableError
from debugforce.infrastructure.tools.registry import ToolClientRegistry


class ToolServerTool:
    def __init__(
        self,
        registry: ToolClientRegistry,
        tool_name: str,
        session_id: str,
        context: dict[str, Any] | None = None,
    ):
        self.registry = registry
        self.tool_name = tool_name
        self.session_id = session_id
        self.context = dict(context or {})
        server = registry.get_server(tool_name)
        self._description = server.description if server else ""
        self._methods = list(server.tools) if server else []

    @property
    def name(self) -> str:
        return self.tool_name

    @property
    def description(self) -> str:
        text = self._description or f"Tool server '{self.tool_name}'."
        if self._methods:
            text += f" Methods: {', '.join(self._methods)}."
        return text

    @property
    def parameters_schema(self) -> dict[str, Any]:
        method = {"type": "string", "description": "Method to invoke on the tool server"}
        if self._methods:
            method["enum"] = list(self._methods)
        return {
            "type": "object",
            "properties": {
                "method": method,
                "arguments": {
                    "type": "object",
                    "description": "Arguments for the method",
                },
            },
            "required": ["method"],
        }

    async def execute(self, method: str, arguments: dict[str, Any] | None = None, **kwargs) -> dict[str, Any]:
        try:
            client = await self.registry.connect(self.tool_name, self.session_id, self.context)
            return await self.registry.invoke(client, method, arguments or {})
        except (ToolDisabledError, ToolUnavailableError) as e:
            return {"success": False, "error": e.message, "error_code": e.code}
