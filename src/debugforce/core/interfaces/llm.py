"""
LLM Provider Protocol

Capability required from a language model provider: given messages and a
tool schema, return either content or tool-call requests.
"""

from typing import Any, Protocol


class LLMProviderProtocol(Protocol):
    """
    Protocol for LLM completions with native tool calling.

    ``complete`` never raises for provider errors; it returns a result dict:
        {"success": True, "content": str | None, "tool_calls": list | None, "usage": dict}
        {"success": False, "error": str, "error_type": str}

    Tool calls use the OpenAI shape:
        {"id": "...", "type": "function",
         "function": {"name": "...", "arguments": "<json string>"}}
    """

    async def complete(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        ...
