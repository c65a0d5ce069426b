"""
Tool Converter - OpenAI function calling format conversion.

Converts agent tools to the schema used for native tool calling and turns
tool results back into chat messages.
"""

import json
from typing import Any

from debugforce.core.interfaces.tools import ToolProtocol

TRUNCATION_MARKER = "\n\n[... TRUNCATED - {overflow} more chars ...]"


def tools_to_openai_format(
    tools: dict[str, ToolProtocol],
) -> list[dict[str, Any]]:
    """
    Convert tools to OpenAI function calling format.

    Returns:
        [{"type": "function", "function": {"name", "description", "parameters"}}, ...]
    """
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters_schema,
            },
        }
        for tool in tools.values()
    ]


def tool_result_to_message(
    tool_call_id: str,
    tool_name: str,
    result: dict[str, Any],
    max_output_chars: int = 20000,
) -> dict[str, Any]:
    """
    Convert a tool result to a ``role: tool`` message.

    Large outputs (sandbox stdout, file dumps) are truncated so that one noisy
    command cannot overflow the scenario's context window.
    """
    content = json.dumps(
        _truncate_tool_result(result, max_output_chars), ensure_ascii=False, default=str
    )
    return {
        "role": "tool",
        "tool_call_id": tool_call_id,
        "name": tool_name,
        "content": content,
    }


def assistant_tool_calls_to_message(
    tool_calls: list[dict[str, Any]],
    content: str | None = None,
) -> dict[str, Any]:
    return {
        "role": "assistant",
        "content": content,
        "tool_calls": tool_calls,
    }


def _truncate_tool_result(result: dict[str, Any], max_chars: int) -> dict[str, Any]:
    truncated = result.copy()

    for key in ("output", "stdout", "stderr", "error", "content"):
        if key not in truncated:
            continue
        value = truncated[key]
        if isinstance(value, (list, dict)):
            value = json.dumps(value, ensure_ascii=False, default=str)
            if len(value) <= max_chars:
                continue
        if isinstance(value, str) and len(value) > max_chars:
            overflow = len(value) - max_chars
            truncated[key] = value[:max_chars] + TRUNCATION_MARKER.format(overflow=overflow)

    return truncated
