"""Tools handed to scenario agents."""

from debugforce.infrastructure.tools.native.sandbox_tools import (
    GitTool,
    RunCodeTool,
    RunToolTool,
)
from debugforce.infrastructure.tools.native.tool_server_tool import ToolServerTool

__all__ = [
    "GitTool",
    "RunCodeTool",
    "RunToolTool",
    "ToolServerTool",
]
