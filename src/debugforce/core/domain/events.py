"""
Domain Events for Scenario Investigation

Each loop iteration of a scenario agent turns the model's reply into one or
more Actions:
- tool_call: invoke a named tool with structured arguments
- conclude: stop investigating and record a conclusion
- invalid: the reply could not be acted on (unknown tool, bad arguments)

Invalid actions are fed back to the model as error observations instead of
crashing the agent.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

CONCLUDE_TOOL_NAME = "conclude"


class ActionType(str, Enum):
    """Type of action the scenario agent can take."""

    TOOL_CALL = "tool_call"
    CONCLUDE = "conclude"
    INVALID = "invalid"


@dataclass
class Action:
    """
    An action decided by the model.

    Attributes:
        type: Type of action (tool_call, conclude, invalid)
        tool: Tool name (tool_call, or the offending name for invalid)
        tool_input: Parsed arguments (tool_call)
        tool_call_id: Provider id of the tool call, echoed back with the result
        conclusion: Conclusion text (conclude)
        confirmed: Whether the hypothesis was confirmed (conclude)
        confidence: Confidence in the conclusion, 0.0-1.0 (conclude)
        error: Why the action could not be acted on (invalid)
    """

    type: ActionType
    tool: str | None = None
    tool_input: dict[str, Any] | None = None
    tool_call_id: str | None = None
    conclusion: str | None = None
    confirmed: bool = False
    confidence: float | None = None
    error: str | None = None
