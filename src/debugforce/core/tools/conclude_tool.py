from typing import Any

from debugforce.core.domain.events import CONCLUDE_TOOL_NAME


class ConcludeTool:
    """
    Terminal tool: the scenario agent intercepts calls to it and stops
    investigating. Only its schema is ever sent to the model.
    """

    @property
    def name(self) -> str:
        return CONCLUDE_TOOL_NAME

    @property
    def description(self) -> str:
        return (
            "Finish the investigation. Call this once you have enough evidence to "
            "confirm or reject the hypothesis."
        )

    @property
    def parameters_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "conclusion": {
                    "type": "string",
                    "description": "What you found, citing the evidence (commands and outputs)",
                },
                "confirmed": {
                    "type": "boolean",
                    "description": "True if the evidence confirms the hypothesis as the root cause",
                },
                "confidence": {
                    "type": "number",
                    "minimum": 0,
                    "maximum": 1,
                    "description": "Confidence in the conclusion, 0.0-1.0",
                },
            },
            "required": ["conclusion", "confirmed"],
        }

    async def execute(self, **kwargs: Any) -> dict[str, Any]:
        return {"success": True, "output": "Conclusion recorded."}
