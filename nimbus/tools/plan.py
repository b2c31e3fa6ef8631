"""Tools that move the agent into and out of plan mode."""

import json
from typing import Any

from nimbus.tools.registry import Tool, ToolResult


class PlanEnterTool(Tool):
    """Switch to plan mode for research and planning before implementation."""

    name = "plan_enter"
    description = (
        "Enter plan mode to create a structured plan before implementation. "
        "Research the codebase, ask clarifying questions, write todos, and call "
        "plan_exit when the plan is ready."
    )
    parameters = {
        "type": "object",
        "properties": {
            "reason": {"type": "string", "description": "Why entering plan mode"},
        },
        "required": [],
    }

    async def execute(self, reason: str | None = None, **kwargs: Any) -> ToolResult:
        return ToolResult(
            content=json.dumps({
                "mode": "plan",
                "entered": True,
                "reason": reason,
                "message": "Entered plan mode. Research, ask questions, and create todos. "
                "Use plan_exit when ready to build.",
            })
        )


class PlanExitTool(Tool):
    """Propose leaving plan mode; the user confirms before building starts."""

    name = "plan_exit"
    description = (
        "Exit plan mode and propose switching to build mode. Use this once the plan "
        "is complete and all clarifying questions are answered. The user will be "
        "asked to confirm."
    )
    parameters = {
        "type": "object",
        "properties": {
            "summary": {"type": "string", "description": "Summary of the plan for user approval"},
            "ready": {
                "type": "boolean",
                "description": "Whether you believe the plan is ready for implementation",
            },
        },
        "required": [],
    }

    async def execute(self, summary: str | None = None, ready: bool = True, **kwargs: Any) -> ToolResult:
        if not ready:
            payload = {
                "mode": "plan",
                "exited": False,
                "message": "Plan not marked as ready. Continue planning or set ready=true when done.",
            }
        else:
            payload = {
                "mode": "plan",
                "proposingExit": True,
                "summary": summary,
                "message": "Proposing to exit plan mode and start building. Awaiting user confirmation.",
            }
        return ToolResult(content=json.dumps(payload))
