"""Tools package for Nimbus."""

from pathlib import Path

from nimbus.tools.plan import PlanEnterTool, PlanExitTool
from nimbus.tools.registry import Tool, ToolRegistry, ToolResult


def create_default_registry(project_dir: Path | str | None = None) -> ToolRegistry:
    """Registry with the built-in tools registered."""
    registry = ToolRegistry(project_dir)
    registry.register(PlanEnterTool())
    registry.register(PlanExitTool())
    return registry


__all__ = [
    "Tool",
    "ToolRegistry",
    "ToolResult",
    "PlanEnterTool",
    "PlanExitTool",
    "create_default_registry",
]
