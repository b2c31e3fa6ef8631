import asyncio

import pytest

from nimbus.exceptions import ToolExecutionError
from nimbus.tools.registry import Tool, ToolRegistry, ToolResult


class EchoTool(Tool):
    name = "echo"
    description = "Echo"
    parameters = {
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
    }

    def __init__(self):
        self.seen: list[dict] = []

    async def execute(self, **kwargs):
        self.seen.append(kwargs)
        return ToolResult(success=True, content=str(kwargs.get("text", "")))


class SlowTool(Tool):
    name = "slow"
    description = "Slow"
    parameters = {"type": "object", "properties": {}, "required": []}
    timeout_seconds = 1.0

    async def execute(self, **kwargs):
        await asyncio.sleep(2.0)
        return ToolResult(success=True, content="done")


class CancellableTool(Tool):
    name = "cancellable"
    description = "Cancellable"
    parameters = {"type": "object", "properties": {}, "required": []}
    timeout_seconds = 20.0

    def __init__(self):
        self.cancelled = False

    async def execute(self, **kwargs):
        try:
            await asyncio.sleep(10.0)
            return ToolResult(success=True, content="done")
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class BrokenTool(Tool):
    name = "broken"
    description = "Broken"
    parameters = {"type": "object", "properties": {}, "required": []}

    async def execute(self, **kwargs):
        raise RuntimeError("disk on fire")


def test_tool_result_populates_error_from_content_on_failure() -> None:
    result = ToolResult(success=False, content="command failed with exit code 1")

    assert result.error == "command failed with exit code 1"


def test_tool_result_keeps_explicit_error_on_failure() -> None:
    result = ToolResult(success=False, content="stderr output", error="explicit error")

    assert result.error == "explicit error"


@pytest.mark.asyncio
async def test_registry_passes_project_and_session_context(tmp_path):
    registry = ToolRegistry(tmp_path)
    tool = EchoTool()
    registry.register(tool)

    result = await registry.execute("echo", {"text": "hi"}, session_id=" sess_1 ")

    assert result.content == "hi"
    assert tool.seen[0]["_session_id"] == "sess_1"
    assert tool.seen[0]["_project_dir"] == tmp_path.resolve()
    assert registry.get_definitions()[0]["name"] == "echo"


@pytest.mark.asyncio
async def test_registry_rejects_missing_required_argument():
    registry = ToolRegistry()
    registry.register(EchoTool())

    with pytest.raises(ToolExecutionError, match="Missing required argument: text"):
        await registry.execute("echo", {})


@pytest.mark.asyncio
async def test_registry_wraps_tool_exceptions():
    registry = ToolRegistry()
    registry.register(BrokenTool())

    with pytest.raises(ToolExecutionError, match="disk on fire"):
        await registry.execute("broken", {})


@pytest.mark.asyncio
async def test_registry_uses_tool_level_timeout_seconds():
    registry = ToolRegistry()
    registry.register(SlowTool())

    with pytest.raises(ToolExecutionError, match="timed out"):
        await registry.execute("slow", {})


@pytest.mark.asyncio
async def test_registry_abort_event_cancels_running_tool_execution():
    registry = ToolRegistry()
    tool = CancellableTool()
    registry.register(tool)

    abort_event = asyncio.Event()
    execution = asyncio.create_task(registry.execute("cancellable", {}, abort_event=abort_event))
    await asyncio.sleep(0.05)
    abort_event.set()

    with pytest.raises(ToolExecutionError, match="aborted"):
        await execution
    assert tool.cancelled is True
