"""Pairs tool-call announcements with their results on the timeline."""

import json
from typing import Any

from nimbus.logging import get_logger
from nimbus.models import TimelineEvent, ToolCall, ToolCallStatus
from nimbus.timeline import TimelineRecorder

log = get_logger(__name__)

PLAN_EXIT_TOOL = "plan_exit"


def _parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return None


def derive_tool_status(result: str) -> ToolCallStatus:
    """``failed`` for a JSON object flagging an error, ``completed`` otherwise.

    Plain-text results and malformed JSON count as completed.
    """
    parsed = _parse_json(result)
    if isinstance(parsed, dict) and (parsed.get("error") or parsed.get("success") is False):
        return "failed"
    return "completed"


def is_plan_exit_proposal(tool_name: str, result: str) -> bool:
    """True when the plan-exit tool asks the user to confirm leaving plan mode."""
    if tool_name != PLAN_EXIT_TOOL:
        return False
    parsed = _parse_json(result)
    return isinstance(parsed, dict) and bool(parsed.get("proposingExit"))


class ToolCallTracker:
    """Records tool calls of one turn and derives their completion status."""

    def __init__(
        self,
        recorder: TimelineRecorder,
        session_id: str,
        message_id: str,
        store: Any = None,
        preview_chars: int = 2000,
    ):
        self.recorder = recorder
        self.session_id = session_id
        self.message_id = message_id
        self.store = store
        self.preview_chars = preview_chars
        self.calls: dict[str, ToolCall] = {}
        self._call_events: dict[str, str] = {}
        self._result_events: dict[str, str] = {}

    async def on_call(self, tool_call: ToolCall) -> TimelineEvent | None:
        """Open a ``tool_call`` event in running state. Repeated ids are ignored."""
        if tool_call.id in self._call_events:
            log.debug("Duplicate tool call announcement ignored", tool_call_id=tool_call.id)
            return None

        tool_call.status = "running"
        self.calls[tool_call.id] = tool_call
        if self.store is not None:
            try:
                await self.store.create_tool_call(self.message_id, self.session_id, tool_call)
            except Exception as exc:
                log.warning("Failed to record tool call", tool_call_id=tool_call.id, error=str(exc))

        event = TimelineEvent.create(
            self.session_id,
            "tool_call",
            tool_call.arguments,
            self.message_id,
            tool_call_id=tool_call.id,
            tool_name=tool_call.name,
            status="running",
        )
        self._call_events[tool_call.id] = event.id
        return await self.recorder.add(event)

    async def on_result(self, tool_call: ToolCall, result: str) -> ToolCallStatus:
        """Add the paired ``tool_result`` event and settle the call's status."""
        status = derive_tool_status(result)
        if tool_call.id in self._result_events:
            log.debug("Duplicate tool result ignored", tool_call_id=tool_call.id)
            return status

        tracked = self.calls.setdefault(tool_call.id, tool_call)
        tracked.status = status
        tracked.result = result

        if self.store is not None:
            try:
                await self.store.update_tool_call_result(tool_call.id, result, status)
            except Exception as exc:
                log.warning("Failed to record tool result", tool_call_id=tool_call.id, error=str(exc))

        event = TimelineEvent.create(
            self.session_id,
            "tool_result",
            result[: self.preview_chars],
            self.message_id,
            tool_call_id=tool_call.id,
            tool_name=tool_call.name,
            status=status,
        )
        self._result_events[tool_call.id] = event.id
        await self.recorder.add(event)

        call_event_id = self._call_events.get(tool_call.id)
        if call_event_id is not None:
            await self.recorder.update(call_event_id, status=status)
        return status
