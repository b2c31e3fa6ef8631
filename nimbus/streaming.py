"""Turns streamed text/reasoning fragments into timeline events."""

import asyncio
from typing import Literal

from nimbus.logging import get_logger
from nimbus.models import TimelineEvent
from nimbus.timeline import TimelineRecorder

log = get_logger(__name__)

StreamKind = Literal["text", "reasoning"]

DEFAULT_FLUSH_INTERVAL = 0.15


class StreamingFlusher:
    """Buffers incremental fragments for one turn and flushes them as events.

    Text and reasoning arrive on separate channels; switching channel closes
    the other buffer first so rendered order follows emission order. A
    periodic tick pushes the growing text buffer into its open event so long
    answers visibly stream.
    """

    def __init__(
        self,
        recorder: TimelineRecorder,
        session_id: str,
        parent_message_id: str | None = None,
        interval: float = DEFAULT_FLUSH_INTERVAL,
    ):
        self.recorder = recorder
        self.session_id = session_id
        self.parent_message_id = parent_message_id
        self.interval = interval

        self.text = ""
        self.reasoning = ""
        self.last_type: StreamKind | None = None
        self._text_event_id: str | None = None
        self._reasoning_event_id: str | None = None
        self._lock = asyncio.Lock()
        self._tick_task: asyncio.Task[None] | None = None

    @property
    def pending_text(self) -> str:
        return self.text

    # ── fragments ───────────────────────────────────────────

    async def on_text(self, fragment: str) -> None:
        async with self._lock:
            if self.last_type == "reasoning" and self.reasoning:
                await self._flush_reasoning()
            self.text += fragment
            self.last_type = "text"

    async def on_reasoning(self, fragment: str) -> None:
        async with self._lock:
            if self.last_type == "text" and self.text:
                await self._flush_text(final=True)
            self.reasoning += fragment
            self.last_type = "reasoning"
            if self._reasoning_event_id is None:
                event = TimelineEvent.create(
                    self.session_id,
                    "reasoning",
                    self.reasoning,
                    self.parent_message_id,
                    streaming=True,
                )
                self._reasoning_event_id = event.id
                await self.recorder.add(event)
            else:
                await self.recorder.update(
                    self._reasoning_event_id,
                    content=self.reasoning,
                    streaming=True,
                )

    # ── flushing ────────────────────────────────────────────

    async def tick(self) -> None:
        """Periodic non-final flush of the text buffer."""
        async with self._lock:
            if self.last_type == "text" and self.text:
                await self._flush_text(final=False)

    async def flush_text(self, final: bool = True) -> None:
        async with self._lock:
            await self._flush_text(final=final)

    async def flush_reasoning(self) -> None:
        async with self._lock:
            await self._flush_reasoning()

    async def flush_all(self) -> None:
        """Close both buffers, reasoning before text."""
        async with self._lock:
            await self._flush_reasoning()
            await self._flush_text(final=True)
            self.last_type = None

    async def finalize(self) -> None:
        """Flush leftovers and close the turn's last reasoning event."""
        await self.flush_all()
        last_reasoning = self.recorder.timeline.last_of_kind("reasoning")
        if last_reasoning is not None and last_reasoning.streaming:
            await self.recorder.update(last_reasoning.id, streaming=False)

    async def _flush_text(self, final: bool = True) -> None:
        pending = self.text
        if not pending:
            return
        if self._text_event_id is not None:
            await self.recorder.update(self._text_event_id, content=pending, streaming=not final)
        else:
            event = TimelineEvent.create(
                self.session_id,
                "assistant",
                pending,
                self.parent_message_id,
                streaming=not final,
            )
            self._text_event_id = event.id
            await self.recorder.add(event)
        if final:
            self.text = ""
            self._text_event_id = None

    async def _flush_reasoning(self) -> None:
        pending = self.reasoning
        if not pending:
            return
        if self._reasoning_event_id is not None:
            await self.recorder.update(self._reasoning_event_id, content=pending, streaming=False)
        else:
            event = TimelineEvent.create(
                self.session_id,
                "reasoning",
                pending,
                self.parent_message_id,
                streaming=False,
            )
            await self.recorder.add(event)
        self.reasoning = ""
        self._reasoning_event_id = None

    # ── periodic tick ───────────────────────────────────────

    def start(self) -> None:
        if self._tick_task is None or self._tick_task.done():
            self._tick_task = asyncio.create_task(self._run_ticks())

    async def stop(self) -> None:
        task, self._tick_task = self._tick_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run_ticks(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.tick()
            except Exception as exc:
                log.warning("Streaming flush tick failed", session_id=self.session_id, error=str(exc))

    def reset(self) -> None:
        """Drop buffers and open-event references."""
        self.text = ""
        self.reasoning = ""
        self.last_type = None
        self._text_event_id = None
        self._reasoning_event_id = None
