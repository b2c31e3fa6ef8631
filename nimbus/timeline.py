"""In-memory timeline of one session's visible history."""

import dataclasses
from typing import Any, Callable, Iterator

from nimbus.logging import get_logger
from nimbus.models import TimelineEvent

log = get_logger(__name__)

TimelineListener = Callable[[list[TimelineEvent]], None]


class TimelineStore:
    """Append-only ordered log whose open tail can be updated in place.

    Events live in a list addressed through an id -> index map, so updating
    the streaming event is an indexed write. Listeners receive a fresh list
    on every change and never see the live storage.
    """

    def __init__(self, on_change: TimelineListener | None = None):
        self._events: list[TimelineEvent] = []
        self._index: dict[str, int] = {}
        self._on_change = on_change

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[TimelineEvent]:
        return iter(list(self._events))

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._index

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self.snapshot())

    def snapshot(self) -> list[TimelineEvent]:
        """Copy of the current event list."""
        return [dataclasses.replace(event) for event in self._events]

    def append(self, event: TimelineEvent) -> TimelineEvent:
        if event.id in self._index:
            raise ValueError(f"Duplicate timeline event id: {event.id}")
        self._index[event.id] = len(self._events)
        self._events.append(event)
        self._notify()
        return event

    def get(self, event_id: str) -> TimelineEvent | None:
        idx = self._index.get(event_id)
        return self._events[idx] if idx is not None else None

    def update(self, event_id: str, **changes: Any) -> TimelineEvent | None:
        """Replace fields of an event, keeping its position. Unknown ids are ignored."""
        idx = self._index.get(event_id)
        if idx is None:
            return None
        updated = dataclasses.replace(self._events[idx], **changes)
        self._events[idx] = updated
        self._notify()
        return updated

    def last_of_kind(self, kind: str) -> TimelineEvent | None:
        for event in reversed(self._events):
            if event.kind == kind:
                return event
        return None

    def find_tool_call(self, tool_call_id: str) -> TimelineEvent | None:
        for event in self._events:
            if event.kind == "tool_call" and event.tool_call_id == tool_call_id:
                return event
        return None

    def replace_all(self, events: list[TimelineEvent]) -> None:
        """Load a persisted timeline, discarding the current one."""
        self._events = list(events)
        self._index = {event.id: idx for idx, event in enumerate(self._events)}
        self._notify()

    def clear(self) -> None:
        self.replace_all([])


class TimelineRecorder:
    """Writes events to the in-memory timeline and, best effort, to storage.

    Storage failures are logged and swallowed: the in-memory timeline is the
    source of truth for the running turn.
    """

    def __init__(
        self,
        timeline: TimelineStore,
        store: Any = None,
        on_event: Callable[[TimelineEvent], None] | None = None,
    ):
        self.timeline = timeline
        self.store = store
        self._on_event = on_event

    async def add(self, event: TimelineEvent, persist: bool = True) -> TimelineEvent:
        self.timeline.append(event)
        if self._on_event is not None:
            self._on_event(dataclasses.replace(event))
        if persist and self.store is not None:
            try:
                await self.store.create_timeline_event(event)
            except Exception as exc:
                log.warning("Failed to persist timeline event", event_id=event.id, kind=event.kind, error=str(exc))
        return event

    async def update(self, event_id: str, persist: bool = True, **changes: Any) -> TimelineEvent | None:
        updated = self.timeline.update(event_id, **changes)
        if updated is None:
            return None
        if self._on_event is not None:
            self._on_event(dataclasses.replace(updated))
        if persist and self.store is not None:
            try:
                await self.store.update_timeline_event(updated)
            except Exception as exc:
                log.warning("Failed to persist timeline update", event_id=event_id, error=str(exc))
        return updated
