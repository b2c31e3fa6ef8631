import asyncio

import pytest

from nimbus.streaming import StreamingFlusher
from nimbus.timeline import TimelineRecorder, TimelineStore


def _make_flusher(interval: float = 0.15) -> tuple[StreamingFlusher, TimelineStore]:
    timeline = TimelineStore()
    flusher = StreamingFlusher(TimelineRecorder(timeline), "s1", "msg_1", interval=interval)
    return flusher, timeline


@pytest.mark.asyncio
async def test_reasoning_then_text_yields_reasoning_event_first():
    flusher, timeline = _make_flusher()

    await flusher.on_reasoning("think")
    await flusher.on_text("answer")
    await flusher.finalize()

    events = list(timeline)
    assert [e.kind for e in events] == ["reasoning", "assistant"]
    assert events[0].content == "think"
    assert events[0].streaming is False
    assert events[1].content == "answer"
    assert events[1].streaming is False


@pytest.mark.asyncio
async def test_text_then_reasoning_closes_text_first():
    flusher, timeline = _make_flusher()

    await flusher.on_text("Let me ")
    await flusher.on_text("check.")
    await flusher.on_reasoning("hmm")
    await flusher.on_reasoning(" ok")
    await flusher.on_text("Done.")
    await flusher.finalize()

    events = list(timeline)
    assert [(e.kind, e.content) for e in events] == [
        ("assistant", "Let me check."),
        ("reasoning", "hmm ok"),
        ("assistant", "Done."),
    ]
    assert not any(e.streaming for e in events)


@pytest.mark.asyncio
async def test_reasoning_event_streams_in_place():
    flusher, timeline = _make_flusher()

    await flusher.on_reasoning("a")
    await flusher.on_reasoning("b")

    events = list(timeline)
    assert len(events) == 1
    assert events[0].content == "ab"
    assert events[0].streaming is True


@pytest.mark.asyncio
async def test_tick_updates_one_streaming_text_event():
    flusher, timeline = _make_flusher()

    await flusher.on_text("Hel")
    await flusher.tick()
    await flusher.on_text("lo")
    await flusher.tick()

    events = list(timeline)
    assert len(events) == 1
    assert events[0].content == "Hello"
    assert events[0].streaming is True

    await flusher.flush_all()
    events = list(timeline)
    assert len(events) == 1
    assert events[0].streaming is False
    assert flusher.pending_text == ""


@pytest.mark.asyncio
async def test_tick_does_nothing_while_reasoning_is_latest():
    flusher, timeline = _make_flusher()

    await flusher.on_reasoning("think")
    await flusher.tick()

    assert [e.kind for e in timeline] == ["reasoning"]


@pytest.mark.asyncio
async def test_periodic_tick_runs_until_stopped():
    flusher, timeline = _make_flusher(interval=0.01)
    flusher.start()
    try:
        await flusher.on_text("streaming")
        await asyncio.sleep(0.05)
        events = list(timeline)
        assert len(events) == 1
        assert events[0].streaming is True
    finally:
        await flusher.stop()
    assert flusher._tick_task is None


@pytest.mark.asyncio
async def test_flush_all_with_empty_buffers_adds_nothing():
    flusher, timeline = _make_flusher()
    await flusher.flush_all()
    await flusher.finalize()
    assert len(timeline) == 0
