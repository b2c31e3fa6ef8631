import pytest

from nimbus.exceptions import SessionNotFoundError
from nimbus.models import ContentPart, TimelineEvent, TokenUsage, ToolCall
from nimbus.session import SessionStore


@pytest.mark.asyncio
async def test_session_store_uses_db_path_override(tmp_path):
    db_path = tmp_path / "custom-sessions.db"
    store = SessionStore(db_path=db_path)
    try:
        await store.create_session(str(tmp_path), title="alpha")
        assert db_path.exists()
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_update_session_stamps_terminal_status(tmp_path):
    store = SessionStore(db_path=tmp_path / "sessions.db")
    try:
        session = await store.create_session(str(tmp_path))
        assert session.status == "pending"

        await store.update_session(session.id, status="failed", error="boom")
        failed = await store.get_session(session.id)
        assert failed.status == "failed"
        assert failed.error == "boom"
        assert failed.completed_at is not None

        await store.update_session(session.id, status="running")
        running = await store.get_session(session.id)
        assert running.status == "running"
        assert running.error is None
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_messages_round_trip_in_order_with_token_totals(tmp_path):
    store = SessionStore(db_path=tmp_path / "sessions.db")
    try:
        session = await store.create_session(str(tmp_path))
        first_user = await store.create_message(session.id, "user", "hello")
        first_reply = await store.create_message(session.id, "assistant", "")
        await store.update_message(first_reply, "hi", TokenUsage(input=200, output=50, context=250, model="m"))
        await store.create_message(
            session.id,
            "user",
            [ContentPart(type="text", text="look"), ContentPart(type="image", image_url="data:image/png;base64,AA")],
        )
        second_reply = await store.create_message(session.id, "assistant", "")
        await store.update_message(second_reply, "done", TokenUsage(input=300, output=20))

        messages = await store.get_messages(session.id)
        assert [m.role for m in messages] == ["user", "assistant", "user", "assistant"]
        assert messages[0].id == first_user
        assert messages[1].content == "hi"
        assert messages[1].token_usage.model == "m"
        assert messages[2].content[1].image_url == "data:image/png;base64,AA"
        assert messages[2].text() == "look"
        assert messages[0].token_usage is None

        totals = await store.get_session_token_totals(session.id)
        assert (totals.input, totals.output) == (500, 70)
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_token_totals_are_zero_for_empty_session(tmp_path):
    store = SessionStore(db_path=tmp_path / "sessions.db")
    try:
        session = await store.create_session(str(tmp_path))
        totals = await store.get_session_token_totals(session.id)
        assert (totals.input, totals.output) == (0, 0)
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_timeline_events_reload_in_append_order_and_not_streaming(tmp_path):
    store = SessionStore(db_path=tmp_path / "sessions.db")
    try:
        session = await store.create_session(str(tmp_path))
        first = TimelineEvent.create(session.id, "reasoning", "think", "msg_1", streaming=True)
        second = TimelineEvent.create(
            session.id, "tool_call", "{}", "msg_1", tool_call_id="call_1", tool_name="read", status="running"
        )
        await store.create_timeline_event(first)
        await store.create_timeline_event(second)

        second.status = "completed"
        await store.update_timeline_event(second)
        first.content = "thinking harder"
        await store.update_timeline_event(first)

        events = await store.list_timeline_events(session.id)
        assert [e.id for e in events] == [first.id, second.id]
        assert events[0].content == "thinking harder"
        assert events[0].streaming is False
        assert events[1].status == "completed"
        assert events[1].tool_name == "read"
        assert events[1].parent_message_id == "msg_1"
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_duplicate_tool_call_is_ignored(tmp_path):
    store = SessionStore(db_path=tmp_path / "sessions.db")
    try:
        session = await store.create_session(str(tmp_path))
        call = ToolCall(id="call_1", name="read", arguments='{"path": "a.py"}')
        assert await store.create_tool_call("msg_1", session.id, call) is True
        assert await store.create_tool_call("msg_1", session.id, call) is False

        await store.update_tool_call_result("call_1", '{"error": true}', "failed")
        calls = await store.get_tool_calls(session.id)
        assert len(calls) == 1
        assert calls[0].status == "failed"
        assert calls[0].result == '{"error": true}'
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_list_and_delete_sessions(tmp_path):
    store = SessionStore(db_path=tmp_path / "sessions.db")
    try:
        first = await store.create_session("/proj/a")
        second = await store.create_session("/proj/b")
        await store.create_message(second.id, "user", "hello")

        all_sessions = await store.list_sessions(limit=10)
        assert {s.id for s in all_sessions} == {first.id, second.id}
        only_a = await store.list_sessions("/proj/a")
        assert [s.id for s in only_a] == [first.id]

        assert await store.delete_session(second.id) is True
        assert await store.delete_session(second.id) is False
        assert await store.get_messages(second.id) == []
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_require_session_raises_for_unknown_id(tmp_path):
    store = SessionStore(db_path=tmp_path / "sessions.db")
    try:
        session = await store.create_session(str(tmp_path), title="Known")
        assert (await store.require_session(session.id)).title == "Known"

        with pytest.raises(SessionNotFoundError) as exc_info:
            await store.require_session("sess_missing")
        assert exc_info.value.session_id == "sess_missing"
    finally:
        await store.close()
