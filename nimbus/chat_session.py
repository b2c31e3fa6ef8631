"""Turn orchestration for one chat session.

:class:`ChatSession` drives a single user turn from submission to a
persisted result: it records the user message, decorates the outgoing text
(file mentions, mode reminders), keeps OAuth credentials fresh, runs the
agent engine, and turns its streamed callbacks into timeline events.

Only one turn runs at a time. Submitting while a turn is active is a no-op.
Failures never escape :meth:`ChatSession.submit_turn`; they surface as the
``error`` state field, an ``error`` notification, and a ``status`` event.

Listeners subscribe with :meth:`ChatSession.on` to these notifications:
``state``, ``timeline_event``, ``tokens_update``, ``context_status``,
``plan_exit_proposed``, ``session_changed``, ``error``.
"""

import asyncio
import dataclasses
import json
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from nimbus.accounting import TokenAccountant
from nimbus.config import Config, get_config
from nimbus.credentials import CredentialRefreshCoalescer
from nimbus.engine import AgentEngine, EngineCallbacks, EngineRequest
from nimbus.exceptions import EngineError, SessionNotFoundError, ToolError
from nimbus.logging import get_logger
from nimbus.mentions import build_message_content, expand_mentions
from nimbus.models import (
    ContextManagedEvent,
    EngineResult,
    ImageAttachment,
    Message,
    TimelineEvent,
    TokenUsage,
    ToolCall,
    TurnState,
)
from nimbus.modes import ModeTransitionManager
from nimbus.provider import resolve_engine_config
from nimbus.session import SessionStore, get_session_store
from nimbus.streaming import StreamingFlusher
from nimbus.timeline import TimelineRecorder, TimelineStore
from nimbus.tool_tracker import ToolCallTracker, is_plan_exit_proposal
from nimbus.tools import ToolRegistry, create_default_registry

log = get_logger(__name__)

Listener = Callable[[Any], None]

CONTEXT_STATUS_LABELS = {
    "context_compacting": "Compacting...",
    "context_summarized": "Summarized",
    "context_truncated": "Truncated",
}


@dataclass
class TurnOptions:
    """Per-turn flags."""

    mode_switch: bool = False


class _TurnCallbacks(EngineCallbacks):
    """Engine hooks bound to one running turn."""

    def __init__(
        self,
        chat: "ChatSession",
        flusher: StreamingFlusher,
        tracker: ToolCallTracker,
        model: str,
    ):
        self.chat = chat
        self.flusher = flusher
        self.tracker = tracker
        self.model = model

    async def on_token(self, text: str) -> None:
        await self.flusher.on_text(text)

    async def on_reasoning(self, text: str) -> None:
        await self.flusher.on_reasoning(text)

    async def on_tool_call(self, tool_call: ToolCall) -> None:
        await self.flusher.flush_all()
        await self.tracker.on_call(tool_call)

    async def on_tool_result(self, tool_call: ToolCall, result: str) -> None:
        await self.tracker.on_result(tool_call, result)
        if is_plan_exit_proposal(tool_call.name, result):
            self.chat._set_state(plan_exit_proposed=True)
            self.chat._emit("plan_exit_proposed", True)

    async def on_step_complete(self, step: int, input_tokens: int, output_tokens: int) -> None:
        self.chat.accountant.record_step(input_tokens, output_tokens)
        if input_tokens > 0:
            self.chat.accountant.update_context(input_tokens, self.model)
        self.chat._sync_tokens()

    async def on_status_change(self, status: str) -> None:
        label = CONTEXT_STATUS_LABELS.get(status)
        if label is not None:
            self.chat._set_context_status(label)

    async def on_context_managed(self, event: ContextManagedEvent) -> None:
        if event.was_summarized:
            self.chat._set_context_status(f"Summarized ({event.messages_removed} msgs compacted)")
        elif event.was_truncated:
            self.chat._set_context_status(f"Truncated ({event.messages_removed} msgs dropped)")
        self.chat._schedule_context_status_clear()

    async def on_error(self, error: BaseException) -> None:
        await self.chat._recorder.add(
            TimelineEvent.create(
                self.flusher.session_id,
                "status",
                f"Error: {error}",
                self.flusher.parent_message_id,
            )
        )


class ChatSession:
    """Single-flight turn controller for one conversation."""

    def __init__(
        self,
        project_dir: Path | str,
        engine: AgentEngine,
        config: Config | None = None,
        store: SessionStore | None = None,
        mode: str | None = None,
        model_override: str | None = None,
        provider_override: str | None = None,
        reasoning_effort_override: str | None = None,
        registry: ToolRegistry | None = None,
        credentials: CredentialRefreshCoalescer | None = None,
        system_prompt: str = "",
    ):
        self.project_dir = Path(project_dir)
        self.engine = engine
        self.config = config or get_config()
        self.store = store or get_session_store()
        self.credentials = credentials or CredentialRefreshCoalescer(self.config.oauth)
        self.system_prompt = system_prompt
        self._registry = registry

        initial_mode = mode or self.config.chat.default_mode
        self._state = TurnState(
            mode=initial_mode,
            model_override=model_override,
            provider_override=provider_override,
            reasoning_effort_override=reasoning_effort_override,
        )
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._messages: list[Message] = []
        self._session_id: str | None = None
        self._existing_summary: Any = None
        self._abort: asyncio.Event | None = None
        self._status_timers: list[asyncio.TimerHandle] = []

        self.accountant = TokenAccountant()
        self.modes = ModeTransitionManager(self.project_dir, self.config.chat.plans_dir, initial_mode)
        self.timeline = TimelineStore(on_change=self._on_timeline_change)
        self._recorder = TimelineRecorder(
            self.timeline,
            self.store,
            on_event=lambda event: self._emit("timeline_event", event),
        )

    # ── notifications ───────────────────────────────────────

    def on(self, event: str, handler: Listener) -> None:
        self._listeners[event].append(handler)

    def off(self, event: str, handler: Listener) -> None:
        handlers = self._listeners.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def _emit(self, event: str, payload: Any = None) -> None:
        for handler in list(self._listeners.get(event, [])):
            try:
                handler(payload)
            except Exception as exc:
                log.warning("Chat listener failed", listener_event=event, error=str(exc))

    def get_state(self) -> TurnState:
        """Deep copy of the current state."""
        return self._state.snapshot()

    @property
    def is_loading(self) -> bool:
        return self._state.is_loading

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def _set_state(self, **changes: Any) -> None:
        for key, value in changes.items():
            setattr(self._state, key, value)
        self._emit("state", self.get_state())

    def _on_timeline_change(self, events: list[TimelineEvent]) -> None:
        self._set_state(timeline_events=events)

    def _sync_tokens(self) -> None:
        self._set_state(
            tokens=dataclasses.replace(self.accountant.tokens),
            session_tokens=(
                dataclasses.replace(self.accountant.session_tokens)
                if self.accountant.session_tokens
                else None
            ),
            context_usage=dataclasses.replace(self.accountant.context_usage),
        )
        self._emit("tokens_update", {
            "tokens": self._state.tokens,
            "session_tokens": self._state.session_tokens,
            "context_usage": self._state.context_usage,
        })

    def _set_context_status(self, status: str | None) -> None:
        self._set_state(context_status=status)
        self._emit("context_status", status)

    def _schedule_context_status_clear(self) -> None:
        loop = asyncio.get_running_loop()
        handle = loop.call_later(
            self.config.chat.context_status_clear_seconds,
            self._set_context_status,
            None,
        )
        now = loop.time()
        self._status_timers = [
            timer for timer in self._status_timers
            if not timer.cancelled() and timer.when() > now
        ]
        self._status_timers.append(handle)

    # ── settings ────────────────────────────────────────────

    def set_mode(self, mode: str) -> None:
        self._set_state(mode=mode)

    def set_model_override(self, model: str | None = None) -> None:
        self._set_state(model_override=model)

    def set_provider_override(self, provider: str | None = None) -> None:
        self._set_state(provider_override=provider)

    def set_reasoning_effort_override(self, effort: str | None = None) -> None:
        self._set_state(reasoning_effort_override=effort)

    def _effective_model(self) -> str:
        return self._state.model_override or self.config.model.model

    def get_registry(self) -> ToolRegistry:
        if self._registry is None:
            self._registry = create_default_registry(self.project_dir)
        return self._registry

    async def ensure_session_id(self) -> str:
        """Id of the persisted session, creating it on first use."""
        if self._session_id is None:
            session = await self.store.create_session(str(self.project_dir))
            self._session_id = session.id
            self._set_state(session_id=session.id)
            self._emit("session_changed", session.id)
        return self._session_id

    # ── turn lifecycle ──────────────────────────────────────

    async def submit_turn(
        self,
        content: str,
        mode_override: str | None = None,
        options: TurnOptions | None = None,
        attachments: list[ImageAttachment] | None = None,
    ) -> None:
        """Run one user turn to completion. Dropped if a turn is already active."""
        if self._state.is_loading:
            log.debug("Turn already in progress, submission dropped")
            return

        options = options or TurnOptions()
        abort = asyncio.Event()
        self._abort = abort
        self._set_state(error=None, is_loading=True)

        sid: str | None = None
        assistant_message_id: str | None = None
        flusher: StreamingFlusher | None = None

        self._messages.append(Message(role="user", content=content))
        self._set_state(messages=list(self._messages))

        try:
            sid = await self.ensure_session_id()
            user_message_id = await self.store.create_message(sid, "user", content)
            assistant_message_id = await self.store.create_message(sid, "assistant", "")
            self._messages[-1].id = user_message_id

            await self._recorder.add(
                TimelineEvent.create(
                    sid,
                    "user",
                    content,
                    user_message_id,
                    attachments=list(attachments) if attachments else None,
                )
            )
            await self._update_session_status(sid, "running")

            effective_mode = mode_override or self._state.mode
            expanded = await asyncio.to_thread(
                expand_mentions,
                content,
                self.project_dir,
                self.config.chat.mention_max_chars,
            )
            outgoing = build_message_content(expanded, attachments)
            outgoing = self.modes.compose(outgoing, effective_mode, sid, mode_switch=options.mode_switch)
            history = self._messages[:-1] + [Message(role="user", content=outgoing, id=user_message_id)]

            try:
                await self.credentials.ensure_fresh_credential(self.config, self._state.provider_override)
            except Exception as exc:
                log.warning("Credential check failed, continuing with current credential", error=str(exc))

            engine_config = resolve_engine_config(
                self.config,
                self._state.model_override,
                self._state.provider_override,
                sid,
                self._state.reasoning_effort_override,
            )

            flusher = StreamingFlusher(
                self._recorder,
                sid,
                assistant_message_id,
                interval=self.config.chat.stream_flush_interval,
            )
            tracker = ToolCallTracker(
                self._recorder,
                sid,
                assistant_message_id,
                store=self.store,
                preview_chars=self.config.chat.tool_result_preview_chars,
            )
            flusher.start()

            result = await self.engine.run(
                EngineRequest(
                    messages=history,
                    tools=self.get_registry(),
                    config=engine_config,
                    abort=abort,
                    callbacks=_TurnCallbacks(self, flusher, tracker, engine_config.model),
                    session_id=sid,
                    system_prompt=self.system_prompt,
                    existing_summary=self._existing_summary,
                    tool_metadata={"project_dir": str(self.project_dir), "abort": abort},
                )
            )
            await self._complete_turn(sid, assistant_message_id, flusher, result, abort)
        except Exception as exc:
            await self._fail_turn(sid, assistant_message_id, flusher, exc)
        finally:
            if flusher is not None:
                await flusher.stop()
                flusher.reset()
            if sid is not None:
                try:
                    await self.accountant.refresh_totals(self.store, sid)
                    self._sync_tokens()
                except Exception as exc:
                    log.debug("Could not refresh token totals", session_id=sid, error=str(exc))
            # An aborted turn already handed loading back; a newer turn may own it now.
            if self._abort is abort:
                self._abort = None
                self._set_state(is_loading=False)

    async def _complete_turn(
        self,
        sid: str,
        assistant_message_id: str,
        flusher: StreamingFlusher,
        result: EngineResult,
        abort: asyncio.Event,
    ) -> None:
        await flusher.finalize()

        has_text_event = any(
            event.kind == "assistant" and event.parent_message_id == assistant_message_id
            for event in self.timeline
        )
        if result.content and not has_text_event:
            await self._recorder.add(
                TimelineEvent.create(sid, "assistant", result.content, assistant_message_id)
            )

        if result.new_summary:
            self._existing_summary = result.new_summary

        model = self._effective_model()
        usage = TokenUsage(
            input=result.input_tokens or 0,
            output=result.output_tokens or 0,
            context=(result.input_tokens or 0) + (result.output_tokens or 0),
            model=model,
        )
        await self.store.update_message(assistant_message_id, result.content, usage)
        await self._update_session_status(sid, "cancelled" if abort.is_set() else "completed")

        if result.response_messages:
            self._messages.extend(result.response_messages)
        else:
            self._messages.append(Message(role="assistant", content=result.content, id=assistant_message_id))
        self._set_state(messages=list(self._messages))

        self.accountant.add_result(result)
        prompt_tokens = result.last_input_tokens if result.last_input_tokens is not None else result.input_tokens
        self.accountant.update_context(prompt_tokens or 0, model)
        self._sync_tokens()

    async def _fail_turn(
        self,
        sid: str | None,
        assistant_message_id: str | None,
        flusher: StreamingFlusher | None,
        exc: Exception,
    ) -> None:
        error_message = str(exc) or type(exc).__name__
        status_code = exc.status_code if isinstance(exc, EngineError) else None
        log.error("Turn failed", session_id=sid, error=error_message, status_code=status_code)
        self._set_state(error=error_message)
        self._emit("error", error_message)

        partial = flusher.pending_text if flusher is not None else ""
        if flusher is not None:
            await flusher.flush_all()

        content = f"{partial}\n\n[Error: {error_message}]" if partial else f"Error: {error_message}"
        self._messages.append(Message(role="assistant", content=content, id=assistant_message_id))
        self._set_state(messages=list(self._messages))

        if assistant_message_id is not None:
            try:
                await self.store.update_message(assistant_message_id, content)
            except Exception as store_exc:
                log.warning("Failed to persist error message", error=str(store_exc))

        await self._recorder.add(
            TimelineEvent.create(sid or "", "status", f"Error: {error_message}", assistant_message_id),
            persist=sid is not None,
        )
        if sid is not None:
            await self._update_session_status(sid, "failed", error=error_message)

    async def _update_session_status(self, sid: str, status: str, error: str | None = None) -> None:
        try:
            await self.store.update_session(sid, status=status, error=error)
        except Exception as exc:
            log.warning("Failed to update session status", session_id=sid, status=status, error=str(exc))

    def abort(self) -> None:
        """Signal the running engine call to stop and release the loading flag."""
        if self._abort is not None:
            self._abort.set()
        self._abort = None
        self._set_state(is_loading=False)

    # ── session management ──────────────────────────────────

    def clear(self) -> None:
        """Forget the current session; the next turn starts a new one."""
        self._messages = []
        self._session_id = None
        self._registry = None
        self._existing_summary = None
        self.accountant.reset()
        self.timeline.clear()
        self._set_state(
            messages=[],
            error=None,
            tokens=TokenUsage(),
            session_tokens=None,
            session_id=None,
            plan_exit_proposed=False,
            context_usage=dataclasses.replace(self.accountant.context_usage),
            context_status=None,
        )

    def reset_plan_exit(self) -> None:
        self._set_state(plan_exit_proposed=False)
        self._emit("plan_exit_proposed", False)

    async def load_session(self, session_id: str) -> None:
        """Replace the current conversation with a persisted one."""
        self.clear()
        try:
            await self.store.require_session(session_id)
            messages = await self.store.get_messages(session_id)
            events = await self.store.list_timeline_events(session_id)
            totals = await self.accountant.refresh_totals(self.store, session_id)

            self._messages = list(messages)
            self._session_id = session_id
            self.timeline.replace_all(events)
            self._set_state(
                messages=list(messages),
                tokens=dataclasses.replace(totals),
                session_tokens=dataclasses.replace(totals),
                session_id=session_id,
            )

            last_assistant = next(
                (
                    m for m in reversed(messages)
                    if m.role == "assistant" and m.token_usage and m.token_usage.input
                ),
                None,
            )
            if last_assistant is not None:
                self.accountant.update_context(
                    last_assistant.token_usage.input,
                    last_assistant.token_usage.model or self._effective_model(),
                )
                self._sync_tokens()
            self._emit("session_changed", session_id)
        except SessionNotFoundError:
            log.info("Session not found", session_id=session_id)
            self._set_state(error="Session not found")
            self._emit("error", "Session not found")
        except Exception as exc:
            message = f"Failed to load session: {exc}"
            log.error("Session load failed", session_id=session_id, error=str(exc))
            self._set_state(error=message)
            self._emit("error", message)

    async def execute_tool(self, name: str, args: dict[str, Any]) -> str:
        """Run a registered tool directly; errors come back as JSON."""
        registry = self.get_registry()
        if not registry.has_tool(name):
            return json.dumps({"error": True, "message": f"Tool not found: {name}"})
        try:
            sid = await self.ensure_session_id()
            result = await registry.execute(name, args, session_id=sid)
        except ToolError as exc:
            return json.dumps({"error": True, "message": str(exc)})
        if not result.success:
            return json.dumps({"error": True, "message": result.error})
        return result.content

    async def close(self) -> None:
        for timer in self._status_timers:
            timer.cancel()
        self._status_timers = []
        await self.credentials.close()
