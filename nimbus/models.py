"""Data model shared by the turn orchestrator and session storage."""

import copy
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

TimelineEventKind = Literal["user", "assistant", "reasoning", "tool_call", "tool_result", "status"]
ToolCallStatus = Literal["pending", "running", "completed", "failed"]
SessionStatus = Literal["pending", "running", "completed", "failed", "cancelled"]

TIMELINE_EVENT_KINDS: tuple[str, ...] = (
    "user",
    "assistant",
    "reasoning",
    "tool_call",
    "tool_result",
    "status",
)


def generate_id(prefix: str) -> str:
    """Return a unique id such as ``msg_3f2a...``."""
    return f"{prefix}_{uuid.uuid4().hex}"


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass
class ImageAttachment:
    """Image sent alongside a user message (base64 payload)."""

    data: str
    mime: str = "image/png"
    type: str = "image"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ImageAttachment":
        return cls(
            data=str(data.get("data", "")),
            mime=str(data.get("mime") or "image/png"),
            type=str(data.get("type") or "image"),
        )


@dataclass
class ContentPart:
    """One typed part of a multi-part message."""

    type: Literal["text", "image"]
    text: str | None = None
    image_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type}
        if self.text is not None:
            data["text"] = self.text
        if self.image_url is not None:
            data["image_url"] = self.image_url
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContentPart":
        return cls(type=data["type"], text=data.get("text"), image_url=data.get("image_url"))


MessageContent = str | list[ContentPart]


@dataclass
class TokenUsage:
    """Token counters for a message or a whole session."""

    input: int = 0
    output: int = 0
    context: int | None = None
    model: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Message:
    """A conversational unit sent to (or received from) the engine."""

    role: str  # "user", "assistant", "tool"
    content: MessageContent
    id: str | None = None
    token_usage: TokenUsage | None = None
    tool_call_id: str | None = None

    def text(self) -> str:
        """Plain-text view of the content (text parts joined)."""
        if isinstance(self.content, str):
            return self.content
        return "".join(part.text or "" for part in self.content if part.type == "text")


@dataclass
class ToolCall:
    """A tool invocation announced by the engine."""

    id: str
    name: str
    arguments: str = ""
    status: ToolCallStatus = "running"
    result: str | None = None


@dataclass
class TimelineEvent:
    """A typed, ordered unit of visible session history."""

    id: str
    session_id: str
    kind: TimelineEventKind
    content: str
    created_at: int = field(default_factory=now_ms)
    parent_message_id: str | None = None
    streaming: bool = False
    tool_call_id: str | None = None
    tool_name: str | None = None
    status: ToolCallStatus | None = None
    attachments: list[ImageAttachment] | None = None

    @classmethod
    def create(
        cls,
        session_id: str,
        kind: TimelineEventKind,
        content: str,
        parent_message_id: str | None = None,
        **fields: Any,
    ) -> "TimelineEvent":
        return cls(
            id=generate_id("event"),
            session_id=session_id,
            kind=kind,
            content=content,
            parent_message_id=parent_message_id,
            **fields,
        )

    def metadata(self) -> dict[str, Any]:
        """Kind-specific payload stored next to the content."""
        data: dict[str, Any] = {"streaming": self.streaming}
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
            data["tool_name"] = self.tool_name
            data["status"] = self.status
        if self.attachments:
            data["attachments"] = [a.to_dict() for a in self.attachments]
        return data

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "kind": self.kind,
            "content": self.content,
            "created_at": self.created_at,
            "parent_message_id": self.parent_message_id,
            **self.metadata(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TimelineEvent":
        attachments = data.get("attachments")
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            kind=data["kind"],
            content=data.get("content", ""),
            created_at=int(data.get("created_at") or 0),
            parent_message_id=data.get("parent_message_id"),
            streaming=bool(data.get("streaming", False)),
            tool_call_id=data.get("tool_call_id"),
            tool_name=data.get("tool_name"),
            status=data.get("status"),
            attachments=[ImageAttachment.from_dict(a) for a in attachments] if attachments else None,
        )


@dataclass
class ContextUsage:
    """Occupancy of the model's context window by the latest prompt."""

    used: int = 0
    limit: int = 128_000
    percent: int = 0


@dataclass
class ContextManagedEvent:
    """Engine report after it truncated or summarized the history."""

    was_truncated: bool = False
    was_summarized: bool = False
    messages_removed: int = 0
    tokens_before: int = 0
    tokens_after: int = 0


@dataclass
class EngineResult:
    """What the agent engine returns once a run finishes."""

    content: str = ""
    reasoning: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    last_input_tokens: int | None = None
    response_messages: list[Message] = field(default_factory=list)
    new_summary: Any = None


@dataclass
class TurnState:
    """Observable state of a chat session, snapshotted for listeners."""

    messages: list[Message] = field(default_factory=list)
    is_loading: bool = False
    error: str | None = None
    timeline_events: list[TimelineEvent] = field(default_factory=list)
    session_tokens: TokenUsage | None = None
    context_usage: ContextUsage = field(default_factory=ContextUsage)
    context_status: str | None = None
    tokens: TokenUsage = field(default_factory=TokenUsage)
    session_id: str | None = None
    plan_exit_proposed: bool = False
    mode: str = "build"
    model_override: str | None = None
    provider_override: str | None = None
    reasoning_effort_override: str | None = None

    def snapshot(self) -> "TurnState":
        return copy.deepcopy(self)
