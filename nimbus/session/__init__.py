"""Session, message, and timeline storage on SQLite."""

import json
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from nimbus.config import get_config
from nimbus.exceptions import SessionNotFoundError
from nimbus.logging import get_logger
from nimbus.models import (
    ContentPart,
    Message,
    MessageContent,
    TimelineEvent,
    TokenUsage,
    ToolCall,
    generate_id,
    now_ms,
)

log = get_logger(__name__)

_SLUG_WORDS = (
    "amber", "brisk", "calm", "dusky", "eager", "fuzzy", "gentle", "hazy",
    "ivory", "jolly", "keen", "lunar", "misty", "nimble", "opal", "quiet",
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        slug TEXT NOT NULL,
        title TEXT NOT NULL,
        project_dir TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        error TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        completed_at INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        session_id TEXT NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL DEFAULT '',
        parts TEXT,
        input_tokens INTEGER,
        output_tokens INTEGER,
        context_tokens INTEGER,
        model TEXT,
        created_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS timeline_events (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        session_id TEXT NOT NULL,
        message_id TEXT,
        kind TEXT NOT NULL,
        content TEXT NOT NULL DEFAULT '',
        data TEXT NOT NULL DEFAULT '{}',
        created_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tool_calls (
        id TEXT PRIMARY KEY,
        message_id TEXT NOT NULL,
        session_id TEXT NOT NULL,
        name TEXT NOT NULL,
        arguments TEXT NOT NULL,
        result TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        started_at INTEGER,
        completed_at INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sessions_updated ON sessions(updated_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, seq)",
    "CREATE INDEX IF NOT EXISTS idx_timeline_session ON timeline_events(session_id, seq)",
    "CREATE INDEX IF NOT EXISTS idx_tool_calls_message ON tool_calls(message_id)",
)

_SESSION_COLUMNS = "id, slug, title, project_dir, status, error, created_at, updated_at, completed_at"


def _generate_slug() -> str:
    return f"{secrets.choice(_SLUG_WORDS)}-{secrets.choice(_SLUG_WORDS)}-{secrets.token_hex(2)}"


@dataclass
class Session:
    """A persisted conversation session."""

    id: str
    slug: str
    title: str
    project_dir: str
    status: str = "pending"
    error: str | None = None
    created_at: int = 0
    updated_at: int = 0
    completed_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "slug": self.slug,
            "title": self.title,
            "project_dir": self.project_dir,
            "status": self.status,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_row(cls, row: tuple[Any, ...]) -> "Session":
        return cls(*row)


def _encode_content(content: MessageContent) -> tuple[str, str | None]:
    if isinstance(content, str):
        return content, None
    text = "".join(part.text or "" for part in content if part.type == "text")
    return text, json.dumps([part.to_dict() for part in content])


class SessionStore:
    """Persists sessions, messages, timeline events, and tool calls."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize the store.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            config = get_config()
            self.db_path = Path(config.session.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            for statement in _SCHEMA:
                await self._db.execute(statement)
            await self._db.commit()
        return self._db

    # ── sessions ────────────────────────────────────────────

    async def create_session(self, project_dir: str, title: str | None = None) -> Session:
        """Create and persist a new session."""
        db = await self._ensure_db()
        now = now_ms()
        session = Session(
            id=generate_id("sess"),
            slug=_generate_slug(),
            title=title or f"New session - {datetime.now(UTC).isoformat()}",
            project_dir=str(project_dir),
            created_at=now,
            updated_at=now,
        )
        await db.execute(
            f"INSERT INTO sessions ({_SESSION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                session.id,
                session.slug,
                session.title,
                session.project_dir,
                session.status,
                session.error,
                session.created_at,
                session.updated_at,
                session.completed_at,
            ),
        )
        await db.commit()
        log.info("Created new session", session_id=session.id, project_dir=session.project_dir)
        return session

    async def get_session(self, session_id: str) -> Session | None:
        """Get a session by ID, or None if not found."""
        db = await self._ensure_db()
        async with db.execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?",
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return Session.from_row(row) if row else None

    async def require_session(self, session_id: str) -> Session:
        """Get a session by ID.

        Raises:
            SessionNotFoundError if no such session exists
        """
        session = await self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def update_session(
        self,
        session_id: str,
        status: str | None = None,
        error: str | None = None,
        title: str | None = None,
    ) -> None:
        """Update status, error, or title; terminal statuses stamp ``completed_at``."""
        db = await self._ensure_db()
        assignments = ["updated_at = ?"]
        values: list[Any] = [now_ms()]
        if status is not None:
            assignments.append("status = ?")
            values.append(status)
            if status in ("completed", "failed", "cancelled"):
                assignments.append("completed_at = ?")
                values.append(now_ms())
            if status != "failed":
                assignments.append("error = NULL")
        if error is not None:
            assignments.append("error = ?")
            values.append(error)
        if title is not None:
            assignments.append("title = ?")
            values.append(title)
        values.append(session_id)
        await db.execute(
            f"UPDATE sessions SET {', '.join(assignments)} WHERE id = ?",
            tuple(values),
        )
        await db.commit()

    async def list_sessions(self, project_dir: str | None = None, limit: int = 50) -> list[Session]:
        """List recent sessions, newest first."""
        db = await self._ensure_db()
        if project_dir is None:
            query = f"SELECT {_SESSION_COLUMNS} FROM sessions ORDER BY updated_at DESC, rowid DESC LIMIT ?"
            params: tuple[Any, ...] = (limit,)
        else:
            query = (
                f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE project_dir = ? "
                "ORDER BY updated_at DESC, rowid DESC LIMIT ?"
            )
            params = (str(project_dir), limit)
        async with db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [Session.from_row(row) for row in rows]

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session with its messages, events, and tool calls.

        Returns:
            True if deleted, False if not found
        """
        db = await self._ensure_db()
        for table in ("tool_calls", "timeline_events", "messages"):
            await db.execute(f"DELETE FROM {table} WHERE session_id = ?", (session_id,))
        cursor = await db.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        await db.commit()
        return cursor.rowcount > 0

    # ── messages ────────────────────────────────────────────

    async def create_message(
        self,
        session_id: str,
        role: str,
        content: MessageContent,
        token_usage: TokenUsage | None = None,
    ) -> str:
        """Insert a message row and return its id."""
        db = await self._ensure_db()
        message_id = generate_id("msg")
        text, parts = _encode_content(content)
        await db.execute(
            """
            INSERT INTO messages (id, session_id, role, content, parts, input_tokens,
                                  output_tokens, context_tokens, model, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                message_id,
                session_id,
                role,
                text,
                parts,
                token_usage.input if token_usage else None,
                token_usage.output if token_usage else None,
                token_usage.context if token_usage else None,
                token_usage.model if token_usage else None,
                now_ms(),
            ),
        )
        await db.commit()
        return message_id

    async def update_message(
        self,
        message_id: str,
        content: MessageContent,
        token_usage: TokenUsage | None = None,
    ) -> None:
        """Replace message content and, when given, its token usage."""
        db = await self._ensure_db()
        text, parts = _encode_content(content)
        await db.execute(
            "UPDATE messages SET content = ?, parts = ? WHERE id = ?",
            (text, parts, message_id),
        )
        if token_usage is not None:
            await db.execute(
                """
                UPDATE messages
                SET input_tokens = ?, output_tokens = ?, context_tokens = ?, model = ?
                WHERE id = ?
                """,
                (
                    token_usage.input,
                    token_usage.output,
                    token_usage.context,
                    token_usage.model,
                    message_id,
                ),
            )
        await db.commit()

    async def get_messages(self, session_id: str) -> list[Message]:
        """Messages of a session in insertion order."""
        db = await self._ensure_db()
        async with db.execute(
            """
            SELECT id, role, content, parts, input_tokens, output_tokens, context_tokens, model
            FROM messages WHERE session_id = ? ORDER BY seq ASC
            """,
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()

        messages: list[Message] = []
        for message_id, role, text, parts, input_tokens, output_tokens, context_tokens, model in rows:
            content: MessageContent = text or ""
            if parts:
                content = [ContentPart.from_dict(part) for part in json.loads(parts)]
            usage = None
            if input_tokens is not None or output_tokens is not None:
                usage = TokenUsage(
                    input=input_tokens or 0,
                    output=output_tokens or 0,
                    context=context_tokens,
                    model=model,
                )
            messages.append(Message(role=role, content=content, id=message_id, token_usage=usage))
        return messages

    async def get_session_token_totals(self, session_id: str) -> TokenUsage:
        """Aggregate token usage over every message of a session."""
        db = await self._ensure_db()
        async with db.execute(
            """
            SELECT SUM(input_tokens), SUM(output_tokens), SUM(context_tokens)
            FROM messages WHERE session_id = ?
            """,
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()
        total_input, total_output, total_context = row or (None, None, None)
        return TokenUsage(
            input=total_input or 0,
            output=total_output or 0,
            context=total_context,
        )

    # ── timeline events ─────────────────────────────────────

    async def create_timeline_event(self, event: TimelineEvent) -> None:
        """Append an event to the session timeline."""
        db = await self._ensure_db()
        await db.execute(
            """
            INSERT INTO timeline_events (id, session_id, message_id, kind, content, data, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.id,
                event.session_id,
                event.parent_message_id,
                event.kind,
                event.content,
                json.dumps(event.metadata()),
                event.created_at,
            ),
        )
        await db.commit()

    async def update_timeline_event(self, event: TimelineEvent) -> None:
        """Overwrite content and metadata of an existing event (order is kept)."""
        db = await self._ensure_db()
        await db.execute(
            "UPDATE timeline_events SET content = ?, data = ? WHERE id = ?",
            (event.content, json.dumps(event.metadata()), event.id),
        )
        await db.commit()

    async def list_timeline_events(self, session_id: str) -> list[TimelineEvent]:
        """Timeline of a session in append order. Loaded events are never streaming."""
        db = await self._ensure_db()
        async with db.execute(
            """
            SELECT id, session_id, message_id, kind, content, data, created_at
            FROM timeline_events WHERE session_id = ? ORDER BY seq ASC
            """,
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()

        events: list[TimelineEvent] = []
        for event_id, sid, message_id, kind, content, data, created_at in rows:
            payload = json.loads(data or "{}")
            payload.update(
                id=event_id,
                session_id=sid,
                parent_message_id=message_id,
                kind=kind,
                content=content,
                created_at=created_at,
                streaming=False,
            )
            events.append(TimelineEvent.from_dict(payload))
        return events

    # ── tool calls ──────────────────────────────────────────

    async def create_tool_call(self, message_id: str, session_id: str, tool_call: ToolCall) -> bool:
        """Record a tool call; duplicates are ignored.

        Returns:
            True if a row was inserted, False for an already-known call id
        """
        db = await self._ensure_db()
        cursor = await db.execute(
            """
            INSERT OR IGNORE INTO tool_calls (id, message_id, session_id, name, arguments, status, started_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                tool_call.id,
                message_id,
                session_id,
                tool_call.name,
                tool_call.arguments,
                "pending",
                now_ms(),
            ),
        )
        await db.commit()
        if cursor.rowcount == 0:
            log.warning("Tool call already recorded, skipped duplicate", tool_call_id=tool_call.id)
            return False
        return True

    async def update_tool_call_result(self, tool_call_id: str, result: str, status: str) -> None:
        """Store the result text and final status of a tool call."""
        db = await self._ensure_db()
        await db.execute(
            "UPDATE tool_calls SET result = ?, status = ?, completed_at = ? WHERE id = ?",
            (result, status, now_ms(), tool_call_id),
        )
        await db.commit()

    async def get_tool_calls(self, session_id: str) -> list[ToolCall]:
        """Tool calls of a session in start order."""
        db = await self._ensure_db()
        async with db.execute(
            """
            SELECT id, name, arguments, status, result
            FROM tool_calls WHERE session_id = ? ORDER BY started_at ASC, rowid ASC
            """,
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            ToolCall(id=row[0], name=row[1], arguments=row[2], status=row[3], result=row[4])
            for row in rows
        ]

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None


# Global session store
_store: SessionStore | None = None


def get_session_store() -> SessionStore:
    """Get the global session store."""
    global _store
    if _store is None:
        _store = SessionStore()
    return _store


def set_session_store(store: SessionStore) -> None:
    """Set the global session store."""
    global _store
    _store = store
