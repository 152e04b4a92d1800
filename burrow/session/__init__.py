"""Conversation ledger: messages, sessions, and JSON-file session storage."""

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from burrow.exceptions import NotFoundError, SessionNotFoundError
from burrow.logging import get_logger
from burrow.store import SandboxStore
from burrow.tools.registry import ToolCall

log = get_logger(__name__)

CHATS_DIRECTORY = "chats"


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat(timespec="microseconds")


def _parse_timestamp(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return datetime.min.replace(tzinfo=UTC)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


@dataclass
class Message:
    """A message in the session.

    ``is_streaming`` marks the provisional assistant message while a stream
    is in flight; it is never persisted.
    """

    role: Role
    content: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=_utcnow_iso)
    tool_calls: list[ToolCall] | None = None
    is_streaming: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.tool_calls:
            data["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        raw_calls = data.get("tool_calls")
        return cls(
            id=str(data.get("id") or uuid.uuid4()),
            role=Role(data["role"]),
            content=str(data.get("content", "")),
            timestamp=data.get("timestamp") or _utcnow_iso(),
            tool_calls=[ToolCall.from_dict(item) for item in raw_calls] if raw_calls else None,
        )


@dataclass
class Session:
    """A conversation session."""

    id: str
    name: str
    messages: list[Message] = field(default_factory=list)
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)
    pinned: bool = False

    def touch(self) -> None:
        """Bump ``updated_at``; it never moves backwards."""
        now = _utcnow_iso()
        if _parse_timestamp(now) >= _parse_timestamp(self.updated_at):
            self.updated_at = now

    def append(self, message: Message) -> Message:
        self.messages.append(message)
        self.touch()
        return message

    def add_message(
        self,
        role: Role | str,
        content: str,
        tool_calls: list[ToolCall] | None = None,
        is_streaming: bool = False,
    ) -> Message:
        """Add a message to the session."""
        return self.append(Message(
            role=Role(role),
            content=content,
            tool_calls=tool_calls,
            is_streaming=is_streaming,
        ))

    def update_last_assistant_message(self, content: str) -> None:
        """Overwrite the content of the most recent assistant message."""
        for message in reversed(self.messages):
            if message.role is Role.ASSISTANT:
                message.content = content
                self.touch()
                return

    def remove_message(self, message_id: str) -> bool:
        for idx, message in enumerate(self.messages):
            if message.id == message_id:
                del self.messages[idx]
                return True
        return False

    @property
    def last_message(self) -> Message | None:
        for message in reversed(self.messages):
            if message.role is not Role.SYSTEM:
                return message
        return None

    @property
    def message_count(self) -> int:
        return sum(1 for message in self.messages if message.role is not Role.SYSTEM)

    @property
    def preview(self) -> str:
        last = self.last_message
        return last.content[:80] if last else "Empty chat"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "messages": [message.to_dict() for message in self.messages],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "pinned": self.pinned,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            name=data.get("name") or "New Chat",
            messages=[Message.from_dict(item) for item in data.get("messages", [])],
            created_at=data.get("created_at", _utcnow_iso()),
            updated_at=data.get("updated_at", _utcnow_iso()),
            pinned=bool(data.get("pinned", False)),
        )


class SessionManager:
    """Manages conversation sessions as one JSON snapshot per file in chats/."""

    def __init__(self, store: SandboxStore, default_name: str = "New Chat"):
        self.store = store
        self.default_name = default_name

    @staticmethod
    def _record_path(session_id: str) -> str:
        return f"{CHATS_DIRECTORY}/{session_id}.json"

    async def create_session(self, name: str | None = None) -> Session:
        """Create and persist a new session."""
        session = Session(id=str(uuid.uuid4()), name=name or self.default_name)
        await self.save_session(session)
        log.info("Created new session", session_id=session.id, name=session.name)
        return session

    async def save_session(self, session: Session) -> None:
        """Overwrite the session's file with a full snapshot."""
        payload = json.dumps(session.to_dict(), indent=2, ensure_ascii=False)
        await asyncio.to_thread(self.store.create, self._record_path(session.id), payload)

    def _read_session(self, path: str) -> Session | None:
        try:
            return Session.from_dict(json.loads(self.store.read(path)))
        except NotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            log.warning("Skipping unreadable session file", path=path, error=str(e))
            return None

    async def load_session(self, session_id: str) -> Session | None:
        """Get a session by ID, or None when it does not exist."""
        return await asyncio.to_thread(self._read_session, self._record_path(session_id))

    def _read_all(self) -> list[Session]:
        sessions: list[Session] = []
        try:
            entries = self.store.list(CHATS_DIRECTORY)
        except NotFoundError:
            return sessions
        for entry in entries:
            if entry.is_directory or not entry.name.endswith(".json"):
                continue
            session = self._read_session(entry.path)
            if session is not None:
                sessions.append(session)
        sessions.sort(key=lambda item: _parse_timestamp(item.updated_at), reverse=True)
        return sessions

    async def list_sessions(self, limit: int | None = None) -> list[Session]:
        """List sessions, most recently updated first."""
        sessions = await asyncio.to_thread(self._read_all)
        return sessions if limit is None else sessions[:limit]

    async def get_or_create_session(self, name: str | None = None) -> Session:
        """Most recent session (optionally by name), creating one if none exist."""
        for session in await self.list_sessions():
            if name is None or session.name == name:
                return session
        return await self.create_session(name=name)

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session's backing file.

        Returns:
            True if deleted, False if not found
        """
        try:
            await asyncio.to_thread(self.store.delete, self._record_path(session_id))
        except NotFoundError:
            return False
        log.info("Deleted session", session_id=session_id)
        return True

    async def _require(self, session_id: str) -> Session:
        session = await self.load_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def rename_session(self, session_id: str, name: str) -> Session:
        session = await self._require(session_id)
        session.name = name
        session.touch()
        await self.save_session(session)
        return session

    async def set_pinned(self, session_id: str, pinned: bool) -> Session:
        session = await self._require(session_id)
        session.pinned = pinned
        await self.save_session(session)
        return session
