"""Session state: working directory and ordered message log."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from agentwire.shared.models.message import Message, MessageRole


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    """Holds all conversation state for a session."""

    session_id: str
    cwd: str
    messages: list[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    # Identifier the agent CLI announced for this conversation, if any.
    external_session_id: str | None = None

    def add_message(self, role: MessageRole, content: str) -> Message:
        msg = Message(role=role, content=content)
        self.messages.append(msg)
        self.updated_at = msg.timestamp
        return msg

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "cwd": self.cwd,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "external_session_id": self.external_session_id,
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        def _ts(key: str) -> datetime:
            raw = data.get(key)
            try:
                return datetime.fromisoformat(raw) if raw else _utcnow()
            except ValueError:
                return _utcnow()

        return cls(
            session_id=data["session_id"],
            cwd=data.get("cwd", ""),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            created_at=_ts("created_at"),
            updated_at=_ts("updated_at"),
            external_session_id=data.get("external_session_id"),
        )
