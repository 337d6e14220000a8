"""Outbound events of a turn.

Every turn produces an ordered stream of these dataclasses. The
dict codecs below produce the camelCase JSON shape consumed by the
chat UI (``{"event": "content", "sessionId": ..., "text": ...}``).
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class TurnEvent:
    """Base event emitted by the turn orchestrator."""
    event_type: str = ""
    session_id: str | None = None


@dataclass
class SessionCreated(TurnEvent):
    """Emitted once, only for turns that started without a session id."""
    event_type: str = "session-created"


@dataclass
class Status(TurnEvent):
    event_type: str = "status"
    text: str = ""
    tokens: int | None = None
    can_interrupt: bool = False


@dataclass
class Content(TurnEvent):
    event_type: str = "content"
    text: str = ""


@dataclass
class Error(TurnEvent):
    event_type: str = "error"
    message: str = ""
    kind: str = ""


@dataclass
class Complete(TurnEvent):
    event_type: str = "complete"
    exit_code: int | None = None


@dataclass
class Aborted(TurnEvent):
    event_type: str = "aborted"


TERMINAL_EVENT_TYPES = frozenset({"complete", "aborted"})

_EVENT_MAP: dict[str, type[TurnEvent]] = {
    "session-created": SessionCreated,
    "status": Status,
    "content": Content,
    "error": Error,
    "complete": Complete,
    "aborted": Aborted,
}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _snake(name: str) -> str:
    out = []
    for ch in name:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out)


def event_to_dict(event: TurnEvent) -> dict[str, Any]:
    """Convert a typed event to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is None and f != "exit_code":
            continue
        d[_camel(f)] = val
    # "event" instead of "eventType" on the wire
    d["event"] = d.pop("eventType")
    return d


def dict_to_event(data: dict[str, Any]) -> TurnEvent:
    """Convert a wire dict back to a typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, TurnEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {}
    for key, value in data.items():
        name = _snake(key)
        if name in valid_fields:
            filtered[name] = value
    filtered["event_type"] = event_type
    return cls(**filtered)
