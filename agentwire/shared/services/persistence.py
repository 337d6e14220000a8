"""Session registry: durable session id -> session metadata + message log.

Storage layout:
    <home_dir>/sessions/{quoted session_id}.json

Every mutation rewrites the session file atomically. An in-memory
cache fronts the files; a lock guards cache insert/lookup so turns
running on different threads (e.g. a server and a CLI sharing one
registry) never observe a half-registered session.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from urllib.parse import quote, unquote

from agentwire.shared.models.message import Message, MessageRole
from agentwire.shared.models.session import Session
from agentwire.shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)


class SessionNotFoundError(KeyError):
    """No session with this identifier exists."""


class SessionRegistry:
    """Create, load and append to persisted sessions."""

    def __init__(self, base_dir: Path | str) -> None:
        self._dir = Path(base_dir).expanduser()
        self._dir.mkdir(parents=True, exist_ok=True)
        self._cache: dict[str, Session] = {}
        self._lock = threading.RLock()
        self._last_issued_ms = 0

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, session_id: str) -> Path:
        """File for ``session_id``; ids are percent-encoded into one path segment."""
        if not session_id:
            raise ValueError("Session id must not be empty")
        return self._dir / f"{quote(session_id, safe='')}.json"

    def new_session_id(self, prefix: str = "agent") -> str:
        """Issue ``<prefix>_<millis>``, strictly increasing per registry."""
        with self._lock:
            now_ms = time.time_ns() // 1_000_000
            issued = max(now_ms, self._last_issued_ms + 1)
            while self._path(f"{prefix}_{issued}").exists():
                issued += 1
            self._last_issued_ms = issued
            return f"{prefix}_{issued}"

    def create(self, session_id: str, cwd: str) -> Session:
        """Create and persist a new session; an existing one is returned as-is."""
        with self._lock:
            existing = self._load(session_id)
            if existing is not None:
                return existing
            session = Session(session_id=session_id, cwd=cwd)
            self._cache[session_id] = session
            self._save(session)
        logger.info("Session created: %s (cwd=%s)", session_id, cwd)
        return session

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._load(session_id)

    def exists(self, session_id: str) -> bool:
        return self.get(session_id) is not None

    def messages(self, session_id: str) -> list[Message]:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return list(session.messages)

    def add_message(self, session_id: str, role: MessageRole, content: str) -> Message:
        with self._lock:
            session = self._load(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            msg = session.add_message(role, content)
            self._save(session)
        logger.debug(
            "Session %s: appended %s message (%d chars)",
            session_id, role.value, len(content),
        )
        return msg

    def set_external_session_id(self, session_id: str, external_id: str) -> None:
        """Record the identifier the agent CLI reported for this session."""
        with self._lock:
            session = self._load(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            if session.external_session_id == external_id:
                return
            session.external_session_id = external_id
            self._save(session)
        logger.info("Session %s: agent CLI session id is %s", session_id, external_id)

    def list_sessions(self) -> list[str]:
        """Session ids, most recently modified first."""
        files = sorted(
            self._dir.glob("*.json"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        return [unquote(p.stem) for p in files]

    def _load(self, session_id: str) -> Session | None:
        cached = self._cache.get(session_id)
        if cached is not None:
            return cached
        path = self._path(session_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            session = Session.from_dict(data)
        except (OSError, ValueError, KeyError) as exc:
            logger.warning("Failed to load session %s from %s: %s", session_id, path, exc)
            return None
        self._cache[session_id] = session
        return session

    def _save(self, session: Session) -> Path:
        path = self._path(session.session_id)
        atomic_write_json(path, session.to_dict())
        return path
