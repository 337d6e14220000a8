"""Core data models for the turn pipeline.

All dataclasses, enums, and type aliases shared by the engine
modules. Single source of truth to avoid circular imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TurnState(str, Enum):
    """Turn lifecycle states. See lifecycle.py for transition rules."""
    IDLE = "idle"
    BUILDING = "building"
    SPAWNING = "spawning"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


class ErrorKind(str, Enum):
    """Values carried by the outbound ``error`` event."""
    DIRECTORY_NOT_FOUND = "directory-not-found"
    SPAWN_FAILED = "spawn-failed"
    TIMEOUT = "timeout"
    PROCESS_ERROR = "process-error"
    NONZERO_EXIT = "nonzero-exit"


class CommandStrategy(str, Enum):
    """How the agent command line is assembled."""
    TEMPLATE = "template"
    ARGS = "args"


@dataclass
class ImageAttachment:
    """An inline image, as ``data:<mime>;base64,<payload>``."""
    data: str
    name: str | None = None


@dataclass
class ToolSettings:
    """Per-turn flags bundle supplied by the caller."""
    skip_permissions: bool = False
    extra_args: list[str] = field(default_factory=list)


@dataclass
class TurnRequest:
    """Everything the caller supplies for one turn."""
    prompt: str
    cwd: str
    session_id: str | None = None
    model: str | None = None
    images: list[ImageAttachment] = field(default_factory=list)
    tools: ToolSettings = field(default_factory=ToolSettings)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TurnRequest:
        """Build a request from the JSON shape used by the UI layer."""
        tools_raw = data.get("toolsSettings") or data.get("tools") or {}
        extra = tools_raw.get("extraArgs") or tools_raw.get("extra_args") or []
        if isinstance(extra, str):
            extra = extra.split()
        images = [
            ImageAttachment(data=img.get("data", ""), name=img.get("name"))
            for img in data.get("images") or []
            if isinstance(img, dict)
        ]
        return cls(
            prompt=data.get("prompt") or data.get("command") or "",
            cwd=data.get("cwd") or data.get("projectPath") or "",
            session_id=data.get("sessionId") or data.get("session_id") or None,
            model=data.get("model") or None,
            images=images,
            tools=ToolSettings(
                skip_permissions=bool(
                    tools_raw.get("skipPermissions")
                    or tools_raw.get("skip_permissions")
                ),
                extra_args=[str(a) for a in extra],
            ),
        )


@dataclass(frozen=True)
class CommandSpec:
    """Concrete invocation produced once per turn by the command builder."""
    executable: str
    args: tuple[str, ...]
    env: dict[str, str]
    cwd: str
    stdin_payload: str | None = None
    strategy: CommandStrategy = CommandStrategy.ARGS

    @property
    def argv(self) -> list[str]:
        return [self.executable, *self.args]


@dataclass
class TurnResult:
    """Outcome of one turn, returned to the orchestrating caller."""
    session_id: str | None
    state: TurnState
    exit_code: int | None = None
    response: str = ""
    error: Exception | None = None
    aborted: bool = False
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.state == TurnState.COMPLETED and self.error is None
