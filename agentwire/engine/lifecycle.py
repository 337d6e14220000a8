"""Turn lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    IDLE ──> BUILDING ──> SPAWNING ──> STREAMING ──> FINALIZING ──┬──> COMPLETED
               │             │                                    │
               └─────────────┴──> FAILED                          ├──> FAILED
                                                                  │
                                                                  └──> ABORTED
"""
from __future__ import annotations

from .models import TurnState

VALID_TRANSITIONS: dict[TurnState, set[TurnState]] = {
    TurnState.IDLE: {
        TurnState.BUILDING,
    },
    TurnState.BUILDING: {
        TurnState.SPAWNING,
        TurnState.FAILED,
    },
    TurnState.SPAWNING: {
        TurnState.STREAMING,
        TurnState.FAILED,
    },
    TurnState.STREAMING: {
        TurnState.FINALIZING,
    },
    TurnState.FINALIZING: {
        TurnState.COMPLETED,
        TurnState.FAILED,
        TurnState.ABORTED,
    },
    TurnState.COMPLETED: set(),
    TurnState.FAILED: set(),
    TurnState.ABORTED: set(),
}

TERMINAL_STATES = frozenset(
    state for state, targets in VALID_TRANSITIONS.items() if not targets
)


def validate_transition(current: TurnState, target: TurnState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
