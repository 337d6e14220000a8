"""Adapters package - outbound event types and the push channel.

Connects the turn engine to transports (SSE server, terminal runner).
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "TurnEvent",
    "event_to_dict",
    "dict_to_event",
]

from agentwire.adapters.event_bus import EventBus
from agentwire.adapters.events import TurnEvent, dict_to_event, event_to_dict
