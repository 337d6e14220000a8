"""Async push channel between turn orchestrators and UI consumers.

Turns publish typed events through the callback returned by
``make_callback()``; consumers iterate ``consume()``. Events of one
turn keep the order in which the turn emitted them.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from agentwire.adapters.events import TurnEvent, dict_to_event

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue bridging turn callbacks to event consumers."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[TurnEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    async def _callback(self, event: TurnEvent | dict[str, Any]) -> None:
        """Sink to pass to TurnOrchestrator.run_turn()."""
        if isinstance(event, dict):
            event = dict_to_event(event)
        await self.emit(event)

    def make_callback(self):
        """Return the async sink for a turn."""
        return self._callback

    async def emit(self, event: TurnEvent) -> None:
        if self._closed:
            return
        try:
            # Backpressure instead of dropping, bounded so a dead consumer
            # cannot wedge a turn forever.
            await asyncio.wait_for(self._queue.put(event), timeout=30.0)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for 30s, dropping: %s (queue size: %d)",
                event.event_type,
                self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[TurnEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event

    def get_nowait(self) -> TurnEvent | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def drain(self) -> list[TurnEvent]:
        """Remove and return everything currently queued."""
        events: list[TurnEvent] = []
        while True:
            event = self.get_nowait()
            if event is None:
                return events
            events.append(event)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True

    def reset(self) -> None:
        """Drain leftover events and re-open the bus."""
        self.drain()
        self._closed = False
