"""Batching of assistant text on its way to the push channel.

Two independent policies feed the same sink:

- ``push()`` is for raw text. Text containing a newline is forwarded
  at once; anything else waits up to ``delay`` seconds so a CLI that
  writes one character at a time does not produce one event per byte.
- ``add_content()`` + ``commit()`` is for the classifier's line
  output. After each batch of lines the buffer is flushed if it
  exceeds ``threshold`` characters or if no partial line is pending
  on the stream; otherwise the delay timer bounds how long it waits.

Everything forwarded is also appended to the full response, which
``finalize()`` returns for persistence. The full response is exactly
the concatenation of the text handed to the sink.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

ContentSink = Callable[[str], Awaitable[None]]


class OutputAggregator:
    """Debounced forwarding of content to an async sink."""

    def __init__(
        self,
        sink: ContentSink,
        *,
        delay: float = 0.1,
        threshold: int = 100,
    ) -> None:
        self._sink = sink
        self._delay = delay
        self._threshold = threshold
        self._raw = ""
        self._lines = ""
        self._parts: list[str] = []
        self._emit_lock = asyncio.Lock()
        self._timer: asyncio.TimerHandle | None = None
        self._timer_task: asyncio.Task | None = None
        self._finalized = False
        self.flush_count = 0

    @property
    def buffered(self) -> str:
        return self._lines + self._raw

    @property
    def full_response(self) -> str:
        return "".join(self._parts)

    # ── raw (delay) policy ──

    async def push(self, text: str) -> None:
        """Buffer raw text; flush now on newline, else after the delay."""
        if not text:
            return
        self._check_open()
        self._raw += text
        self._cancel_timer()
        if "\n" in text:
            await self.flush()
        else:
            self._arm_timer()

    # ── line (size / batch) policy ──

    def add_content(self, text: str) -> None:
        """Append classified content without forwarding it yet."""
        if text:
            self._check_open()
            self._lines += text

    async def commit(self, *, has_partial: bool) -> None:
        """End of a batch of complete lines; decide whether to flush."""
        if not self._lines:
            return
        if len(self._lines) > self._threshold or not has_partial:
            await self.flush()
        elif self._timer is None:
            self._arm_timer()

    # ── shared ──

    async def flush(self) -> None:
        """Forward everything buffered, line content first."""
        self._cancel_timer()
        async with self._emit_lock:
            text = self._lines + self._raw
            self._lines = ""
            self._raw = ""
            if not text:
                return
            self._parts.append(text)
            self.flush_count += 1
            await self._sink(text)

    async def finalize(self) -> str:
        """Flush the residue and return the full response. Idempotent."""
        if not self._finalized:
            self._cancel_timer()
            task = self._timer_task
            if task is not None and not task.done():
                await task
            await self.flush()
            self._finalized = True
        return self.full_response

    def _check_open(self) -> None:
        if self._finalized:
            raise RuntimeError("aggregator already finalized")

    def _arm_timer(self) -> None:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._delay, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        self._timer_task = asyncio.ensure_future(self._timed_flush())

    async def _timed_flush(self) -> None:
        try:
            await self.flush()
        except Exception:
            logger.warning("Delayed flush failed", exc_info=True)
