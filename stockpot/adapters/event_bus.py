"""Event plumbing between the execution core and its consumers.

EventBus queues engine events for an async consumer loop (the console
printer). JsonlEventWriter serializes them one JSON object per line,
which is how a front end in another process follows a run.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any, TextIO

from stockpot.adapters.events import EngineEvent, dict_to_event
from stockpot.engine.config import EventCallback

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue bridging engine callbacks to event consumers."""

    def __init__(self, maxsize: int = 5000, put_timeout: float = 30.0) -> None:
        self._queue: asyncio.Queue[EngineEvent] = asyncio.Queue(maxsize=maxsize)
        self._put_timeout = put_timeout
        self._closed = False

    async def _callback(self, data: dict[str, Any]) -> None:
        """Callback to pass to EngineConfig.event_callback."""
        await self.emit(dict_to_event(data))

    def make_callback(self) -> EventCallback:
        """Return the async callback for EngineConfig.event_callback."""
        return self._callback

    async def emit(self, event: EngineEvent) -> None:
        if self._closed:
            return
        try:
            # Block with a timeout for backpressure instead of dropping at once.
            await asyncio.wait_for(self._queue.put(event), timeout=self._put_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for %.0fs, dropping: %s (queue size: %d)",
                self._put_timeout, event.event_type, self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[EngineEvent]:
        """Yield events as they arrive. Stops after close() once drained."""
        while True:
            if self._closed and self._queue.empty():
                return
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event

    def close(self) -> None:
        """Stop accepting events; consumers finish what is queued."""
        self._closed = True

    def reset(self) -> None:
        """Drain leftover events and re-open the bus for a new run."""
        while not self._queue.empty():
            self._queue.get_nowait()
        self._closed = False


class JsonlEventWriter:
    """Writes engine events to a text stream as line-delimited JSON."""

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._lock = asyncio.Lock()

    async def _callback(self, data: dict[str, Any]) -> None:
        line = json.dumps(dict_to_event(data).to_dict(), ensure_ascii=False, default=str)
        async with self._lock:
            self._stream.write(line + "\n")
            self._stream.flush()

    def make_callback(self) -> EventCallback:
        return self._callback


def fan_out(*callbacks: EventCallback | None) -> EventCallback | None:
    """Combine several event callbacks into one."""
    active = [cb for cb in callbacks if cb is not None]
    if not active:
        return None
    if len(active) == 1:
        return active[0]

    async def _fanned(event: dict[str, Any]) -> None:
        for cb in active:
            await cb(event)

    return _fanned
