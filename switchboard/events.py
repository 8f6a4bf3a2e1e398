"""
Event stream — the typed vocabulary every observer sees.

Events are append-only. Listeners are plain callables invoked synchronously
on emit; async subscribers get their own queue and iterate until the stream
is closed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Callable

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    RUN_STARTED = "run_started"
    CONTENT_DELTA = "content_delta"
    REASONING_DELTA = "reasoning_delta"
    MESSAGE_FINALIZED = "message_finalized"
    TOOL_CALL_STARTED = "tool_call_started"
    TOOL_CALL_FINISHED = "tool_call_finished"
    NOTIFICATION_FLUSHED = "notification_flushed"
    SAMPLING_REQUEST_PENDING = "sampling_request_pending"
    ELICITATION_REQUEST_PENDING = "elicitation_request_pending"
    AUTH_REQUIRED = "auth_required"
    RUN_COMPLETE = "run_complete"
    RUN_MAX_ITERATIONS = "run_max_iterations"
    RUN_CANCELLED = "run_cancelled"
    RUN_ERROR = "run_error"


TERMINAL_EVENTS = frozenset({
    EventType.RUN_COMPLETE,
    EventType.RUN_MAX_ITERATIONS,
    EventType.RUN_CANCELLED,
    EventType.RUN_ERROR,
})


@dataclass(frozen=True)
class Event:
    type: EventType
    data: dict = field(default_factory=dict)
    ts: int = field(default_factory=lambda: round(time.monotonic() * 1000))

    def __getitem__(self, key: str):
        return self.data[key]

    def get(self, key: str, default=None):
        return self.data.get(key, default)

    def to_dict(self) -> dict:
        return {"type": self.type.value, "ts": self.ts, **self.data}


def _ev(type_: EventType, **kw) -> Event:
    return Event(type=type_, data=kw)


_CLOSED = object()


class EventStream:
    """Fan-out of events to listeners and async subscribers, with full history."""

    def __init__(self):
        self.history: list[Event] = []
        self._listeners: list[Callable[[Event], None]] = []
        self._queues: list[asyncio.Queue] = []
        self._closed = False

    def add_listener(self, callback: Callable[[Event], None]) -> Callable[[], None]:
        """Register a sync callback. Returns a function that removes it."""
        self._listeners.append(callback)

        def _remove():
            if callback in self._listeners:
                self._listeners.remove(callback)
        return _remove

    def emit(self, type_: EventType, **kw) -> Event:
        event = _ev(type_, **kw)
        self.history.append(event)
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception as e:
                logger.warning("Event listener %r failed on %s: %s", callback, type_.value, e)
        for q in self._queues:
            q.put_nowait(event)
        return event

    async def subscribe(self, replay: bool = False) -> AsyncIterator[Event]:
        """Iterate events as they arrive. With replay=True, history comes first."""
        q: asyncio.Queue = asyncio.Queue()
        if replay:
            for event in self.history:
                q.put_nowait(event)
        if self._closed:
            q.put_nowait(_CLOSED)
        self._queues.append(q)
        try:
            while True:
                item = await q.get()
                if item is _CLOSED:
                    return
                yield item
        finally:
            self._queues.remove(q)

    def of_type(self, *types: EventType) -> list[Event]:
        return [e for e in self.history if e.type in types]

    def close(self):
        self._closed = True
        for q in self._queues:
            q.put_nowait(_CLOSED)
