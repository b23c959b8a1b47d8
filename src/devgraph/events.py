"""Event bus: append-only history, live subscribers, optional JSONL log."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass
class Event:
    type: str  # task.status | action.status | log
    source: str  # task or action key
    ts: float = field(default_factory=time.time)
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": self.type, "source": self.source, "ts": self.ts, "data": self.data}


class EventBus:
    """Append-only event log with subscription support.

    Per source, events are recorded in the order they were emitted.
    Nothing in the engine depends on anyone consuming them.
    """

    def __init__(self, log_file: Path | None = None, max_queue: int = 1000):
        self._log_file = log_file
        self._max_queue = max_queue
        self._subscribers: list[asyncio.Queue] = []
        self._listeners: list[Callable[[Event], None]] = []
        self._history: list[Event] = []

        if log_file:
            log_file.parent.mkdir(parents=True, exist_ok=True)

    def emit(self, event: Event):
        """Emit an event: record, persist and notify subscribers."""
        self._history.append(event)
        self._persist(event)
        self._notify(event)
        logger.debug("Event: %s [%s] %s", event.type, event.source, event.data)

    def emit_simple(self, type: str, source: str, /, **data):
        """Convenience: emit with keyword args. Payload keys may reuse `type` or `source`."""
        self.emit(Event(type=type, source=source, data=data))

    def recent(self, limit: int = 50, offset: int = 0) -> list[Event]:
        """Get recent events (paginated, oldest first)."""
        start = max(0, len(self._history) - offset - limit)
        end = max(0, len(self._history) - offset)
        return self._history[start:end]

    def history(self, type: str | None = None, source: str | None = None) -> list[Event]:
        return [
            e for e in self._history
            if (type is None or e.type == type) and (source is None or e.source == source)
        ]

    def subscribe(self) -> asyncio.Queue:
        """Subscribe to live events."""
        q: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue)
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue):
        if q in self._subscribers:
            self._subscribers.remove(q)

    def add_listener(self, fn: Callable[[Event], None]):
        """Synchronous callback, called inline on every emit (e.g. terminal output)."""
        self._listeners.append(fn)

    def _persist(self, event: Event):
        if self._log_file:
            with open(self._log_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(event.to_dict(), default=str) + "\n")

    def _notify(self, event: Event):
        for fn in self._listeners:
            fn(event)
        for q in self._subscribers:
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug("subscriber queue full, dropping %s event", event.type)
