"""
events.py – typed engine events and the sinks that consume them
===============================================================
The engine never prints.  Each transition becomes an `Event` handed to
a sink callable; sinks decide where it goes (JSON log, in-memory ring
for the control panel, Redis via `shared.redis_client.RedisEventSink`).
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List

from shared.logging import get_logger

log = get_logger("signal_engine.events")


@dataclass(frozen=True)
class Event:
    kind: str
    message: str
    ts: float = field(default_factory=time.time)
    data: Dict[str, Any] = field(default_factory=dict)
    level: int = logging.INFO

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "ts": self.ts,
            "level": logging.getLevelName(self.level),
            "message": self.message,
            "data": self.data,
        }


EventSink = Callable[[Event], None]


class LoggingSink:
    """One structured JSON log line per event."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._log = logger or get_logger("signal_engine")

    def __call__(self, event: Event) -> None:
        self._log.log(event.level, event.message,
                      extra={"event": event.kind, "data": event.data})


class MemorySink:
    """Bounded ring of recent events for the status endpoint."""

    def __init__(self, maxlen: int = 100) -> None:
        self._events: Deque[Event] = deque(maxlen=maxlen)

    def __call__(self, event: Event) -> None:
        self._events.append(event)

    def entries(self, last: int | None = None) -> List[Dict[str, Any]]:
        items = list(self._events)
        if last is not None:
            items = items[-last:]
        return [e.to_dict() for e in items]

    def clear(self) -> None:
        self._events.clear()

    def __len__(self) -> int:
        return len(self._events)


class FanoutSink:
    def __init__(self, *sinks: EventSink) -> None:
        self.sinks = [s for s in sinks if s is not None]

    def __call__(self, event: Event) -> None:
        for sink in self.sinks:
            try:
                sink(event)
            except Exception:  # noqa: BLE001
                log.exception("event sink %r failed on %s", sink, event.kind)
