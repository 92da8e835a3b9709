"""
Test helpers shared across the suite.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

from tribunal.event_bus import EventBus


class ManualClock:
    """Deterministic clock; tests move time forward explicitly."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, **kwargs) -> datetime:
        with self._lock:
            self.now += timedelta(**kwargs)
            return self.now


class EventRecorder:
    """Collects (topic, payload) pairs published on a bus."""

    def __init__(self, bus: EventBus, *topics: str):
        self.events: list[tuple[str, dict]] = []
        self._lock = threading.Lock()
        for topic in topics:
            bus.subscribe(topic, self._handler(topic))

    def _handler(self, topic):
        def record(payload):
            with self._lock:
                self.events.append((topic, payload))
        return record

    def topics(self) -> list[str]:
        with self._lock:
            return [t for t, _ in self.events]

    def payloads(self, topic: str) -> list[dict]:
        with self._lock:
            return [p for t, p in self.events if t == topic]
