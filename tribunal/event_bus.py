"""
Event Bus
In-process publish/subscribe used to notify observers (budget alerts,
votes cast, decisions recorded) without coupling producers to consumers.

Delivery is synchronous in the publisher's thread, so events from one
publisher on one topic arrive in publish order. There is no ordering
guarantee across topics and no persistence.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

HANDLER_ERROR_TOPIC = "bus.handler_error"

Handler = Callable[[dict[str, Any]], None]


class EventBus:
    """
    Topic-keyed fan-out with failure isolation.

    A handler that raises is logged, counted and reported on
    ``bus.handler_error``; the publisher and the remaining handlers are
    unaffected.
    """

    def __init__(self):
        self._handlers: dict[str, list[Handler]] = {}
        self._lock = threading.Lock()
        self._handler_errors = 0

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``topic``. Returns an unsubscribe callable."""
        with self._lock:
            self._handlers.setdefault(topic, []).append(handler)
        return lambda: self.unsubscribe(topic, handler)

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(topic)
            if not handlers:
                return
            try:
                handlers.remove(handler)
            except ValueError:
                return
            if not handlers:
                del self._handlers[topic]

    def once(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Subscribe for a single delivery."""
        def _wrapped(payload: dict[str, Any]) -> None:
            self.unsubscribe(topic, _wrapped)
            handler(payload)

        return self.subscribe(topic, _wrapped)

    def publish(
        self,
        topic: str,
        payload: dict[str, Any],
        publisher: Optional[str] = None,
    ) -> int:
        """Deliver ``payload`` to every subscriber of ``topic``.

        Returns the number of handlers that completed without raising.
        """
        with self._lock:
            # Snapshot so handlers may (un)subscribe during delivery
            handlers = list(self._handlers.get(topic, ()))

        delivered = 0
        for handler in handlers:
            try:
                handler(payload)
                delivered += 1
            except Exception as exc:
                with self._lock:
                    self._handler_errors += 1
                logger.exception(
                    "Event handler %s failed on topic %s (publisher=%s)",
                    getattr(handler, "__name__", "anonymous"), topic, publisher,
                )
                if topic != HANDLER_ERROR_TOPIC:
                    self.publish(
                        HANDLER_ERROR_TOPIC,
                        {
                            "topic": topic,
                            "publisher": publisher,
                            "handler": getattr(handler, "__name__", "anonymous"),
                            "error": str(exc),
                        },
                        publisher="event_bus",
                    )
        return delivered

    def listener_count(self, topic: str) -> int:
        with self._lock:
            return len(self._handlers.get(topic, ()))

    @property
    def handler_error_count(self) -> int:
        return self._handler_errors

    def clear(self) -> None:
        """Drop every subscription (used on shutdown)."""
        with self._lock:
            self._handlers.clear()
            self._handler_errors = 0
