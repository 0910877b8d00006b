"""Per-user push channel for processing, message-chunk and error events."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class NotificationChannel(Protocol):
    """Anything that can take an event for a user. Delivery is best-effort."""

    def publish(self, user_id: str, event: dict[str, Any]) -> int:
        ...


def processing_event(conversation_id: int, status: str, title: str | None = None) -> dict:
    event: dict[str, Any] = {
        "type": "processing",
        "conversation_id": conversation_id,
        "status": status,
    }
    if title is not None:
        event["title"] = title
    return event


def chunk_event(conversation_id: int, chunk: str) -> dict:
    return {"type": "message-chunk", "conversation_id": conversation_id, "chunk": chunk}


def error_event(conversation_id: int, error: str) -> dict:
    return {"type": "error", "conversation_id": conversation_id, "error": error}


class Notifier:
    """Fans events out to every subscriber queue registered for a user.

    Each subscriber gets events in publish order. Publishing for a user with
    no subscribers is a no-op.
    """

    def __init__(self, max_queue_size: int = 0) -> None:
        self._subscribers: dict[str, list[queue.Queue]] = {}
        self._max_queue_size = max_queue_size
        self._lock = threading.Lock()

    def subscribe(self, user_id: str) -> queue.Queue:
        """Register a new subscriber for ``user_id`` and return its queue."""
        q: queue.Queue = queue.Queue(maxsize=self._max_queue_size)
        with self._lock:
            self._subscribers.setdefault(user_id, []).append(q)
        return q

    def unsubscribe(self, user_id: str, q: queue.Queue) -> None:
        with self._lock:
            subs = self._subscribers.get(user_id, [])
            if q in subs:
                subs.remove(q)
            if not subs:
                self._subscribers.pop(user_id, None)

    def subscriber_count(self, user_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(user_id, []))

    def publish(self, user_id: str, event: dict[str, Any]) -> int:
        """Send an event to all of the user's subscribers. Returns how many got it."""
        with self._lock:
            subs = list(self._subscribers.get(user_id, []))
        delivered = 0
        for q in subs:
            try:
                q.put_nowait(event)
                delivered += 1
            except queue.Full:
                logger.warning("Dropping %s event for user %s: subscriber queue full", event.get("type"), user_id)
        return delivered
