"""
event_bus.py — In-memory pub/sub for security events
=====================================================
Whenever the governance layer raises a security event (limit exceeded,
identifier blocked, attack detected, access denied) it is published
here. Dashboards and tests subscribe to observe events as they happen.

Each subscriber gets its own bounded, thread-safe queue because events
are published from worker threads, not only from the event loop.
"""
from __future__ import annotations

import json
import queue
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, Optional


@dataclass
class SecurityEvent:
    """Lightweight event payload broadcast to all subscribers."""

    event: str  # e.g. "RATE_LIMIT_EXCEEDED"
    identifier: str
    severity: str
    details: Dict[str, Any] = field(default_factory=dict)
    actor_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_json(self) -> str:
        return json.dumps(
            {
                "event": self.event,
                "identifier": self.identifier,
                "severity": self.severity,
                "details": self.details,
                "actor_id": self.actor_id,
                "timestamp": self.timestamp,
            },
            default=str,
        )


class EventBus:
    """Simple broadcast pub/sub using per-subscriber queues."""

    def __init__(self, maxsize: int = 256) -> None:
        self._maxsize = maxsize
        self._subscribers: set[queue.Queue[SecurityEvent]] = set()
        self._lock = Lock()

    def subscribe(self) -> queue.Queue[SecurityEvent]:
        """Register a new subscriber. Returns the queue to read from."""
        q: queue.Queue[SecurityEvent] = queue.Queue(maxsize=self._maxsize)
        with self._lock:
            self._subscribers.add(q)
        return q

    def unsubscribe(self, q: queue.Queue[SecurityEvent]) -> None:
        with self._lock:
            self._subscribers.discard(q)

    def publish(self, event: SecurityEvent) -> None:
        """Broadcast an event to all subscribers.

        Non-blocking: if a subscriber's queue is full the event is dropped
        (the audit log remains the durable record).
        """
        with self._lock:
            subscribers = list(self._subscribers)
        for q in subscribers:
            try:
                q.put_nowait(event)
            except queue.Full:
                pass  # slow consumer: drop

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
