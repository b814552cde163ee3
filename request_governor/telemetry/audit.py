"""
telemetry/audit.py — Fire-and-forget audit dispatch
====================================================
Every access decision and security event becomes one AuditLogEntry
handed to an AuditSink. Sinks are external collaborators; the layer only
promises delivery attempts, never that a sink failure reaches the caller.

AuditDispatcher decouples callers from sink latency: once started, entries
go into a bounded queue drained by one worker thread. Before ``start()``
and after ``stop()`` entries are delivered inline, which keeps unit tests
and process teardown simple.
"""
from __future__ import annotations

import json
import logging
import queue
import threading
from typing import List, Optional, Protocol

import httpx

from ..database import Database
from ..models import AuditLog
from ..schemas import AuditLogEntry

logger = logging.getLogger("governor.audit")


class AuditSink(Protocol):
    def write(self, entry: AuditLogEntry) -> None:
        ...


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------

class InMemoryAuditSink:
    """Keeps entries in a list. Used in development and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: List[AuditLogEntry] = []

    def write(self, entry: AuditLogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    @property
    def entries(self) -> List[AuditLogEntry]:
        with self._lock:
            return list(self._entries)

    def by_type(self, event_type: str) -> List[AuditLogEntry]:
        return [e for e in self.entries if e.event_type == event_type]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class LoggingAuditSink:
    """Writes each entry as one structured log record."""

    def __init__(self, logger_name: str = "governor.audit.trail") -> None:
        self._log = logging.getLogger(logger_name)

    def write(self, entry: AuditLogEntry) -> None:
        self._log.info(
            entry.event_type,
            extra={
                "actor_id": entry.actor_id,
                "resource_type": entry.resource_type,
                "resource_id": entry.resource_id,
                "details": entry.details,
            },
        )


class DatabaseAuditSink:
    """Persists entries to the ``audit_logs`` table."""

    def __init__(self, database: Database) -> None:
        self.database = database
        self.database.create_tables()

    def write(self, entry: AuditLogEntry) -> None:
        # SQLite stores naive UTC datetimes; strip tzinfo for consistency
        created_at = entry.created_at.replace(tzinfo=None)
        with self.database.session() as session:
            session.add(
                AuditLog(
                    created_at=created_at,
                    actor_id=entry.actor_id,
                    event_type=entry.event_type,
                    resource_type=entry.resource_type,
                    resource_id=entry.resource_id,
                    details=json.dumps(entry.details, default=str),
                )
            )

    def close(self) -> None:
        self.database.dispose()


class WebhookAuditSink:
    """POSTs each entry as JSON to an external collector."""

    def __init__(
        self,
        url: str,
        auth_header: Optional[str] = None,
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.url = url
        headers = {"Content-Type": "application/json"}
        if auth_header:
            headers["Authorization"] = auth_header
        self._client = client or httpx.Client(timeout=timeout, headers=headers)

    def write(self, entry: AuditLogEntry) -> None:
        resp = self._client.post(self.url, content=entry.model_dump_json())
        resp.raise_for_status()

    def close(self) -> None:
        self._client.close()


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

_STOP = object()


class AuditDispatcher:
    def __init__(self, sink: AuditSink, max_queue: int = 10_000) -> None:
        self.sink = sink
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue)
        self._thread: Optional[threading.Thread] = None
        # Guards _running together with enqueueing, so nothing lands behind _STOP
        self._state_lock = threading.Lock()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        with self._state_lock:
            if self._running:
                return
            self._running = True
            self._thread = threading.Thread(
                target=self._drain, name="governor-audit", daemon=True
            )
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Drain what is queued, then stop the worker."""
        with self._state_lock:
            if not self._running:
                return
            self._running = False
            self._queue.put(_STOP)
            thread = self._thread
            self._thread = None
        if thread is not None:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Audit worker did not stop within %.1fs", timeout)

    def emit(self, entry: AuditLogEntry) -> None:
        """Hand an entry off without blocking the caller."""
        with self._state_lock:
            if self._running:
                try:
                    self._queue.put_nowait(entry)
                except queue.Full:
                    logger.warning(
                        "Audit queue full; dropping %s for %s", entry.event_type, entry.resource_id
                    )
                return
        self._deliver(entry)

    def flush(self) -> None:
        """Block until every queued entry has been handed to the sink."""
        if self._running:
            self._queue.join()

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(item)
            finally:
                self._queue.task_done()

    def _deliver(self, entry: AuditLogEntry) -> None:
        try:
            self.sink.write(entry)
        except Exception as exc:
            # Best effort: a decision already made must not be affected
            logger.warning("Audit sink write failed for %s: %s", entry.event_type, exc)
