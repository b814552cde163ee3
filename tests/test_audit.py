"""
Tests for audit sinks, the background dispatcher and security events.
"""
from __future__ import annotations

import json
import logging
import threading

import httpx
import pytest
from sqlalchemy import select

from request_governor.database import Database
from request_governor.event_bus import EventBus, SecurityEvent
from request_governor.models import AuditLog
from request_governor.schemas import AuditLogEntry
from request_governor.telemetry.audit import (
    AuditDispatcher,
    DatabaseAuditSink,
    InMemoryAuditSink,
    LoggingAuditSink,
    WebhookAuditSink,
)
from request_governor.telemetry.events import SecurityEventLogger


def _entry(**overrides) -> AuditLogEntry:
    fields = {
        "actor_id": "u1",
        "event_type": "ACCESS_GRANTED_READ",
        "resource_type": "reports",
        "resource_id": "r1",
        "details": {"action": "read"},
    }
    fields.update(overrides)
    return AuditLogEntry(**fields)


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------

class TestSinks:

    def test_database_sink_persists_entries(self):
        database = Database("sqlite://")
        sink = DatabaseAuditSink(database)
        sink.write(_entry(details={"action": "read", "risk_level": "low"}))

        with database.session() as session:
            rows = session.execute(select(AuditLog)).scalars().all()
        assert len(rows) == 1
        assert rows[0].event_type == "ACCESS_GRANTED_READ"
        assert rows[0].actor_id == "u1"
        assert json.loads(rows[0].details) == {"action": "read", "risk_level": "low"}
        sink.close()

    def test_webhook_sink_posts_json(self):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(204)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        sink = WebhookAuditSink("https://audit.example/ingest", client=client)
        sink.write(_entry())
        assert received[0]["event_type"] == "ACCESS_GRANTED_READ"
        assert received[0]["resource_id"] == "r1"

    def test_webhook_sink_raises_on_error_status(self):
        client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        sink = WebhookAuditSink("https://audit.example/ingest", client=client)
        with pytest.raises(httpx.HTTPStatusError):
            sink.write(_entry())

    def test_logging_sink(self, caplog):
        with caplog.at_level(logging.INFO, logger="governor.audit.trail"):
            LoggingAuditSink().write(_entry(event_type="ACCESS_DENIED_DELETE"))
        record = caplog.records[-1]
        assert record.getMessage() == "ACCESS_DENIED_DELETE"
        assert record.actor_id == "u1"


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class TestDispatcher:

    def test_inline_delivery_when_not_started(self):
        sink = InMemoryAuditSink()
        AuditDispatcher(sink).emit(_entry())
        assert len(sink.entries) == 1

    def test_background_delivery_and_flush(self):
        sink = InMemoryAuditSink()
        dispatcher = AuditDispatcher(sink)
        dispatcher.start()
        try:
            for i in range(20):
                dispatcher.emit(_entry(resource_id=f"r{i}"))
            dispatcher.flush()
            assert [e.resource_id for e in sink.entries] == [f"r{i}" for i in range(20)]
        finally:
            dispatcher.stop()
        assert dispatcher.running is False

    def test_stop_drains_queue(self):
        sink = InMemoryAuditSink()
        dispatcher = AuditDispatcher(sink)
        dispatcher.start()
        for _ in range(5):
            dispatcher.emit(_entry())
        dispatcher.stop()
        assert len(sink.entries) == 5

    def test_emits_racing_stop_are_all_delivered(self):
        sink = InMemoryAuditSink()
        dispatcher = AuditDispatcher(sink)
        dispatcher.start()
        go = threading.Event()

        def producer(n):
            go.wait(5)
            for i in range(200):
                dispatcher.emit(_entry(resource_id=f"{n}-{i}"))

        threads = [threading.Thread(target=producer, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        go.set()
        dispatcher.stop()
        for t in threads:
            t.join(5)

        assert len(sink.entries) == 8 * 200

    def test_emit_after_stop_is_delivered_inline(self):
        sink = InMemoryAuditSink()
        dispatcher = AuditDispatcher(sink)
        dispatcher.start()
        dispatcher.stop()
        dispatcher.emit(_entry())
        assert len(sink.entries) == 1

    def test_sink_failure_is_swallowed(self, caplog):
        class FailingSink:
            def write(self, entry):
                raise IOError("disk full")

        dispatcher = AuditDispatcher(FailingSink())
        with caplog.at_level(logging.WARNING, logger="governor.audit"):
            dispatcher.emit(_entry())
        assert "Audit sink write failed" in caplog.text

    def test_full_queue_drops_instead_of_blocking(self):
        release = threading.Event()

        class SlowSink(InMemoryAuditSink):
            def write(self, entry):
                release.wait(5)
                super().write(entry)

        sink = SlowSink()
        dispatcher = AuditDispatcher(sink, max_queue=2)
        dispatcher.start()
        try:
            for _ in range(10):
                dispatcher.emit(_entry())
        finally:
            release.set()
            dispatcher.stop()
        assert len(sink.entries) < 10


# ---------------------------------------------------------------------------
# Security events + bus
# ---------------------------------------------------------------------------

class TestSecurityEvents:

    def test_security_event_is_audited_and_published(self, sink):
        bus = EventBus()
        subscriber = bus.subscribe()
        events = SecurityEventLogger(AuditDispatcher(sink), bus)

        events.log_security_event("DDOS_DETECTED", "ip:1.2.3.4", {"signals": ["x"]}, severity="critical")

        [entry] = sink.entries
        assert entry.event_type == "SECURITY_DDOS_DETECTED"
        assert entry.resource_type == "security"
        assert entry.resource_id == "ip:1.2.3.4"
        assert entry.actor_id == "system"
        assert entry.details["severity"] == "critical"
        assert entry.details["details"] == {"signals": ["x"]}

        event = subscriber.get_nowait()
        assert event.event == "DDOS_DETECTED"
        assert event.severity == "critical"

    def test_critical_events_log_at_critical(self, sink, caplog):
        events = SecurityEventLogger(AuditDispatcher(sink))
        with caplog.at_level(logging.WARNING, logger="governor.security"):
            events.log_security_event("DDOS_DETECTED", "ip:1.2.3.4", severity="critical")
            events.log_security_event("ACCESS_DENIED", "user:1")
        levels = [r.levelno for r in caplog.records if r.name == "governor.security"]
        assert levels == [logging.CRITICAL, logging.WARNING]

    def test_bus_drops_for_full_subscriber(self):
        bus = EventBus(maxsize=1)
        q = bus.subscribe()
        bus.publish(SecurityEvent(event="A", identifier="x", severity="warning"))
        bus.publish(SecurityEvent(event="B", identifier="x", severity="warning"))
        assert q.get_nowait().event == "A"
        assert q.empty()

    def test_unsubscribe(self):
        bus = EventBus()
        q = bus.subscribe()
        assert bus.subscriber_count == 1
        bus.unsubscribe(q)
        assert bus.subscriber_count == 0

    def test_event_json(self):
        payload = json.loads(SecurityEvent(event="A", identifier="x", severity="high").to_json())
        assert payload["event"] == "A"
        assert payload["actor_id"] is None
