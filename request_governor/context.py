"""
context.py — Governance context
===============================
One object owns every governance table, the audit dispatcher and the
periodic sweeps. Host applications build it once at startup (usually via
``GovernanceContext.from_settings``) and pass it to whatever needs it,
typically through ``app.state`` and FastAPI dependencies.

Lifecycle:
  start()     → audit worker + cache sweep + security sweep
  shutdown()  → sweeps stopped, queued audit entries drained, sink closed
"""
from __future__ import annotations

import logging
import random
from typing import Optional

from .abuse.engine import AbuseEngine
from .abuse.user_agent import SubstringUserAgentClassifier, UserAgentClassifier
from .access.gate import AccessControlGate
from .access.permissions import PermissionTable, load_permission_table
from .cache.manager import CacheManager
from .cache.store import TTLCacheStore
from .clock import Clock, now_ms
from .config import Settings
from .database import Database
from .event_bus import EventBus
from .ratelimit.blocks import BlockRegistry
from .ratelimit.limiter import RateLimiterRegistry
from .resources import ResourceDirectory
from .schemas import GovernanceStatus
from .sweeper import PeriodicTask
from .telemetry.audit import (
    AuditDispatcher,
    AuditSink,
    DatabaseAuditSink,
    InMemoryAuditSink,
    LoggingAuditSink,
    WebhookAuditSink,
)
from .telemetry.events import SecurityEventLogger

logger = logging.getLogger("governor.context")


def build_audit_sink(settings: Settings) -> AuditSink:
    if settings.audit_sink == "memory":
        return InMemoryAuditSink()
    if settings.audit_sink == "log":
        return LoggingAuditSink()
    if settings.audit_sink == "webhook":
        return WebhookAuditSink(settings.audit_webhook_url)
    database = Database(settings.database_url, echo=settings.log_sql)
    return DatabaseAuditSink(database)


class GovernanceContext:
    def __init__(
        self,
        settings: Settings,
        cache: CacheManager,
        blocks: BlockRegistry,
        limiters: RateLimiterRegistry,
        abuse: AbuseEngine,
        gate: AccessControlGate,
        audit: AuditDispatcher,
        events: SecurityEventLogger,
        bus: EventBus,
        clock: Clock = now_ms,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.blocks = blocks
        self.limiters = limiters
        self.abuse = abuse
        self.gate = gate
        self.audit = audit
        self.events = events
        self.bus = bus
        self.clock = clock

        self._sweeps = [
            PeriodicTask("cache-sweep", settings.cache_sweep_interval_s, self.sweep_cache),
            PeriodicTask("security-sweep", settings.security_sweep_interval_s, self.sweep_security),
        ]
        self._started = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        sink: Optional[AuditSink] = None,
        directory: Optional[ResourceDirectory] = None,
        classifier: Optional[UserAgentClassifier] = None,
        permissions: Optional[PermissionTable] = None,
        clock: Clock = now_ms,
        rng: Optional[random.Random] = None,
    ) -> "GovernanceContext":
        """Build every component from settings.

        Raises ConfigurationError for a missing limiter class or an invalid
        permission table, before any thread is started.
        """
        permissions = permissions or load_permission_table(settings.permissions_path)

        bus = EventBus()
        audit = AuditDispatcher(sink or build_audit_sink(settings), max_queue=settings.audit_queue_size)
        events = SecurityEventLogger(audit, bus)

        cache = CacheManager(
            TTLCacheStore(
                max_size=settings.cache_max_size,
                default_ttl_ms=settings.cache_default_ttl_ms,
                eviction_fraction=settings.cache_eviction_fraction,
                clock=clock,
            )
        )
        blocks = BlockRegistry(
            events,
            block_duration_ms=settings.block_duration_ms,
            suspicion_threshold=settings.suspicion_threshold,
            backoff_factor=settings.block_backoff_factor,
            max_block_duration_ms=settings.max_block_duration_ms,
            decay_probability=settings.suspicion_decay_probability,
            history_retention_ms=settings.block_history_retention_ms,
            clock=clock,
            rng=rng,
        )
        limiters = RateLimiterRegistry(
            settings.rate_limits,
            blocks,
            events,
            window_retention_ms=settings.window_retention_ms,
            clock=clock,
        )
        abuse = AbuseEngine(
            limiters,
            blocks,
            events,
            classifier=classifier or SubstringUserAgentClassifier(settings.legitimate_bots),
            directory=directory,
            ddos_window_ms=settings.ddos_window_ms,
            ddos_request_threshold=settings.ddos_request_threshold,
            attack_block_duration_ms=settings.attack_block_duration_ms,
            access_risk_window_ms=settings.access_risk_window_ms,
            access_risk_max_attempts=settings.access_risk_max_attempts,
            clock=clock,
        )
        gate = AccessControlGate(permissions, abuse, events, directory=directory)

        return cls(
            settings, cache, blocks, limiters, abuse, gate, audit, events, bus, clock=clock,
        )

    # ── Sweeps ────────────────────────────────────────────────────────

    def sweep_cache(self) -> int:
        return self.cache.clean_expired()

    def sweep_security(self) -> int:
        removed = self.limiters.cleanup()
        removed += self.blocks.prune()
        removed += self.abuse.prune()
        return removed

    # ── Lifecycle ─────────────────────────────────────────────────────

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> None:
        if self._started:
            return
        self.audit.start()
        for task in self._sweeps:
            task.start()
        self._started = True
        logger.info("Governance context started (limiters: %s)", ", ".join(self.limiters.names))

    def shutdown(self) -> None:
        for task in self._sweeps:
            task.stop()
        self.audit.stop()
        close = getattr(self.audit.sink, "close", None)
        if callable(close):
            close()
        self._started = False
        logger.info("Governance context stopped")

    def __enter__(self) -> "GovernanceContext":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    # ── Introspection ─────────────────────────────────────────────────

    def status(self) -> GovernanceStatus:
        block_stats = self.blocks.stats()
        return GovernanceStatus(
            cache=self.cache.stats(),
            active_windows=self.limiters.stats(),
            blocked_identifiers=block_stats["blocked_identifiers"],
            suspicious_identifiers=block_stats["suspicious_identifiers"],
            audit_pending=self.audit.pending,
        )
