"""
ratelimit/blocks.py — Identifier blocks and suspicion counters
===============================================================
Shared by every limiter class so a block applies regardless of endpoint.

Escalation path:
  * each "limit exceeded" violation bumps the identifier's suspicion count;
  * once the count reaches the threshold the identifier is blocked;
  * repeat blocks last longer (duration × backoff factor per prior block,
    capped), and the abuse engine may impose its own long blocks.

The security sweep expires blocks, probabilistically decays suspicion
counts and forgets block history after the retention period.
"""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, Optional

from ..clock import Clock, now_ms
from ..telemetry.events import SecurityEventLogger

logger = logging.getLogger("governor.ratelimit")


@dataclass
class BlockEntry:
    identifier: str
    blocked_until_ms: int
    reason: str


@dataclass
class _BlockHistory:
    count: int
    last_blocked_ms: int


class BlockRegistry:
    def __init__(
        self,
        events: SecurityEventLogger,
        block_duration_ms: int = 15 * 60 * 1000,
        suspicion_threshold: int = 3,
        backoff_factor: float = 2.0,
        max_block_duration_ms: int = 24 * 60 * 60 * 1000,
        decay_probability: float = 0.1,
        history_retention_ms: int = 24 * 60 * 60 * 1000,
        clock: Clock = now_ms,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.events = events
        self.block_duration_ms = block_duration_ms
        self.suspicion_threshold = suspicion_threshold
        self.backoff_factor = backoff_factor
        self.max_block_duration_ms = max_block_duration_ms
        self.decay_probability = decay_probability
        self.history_retention_ms = history_retention_ms
        self._clock = clock
        self._rng = rng or random.Random()

        self._lock = Lock()
        self._blocks: Dict[str, BlockEntry] = {}
        self._suspicion: Dict[str, int] = {}
        self._history: Dict[str, _BlockHistory] = {}

    # ── Queries ───────────────────────────────────────────────────────

    def blocked_until(self, identifier: str) -> Optional[int]:
        """Epoch ms the active block ends, or None when not blocked."""
        now = self._clock()
        with self._lock:
            entry = self._blocks.get(identifier)
            if entry is None:
                return None
            if now >= entry.blocked_until_ms:
                del self._blocks[identifier]
                return None
            return entry.blocked_until_ms

    def is_blocked(self, identifier: str) -> bool:
        return self.blocked_until(identifier) is not None

    def suspicion(self, identifier: str) -> int:
        with self._lock:
            return self._suspicion.get(identifier, 0)

    def block_count(self, identifier: str) -> int:
        with self._lock:
            history = self._history.get(identifier)
            return history.count if history else 0

    def has_block_history(self, identifier: str) -> bool:
        return self.block_count(identifier) > 0

    # ── Mutations ─────────────────────────────────────────────────────

    def block(
        self,
        identifier: str,
        duration_ms: int,
        reason: str,
        severity: str = "high",
        details: Optional[Dict[str, Any]] = None,
    ) -> BlockEntry:
        """Block ``identifier`` for ``duration_ms``. An existing longer
        block is kept. The block is logged once, when it is created or
        extended."""
        now = self._clock()
        until = now + duration_ms
        with self._lock:
            current = self._blocks.get(identifier)
            if current is not None and current.blocked_until_ms > now and current.blocked_until_ms >= until:
                return current
            entry = BlockEntry(identifier=identifier, blocked_until_ms=until, reason=reason)
            self._blocks[identifier] = entry
            history = self._history.get(identifier)
            if history is None:
                self._history[identifier] = _BlockHistory(count=1, last_blocked_ms=now)
            else:
                history.count += 1
                history.last_blocked_ms = now

        self.events.log_security_event(
            "IDENTIFIER_BLOCKED",
            identifier,
            {
                "reason": reason,
                "blocked_until_ms": until,
                "block_duration_ms": duration_ms,
                **(details or {}),
            },
            severity=severity,
        )
        return entry

    def record_violation(self, identifier: str, details: Optional[Dict[str, Any]] = None) -> int:
        """Count one rate-limit violation; block once the threshold is reached.

        Returns the updated suspicion count.
        """
        with self._lock:
            count = self._suspicion.get(identifier, 0) + 1
            self._suspicion[identifier] = count
            history = self._history.get(identifier)
            prior_blocks = history.count if history else 0

        if count >= self.suspicion_threshold and not self.is_blocked(identifier):
            duration = min(
                self.max_block_duration_ms,
                int(self.block_duration_ms * self.backoff_factor ** prior_blocks),
            )
            self.block(
                identifier,
                duration,
                reason="Repeated rate limit violations",
                details={"suspicion_count": count, "prior_blocks": prior_blocks, **(details or {})},
            )
        return count

    def unblock(self, identifier: str) -> bool:
        """Lift an active block and clear the suspicion count (admin action)."""
        with self._lock:
            removed = self._blocks.pop(identifier, None) is not None
            self._suspicion.pop(identifier, None)
        if removed:
            logger.info("Identifier unblocked: %s", identifier)
        return removed

    # ── Sweep ─────────────────────────────────────────────────────────

    def prune(self) -> int:
        """Expire blocks, decay suspicion, forget stale history.

        Returns the number of expired blocks removed.
        """
        now = self._clock()
        with self._lock:
            expired = [i for i, e in self._blocks.items() if now >= e.blocked_until_ms]
            for identifier in expired:
                del self._blocks[identifier]

            for identifier, count in list(self._suspicion.items()):
                if count > 0 and self._rng.random() < self.decay_probability:
                    count -= 1
                if count <= 0:
                    del self._suspicion[identifier]
                else:
                    self._suspicion[identifier] = count

            stale = [
                i for i, h in self._history.items()
                if now - h.last_blocked_ms >= self.history_retention_ms and i not in self._blocks
            ]
            for identifier in stale:
                del self._history[identifier]

        if expired:
            logger.debug("Expired blocks removed: %d", len(expired))
        return len(expired)

    def stats(self) -> Dict[str, int]:
        now = self._clock()
        with self._lock:
            return {
                "blocked_identifiers": sum(
                    1 for e in self._blocks.values() if now < e.blocked_until_ms
                ),
                "suspicious_identifiers": len(self._suspicion),
            }
