"""
ratelimit/limiter.py — Fixed-window request limits per endpoint class
======================================================================
Each limiter class (api, auth, diagnosis, upload, admin) keeps its own
counters keyed by ``(identifier, endpoint)``; classes never share counts
for the same identifier. Blocks are shared through BlockRegistry, so an
identifier blocked on one class is denied on every class.

Window semantics are a fixed window: the counter resets wholesale at
``window_reset_at_ms``. A burst straddling the boundary can therefore see
up to twice the configured rate; per-request timestamps are not stored.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from ..clock import Clock, now_ms
from ..config import RateLimitConfig
from ..errors import ConfigurationError
from ..schemas import RateLimitResult
from ..telemetry.events import SecurityEventLogger
from .blocks import BlockRegistry

logger = logging.getLogger("governor.ratelimit")

# Endpoint classes every deployment must configure
REQUIRED_LIMITER_CLASSES = ("api", "auth", "diagnosis", "upload", "admin")


@dataclass
class RateWindowRecord:
    count: int
    window_reset_at_ms: int
    # Set on the first denial so the "limit exceeded" event fires once per window
    limit_logged: bool = False


class FixedWindowRateLimiter:
    def __init__(
        self,
        name: str,
        config: RateLimitConfig,
        blocks: BlockRegistry,
        events: SecurityEventLogger,
        window_retention_ms: int = 60 * 60 * 1000,
        clock: Clock = now_ms,
    ) -> None:
        self.name = name
        self.config = config
        self.blocks = blocks
        self.events = events
        self.window_retention_ms = window_retention_ms
        self._clock = clock
        self._lock = Lock()
        self._windows: Dict[Tuple[str, str], RateWindowRecord] = {}

    @property
    def max_requests(self) -> int:
        return self.config.max_requests

    def check(
        self,
        identifier: str,
        endpoint: Optional[str] = None,
        user_agent: Optional[str] = None,
        max_requests: Optional[int] = None,
    ) -> RateLimitResult:
        """Count one request and decide whether it may proceed.

        ``max_requests`` overrides the class limit for this identifier, e.g.
        the quota attached to an API key. The window length stays the
        class's.
        """
        endpoint = endpoint or self.name
        if max_requests is not None and max_requests <= 0:
            raise ValueError(f"max_requests must be positive, got {max_requests}")
        limit = max_requests if max_requests is not None else self.config.max_requests

        blocked_until = self.blocks.blocked_until(identifier)
        if blocked_until is not None:
            return RateLimitResult(
                allowed=False, remaining=0, reset_at_ms=blocked_until,
                limit=limit, blocked=True,
            )

        now = self._clock()
        first_denial = False
        key = (identifier, endpoint)
        with self._lock:
            record = self._windows.get(key)
            if record is None or now >= record.window_reset_at_ms:
                record = RateWindowRecord(count=1, window_reset_at_ms=now + self.config.window_ms)
                self._windows[key] = record
                result = RateLimitResult(
                    allowed=True, remaining=limit - 1,
                    reset_at_ms=record.window_reset_at_ms, limit=limit, total_hits=1,
                )
            elif record.count >= limit:
                if not record.limit_logged:
                    record.limit_logged = True
                    first_denial = True
                result = RateLimitResult(
                    allowed=False, remaining=0,
                    reset_at_ms=record.window_reset_at_ms, limit=limit, total_hits=record.count,
                )
            else:
                record.count += 1
                result = RateLimitResult(
                    allowed=True, remaining=limit - record.count,
                    reset_at_ms=record.window_reset_at_ms, limit=limit, total_hits=record.count,
                )

        if first_denial:
            details = {
                "limiter": self.name,
                "endpoint": endpoint,
                "max_requests": limit,
                "window_ms": self.config.window_ms,
                "user_agent": user_agent,
            }
            self.events.log_security_event(
                "RATE_LIMIT_EXCEEDED", identifier, details, severity=self.config.severity,
            )
            self.blocks.record_violation(identifier, {"limiter": self.name, "endpoint": endpoint})
        return result

    def peek(self, identifier: str, endpoint: Optional[str] = None) -> Optional[RateWindowRecord]:
        """Current window for the pair, without counting a request."""
        now = self._clock()
        with self._lock:
            record = self._windows.get((identifier, endpoint or self.name))
            if record is None or now >= record.window_reset_at_ms:
                return None
            return RateWindowRecord(record.count, record.window_reset_at_ms, record.limit_logged)

    def recent_request_count(self, identifier: str, since_ms: int) -> int:
        """Requests counted for ``identifier`` in windows still open after ``since_ms``."""
        with self._lock:
            return sum(
                r.count for (ident, _), r in self._windows.items()
                if ident == identifier and r.window_reset_at_ms > since_ms
            )

    def active_windows(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for r in self._windows.values() if now < r.window_reset_at_ms)

    def cleanup(self) -> int:
        """Drop windows that ended more than ``window_retention_ms`` ago.

        Recently ended windows are retained because the abuse engine reads
        trailing request volume from them.
        """
        cutoff = self._clock() - self.window_retention_ms
        with self._lock:
            stale = [k for k, r in self._windows.items() if r.window_reset_at_ms <= cutoff]
            for k in stale:
                del self._windows[k]
        return len(stale)


class RateLimiterRegistry:
    """The named limiter classes, sharing one BlockRegistry."""

    def __init__(
        self,
        configs: Mapping[str, RateLimitConfig],
        blocks: BlockRegistry,
        events: SecurityEventLogger,
        window_retention_ms: int = 60 * 60 * 1000,
        clock: Clock = now_ms,
        required: Iterable[str] = REQUIRED_LIMITER_CLASSES,
    ) -> None:
        missing = [name for name in required if name not in configs]
        if missing:
            raise ConfigurationError(
                f"Missing rate limiter configuration for endpoint class(es): {', '.join(missing)}"
            )
        self.blocks = blocks
        self._limiters: Dict[str, FixedWindowRateLimiter] = {
            name: FixedWindowRateLimiter(
                name, cfg, blocks, events, window_retention_ms=window_retention_ms, clock=clock,
            )
            for name, cfg in configs.items()
        }

    @property
    def names(self) -> List[str]:
        return list(self._limiters)

    def __getitem__(self, name: str) -> FixedWindowRateLimiter:
        try:
            return self._limiters[name]
        except KeyError:
            raise KeyError(f"Unknown rate limiter class {name!r}") from None

    def __contains__(self, name: str) -> bool:
        return name in self._limiters

    def check(
        self,
        limiter: str,
        identifier: str,
        endpoint: Optional[str] = None,
        user_agent: Optional[str] = None,
        max_requests: Optional[int] = None,
    ) -> RateLimitResult:
        return self[limiter].check(identifier, endpoint, user_agent, max_requests=max_requests)

    def recent_request_volume(self, identifier: str, since_ms: int) -> int:
        return sum(l.recent_request_count(identifier, since_ms) for l in self._limiters.values())

    def unblock(self, identifier: str) -> bool:
        return self.blocks.unblock(identifier)

    def cleanup(self) -> int:
        removed = sum(l.cleanup() for l in self._limiters.values())
        if removed:
            logger.debug("Rate limit windows pruned: %d", removed)
        return removed

    def stats(self) -> Dict[str, int]:
        return {name: l.active_windows() for name, l in self._limiters.items()}
