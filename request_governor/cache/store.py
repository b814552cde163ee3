"""
cache/store.py — In-process TTL cache with capacity-bounded eviction
=====================================================================
Entries carry an absolute expiry (epoch ms). Expired entries are dropped
lazily on ``get`` and actively by ``clean_expired()``, which the
governance context runs on a timer.

When a new key is inserted into a full store, the ~10% of entries closest
to expiry are evicted first. With short TTLs this approximates LRU without
tracking access recency.
"""
from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, List, Optional

from ..clock import Clock, now_ms
from ..schemas import CacheStats

logger = logging.getLogger("governor.cache")

DEFAULT_MAX_SIZE = 1000
DEFAULT_TTL_MS = 5 * 60 * 1000


@dataclass
class CacheEntry:
    value: Any
    expires_at_ms: int
    hit_count: int = 0


class TTLCacheStore:
    """Thread-safe key → value store with per-entry TTL."""

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        default_ttl_ms: int = DEFAULT_TTL_MS,
        eviction_fraction: float = 0.1,
        clock: Clock = now_ms,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self.default_ttl_ms = default_ttl_ms
        self.eviction_fraction = eviction_fraction
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = Lock()
        # Lifetime lookup counters for hit_rate
        self._hits = 0
        self._misses = 0

    # ── Lookups ───────────────────────────────────────────────────────

    def get(self, key: str, default: Any = None) -> Any:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return default
            if now >= entry.expires_at_ms:
                del self._entries[key]
                self._misses += 1
                logger.debug("Cache item expired: %s", key)
                return default
            entry.hit_count += 1
            self._hits += 1
            logger.debug("Cache HIT: %s (hits: %d)", key, entry.hit_count)
            return entry.value

    def __contains__(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and now < entry.expires_at_ms

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    # ── Mutations ─────────────────────────────────────────────────────

    def set(self, key: str, value: Any, ttl_ms: Optional[int] = None) -> None:
        ttl = ttl_ms if ttl_ms is not None else self.default_ttl_ms
        if ttl <= 0:
            raise ValueError("ttl_ms must be positive")
        expires_at = self._clock() + ttl
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_size:
                self._evict_soonest_expiring()
            self._entries[key] = CacheEntry(value=value, expires_at_ms=expires_at)
        logger.debug("Cache SET: %s (TTL: %sms)", key, ttl)

    def delete(self, key: str) -> bool:
        with self._lock:
            deleted = self._entries.pop(key, None) is not None
        if deleted:
            logger.debug("Cache item deleted: %s", key)
        return deleted

    def delete_matching(self, substring: str) -> int:
        """Remove every key containing ``substring``. Returns the count."""
        with self._lock:
            doomed = [k for k in self._entries if substring in k]
            for k in doomed:
                del self._entries[k]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            previous = len(self._entries)
            self._entries.clear()
        logger.info("Cache cleared (previous size: %d)", previous)

    def clean_expired(self) -> int:
        """Active sweep: drop every entry whose expiry has passed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if now >= e.expires_at_ms]
            for k in expired:
                del self._entries[k]
        if expired:
            logger.debug("Expired cache items cleaned: %d", len(expired))
        return len(expired)

    def stats(self) -> CacheStats:
        now = self._clock()
        with self._lock:
            entries = list(self._entries.values())
            lookups = self._hits + self._misses
            hit_rate = self._hits / lookups if lookups else 0.0
        return CacheStats(
            size=len(entries),
            max_size=self.max_size,
            total_hits=sum(e.hit_count for e in entries),
            expired_count=sum(1 for e in entries if now >= e.expires_at_ms),
            hit_rate=hit_rate,
        )

    # ── Internals ─────────────────────────────────────────────────────

    def _evict_soonest_expiring(self) -> None:
        # Caller holds self._lock
        batch = max(1, int(len(self._entries) * self.eviction_fraction))
        victims = heapq.nsmallest(
            batch, self._entries.items(), key=lambda kv: kv[1].expires_at_ms
        )
        for key, _ in victims:
            del self._entries[key]
        logger.debug("Cache eviction completed: %d items removed", len(victims))
