"""
cache/manager.py — compute-if-absent wrapper around TTLCacheStore
==================================================================
``get_or_set`` memoizes expensive calls (AI inference, file lookups,
database reads). Two rules:

  * a failing compute function propagates unchanged and nothing is cached;
  * a failing store never fails the caller; the manager logs and
    computes directly.

Concurrent callers asking for the same missing key are single-flighted
through a per-key lock, so the compute function runs about once.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import asynccontextmanager, contextmanager
from typing import Any, Awaitable, Callable, Dict, Iterator, AsyncIterator, Tuple, TypeVar

from ..schemas import CacheStats
from .keys import CacheTTL
from .store import TTLCacheStore

logger = logging.getLogger("governor.cache")

T = TypeVar("T")

_MISSING = object()


class _KeyedLocks:
    """Reference-counted per-key locks; entries vanish when unused."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, Tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._guard:
                lock, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)


class _AsyncKeyedLocks:
    """asyncio flavour of _KeyedLocks. Only touched from the event loop."""

    def __init__(self) -> None:
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[key]
            if users <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)


class CacheManager:
    def __init__(self, store: TTLCacheStore) -> None:
        self.store = store
        self._locks = _KeyedLocks()
        self._async_locks = _AsyncKeyedLocks()

    # ── Store access that never raises ────────────────────────────────

    def _safe_get(self, key: str) -> Any:
        try:
            return self.store.get(key, _MISSING)
        except Exception:
            logger.exception("Cache get error for key %s; bypassing cache", key)
            raise _StoreFault from None

    def _safe_set(self, key: str, value: Any, ttl_ms: int) -> None:
        try:
            self.store.set(key, value, ttl_ms)
        except Exception:
            logger.exception("Cache set error for key %s; value not cached", key)

    # ── compute-if-absent ─────────────────────────────────────────────

    def get_or_set(
        self,
        key: str,
        compute: Callable[[], T],
        ttl_ms: int = CacheTTL.MEDIUM,
    ) -> T:
        try:
            cached = self._safe_get(key)
        except _StoreFault:
            return compute()
        if cached is not _MISSING:
            return cached

        with self._locks.hold(key):
            # Another caller may have filled the key while we waited
            try:
                cached = self._safe_get(key)
            except _StoreFault:
                return compute()
            if cached is not _MISSING:
                return cached

            logger.debug("Cache MISS, computing fresh value: %s", key)
            value = compute()
            self._safe_set(key, value, ttl_ms)
            return value

    async def aget_or_set(
        self,
        key: str,
        compute: Callable[[], Awaitable[T]],
        ttl_ms: int = CacheTTL.MEDIUM,
    ) -> T:
        """Coroutine variant of ``get_or_set``."""
        try:
            cached = self._safe_get(key)
        except _StoreFault:
            return await compute()
        if cached is not _MISSING:
            return cached

        async with self._async_locks.hold(key):
            try:
                cached = self._safe_get(key)
            except _StoreFault:
                return await compute()
            if cached is not _MISSING:
                return cached

            logger.debug("Cache MISS, computing fresh value: %s", key)
            value = await compute()
            self._safe_set(key, value, ttl_ms)
            return value

    # ── Invalidation ──────────────────────────────────────────────────

    def invalidate_pattern(self, pattern: str) -> int:
        """Remove every key containing ``pattern`` (plain substring match)."""
        invalidated = self.store.delete_matching(pattern)
        if invalidated:
            logger.debug("Cache pattern invalidated: %r (%d keys)", pattern, invalidated)
        return invalidated

    def invalidate_user_cache(self, user_id: str) -> int:
        return self.invalidate_pattern(f"user:{user_id}:")

    def invalidate_report_cache(self, report_id: str) -> int:
        return self.invalidate_pattern(f"report:{report_id}:")

    def invalidate_system_cache(self) -> int:
        return self.invalidate_pattern("system:") + self.invalidate_pattern("reports:pending")

    # ── Passthroughs ──────────────────────────────────────────────────

    def stats(self) -> CacheStats:
        return self.store.stats()

    def clean_expired(self) -> int:
        return self.store.clean_expired()

    def clear_all(self) -> None:
        self.store.clear()


class _StoreFault(Exception):
    """Internal marker: the store failed and the cache must be bypassed."""
