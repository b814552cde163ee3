"""In-process TTL cache: store, compute-if-absent manager and key builders."""

from .keys import CacheKeys, CacheTTL, hash_object
from .manager import CacheManager
from .store import CacheEntry, TTLCacheStore

__all__ = [
    "CacheEntry",
    "CacheKeys",
    "CacheManager",
    "CacheTTL",
    "TTLCacheStore",
    "hash_object",
]
