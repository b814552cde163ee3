"""Cache key builders and TTL constants. Single place for key format.

Keys are namespaced ``<scope>:<id>:...`` so that ``invalidate_pattern``
can target everything for one user or one report.
"""
from __future__ import annotations

import hashlib
import json
from typing import Any, Optional, Union


class CacheTTL:
    SHORT = 1 * 60 * 1000        # 1 minute
    MEDIUM = 5 * 60 * 1000       # 5 minutes
    LONG = 15 * 60 * 1000        # 15 minutes
    VERY_LONG = 60 * 60 * 1000   # 1 hour


def _normalize(obj: Any) -> Any:
    """Reduce ``obj`` to str-keyed dicts, lists and JSON scalars."""
    if isinstance(obj, dict):
        return {str(k): _normalize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_normalize(v) for v in obj]
    # Sets have no order; sort the members' encodings
    if isinstance(obj, (set, frozenset)):
        return sorted(_canonical(v) for v in obj)
    if isinstance(obj, bytes):
        return obj.hex()
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    return str(obj)


def _canonical(obj: Any) -> str:
    return json.dumps(_normalize(obj), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def hash_object(obj: Any) -> str:
    """Deterministic short hash of a JSON-like object.

    Object keys are sorted at every depth, so two dicts with the same
    content but different insertion order hash identically. Values JSON
    cannot encode (datetimes, UUIDs, sets...) are folded in via ``str``
    or, for sets, their sorted member encodings, so hashing a key input
    never fails.
    """
    encoded = _canonical(obj)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:16]


def _filters_part(filters: Union[None, str, dict]) -> str:
    if not filters:
        return "all"
    if isinstance(filters, str):
        return filters
    return hash_object(filters)


class CacheKeys:
    # User-specific
    @staticmethod
    def user_reports(user_id: str, page: int, filters: Optional[Union[str, dict]] = None) -> str:
        return f"user:{user_id}:reports:{page}:{_filters_part(filters)}"

    @staticmethod
    def user_stats(user_id: str) -> str:
        return f"user:{user_id}:stats"

    # Report-specific
    @staticmethod
    def report_details(report_id: str) -> str:
        return f"report:{report_id}:details"

    # System-wide
    @staticmethod
    def pending_reports(page: int) -> str:
        return f"reports:pending:{page}"

    @staticmethod
    def system_stats() -> str:
        return "system:stats"

    @staticmethod
    def system_metrics() -> str:
        return "system:metrics"

    # Search
    @staticmethod
    def report_search(query: str, user_id: str, page: int) -> str:
        return f"search:{user_id}:{hash_object(query)}:{page}"

    # AI inference results, keyed by the hashed symptom payload
    @staticmethod
    def ai_analysis(symptoms: Any) -> str:
        return f"ai:analysis:{hash_object(symptoms)}"
