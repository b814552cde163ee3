from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Shared enums
# ---------------------------------------------------------------------------

class Action(str, Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    ADMIN = "admin"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ---------------------------------------------------------------------------
# Caller-supplied identity
# ---------------------------------------------------------------------------

class Actor(BaseModel):
    """Already-resolved identity of the caller. Role is kept as a plain string
    so that unknown roles reach the gate and are denied there."""

    id: str = Field(..., min_length=1)
    role: str
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

class CacheStats(BaseModel):
    size: int
    max_size: int
    total_hits: int
    expired_count: int
    hit_rate: float = Field(..., ge=0, le=1)


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

class RateLimitResult(BaseModel):
    """Outcome of a single rate-limit check."""

    allowed: bool
    remaining: int = Field(..., ge=0)
    reset_at_ms: int = Field(..., description="Epoch ms when the window (or block) ends.")
    limit: int
    total_hits: int = 0
    blocked: bool = Field(default=False, description="True when denied by an identifier block.")

    def retry_after_seconds(self, now_ms: int) -> int:
        """Seconds the caller should wait, suitable for a Retry-After header."""
        return max(0, math.ceil((self.reset_at_ms - now_ms) / 1000))


# ---------------------------------------------------------------------------
# Abuse heuristics
# ---------------------------------------------------------------------------

class AttackAssessment(BaseModel):
    is_attack: bool
    signals: List[str] = Field(default_factory=list)
    recent_requests: int = 0


class RiskAssessment(BaseModel):
    level: RiskLevel
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Access control
# ---------------------------------------------------------------------------

class AccessDecision(BaseModel):
    """Gate verdict. ``reason`` is meant for logs and audit; callers decide
    how much of it to expose."""

    actor_id: str
    resource_type: str
    resource_id: str
    action: Action
    granted: bool
    reason: Optional[str] = None
    risk_level: RiskLevel = RiskLevel.LOW


class DataAccessResult(BaseModel):
    allowed: bool
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

class AuditLogEntry(BaseModel):
    actor_id: str
    event_type: str
    resource_type: str
    resource_id: str
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Admin API
# ---------------------------------------------------------------------------

class GovernanceStatus(BaseModel):
    cache: CacheStats
    active_windows: Dict[str, int]
    blocked_identifiers: int
    suspicious_identifiers: int
    audit_pending: int


class InvalidateRequest(BaseModel):
    pattern: str = Field(..., min_length=1)


class InvalidateResponse(BaseModel):
    pattern: str
    invalidated: int


class UnblockResponse(BaseModel):
    identifier: str
    unblocked: bool
