from __future__ import annotations

from functools import lru_cache
from typing import Dict, List

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class RateLimitConfig(BaseModel):
    """Limits for one endpoint class (api, auth, diagnosis, upload, admin)."""

    window_ms: int = Field(..., gt=0)
    max_requests: int = Field(..., gt=0)
    # Severity attached to the "limit exceeded" security event for this class
    severity: str = Field(default="warning", pattern="^(info|warning|high|critical)$")


def _default_rate_limits() -> Dict[str, RateLimitConfig]:
    return {
        "api": RateLimitConfig(window_ms=60_000, max_requests=100),
        "auth": RateLimitConfig(window_ms=15 * 60_000, max_requests=5, severity="high"),
        "diagnosis": RateLimitConfig(window_ms=60_000, max_requests=10),
        "upload": RateLimitConfig(window_ms=60_000, max_requests=20),
        "admin": RateLimitConfig(window_ms=60_000, max_requests=50, severity="critical"),
    }


class Settings(BaseSettings):
    # Server
    environment: str = "development"
    log_level: str = "info"
    log_format: str = "json"

    # Audit persistence
    database_url: str = "sqlite:///./governor_audit.db"
    log_sql: bool = False
    audit_sink: str = "database"  # memory | database | webhook | log
    audit_webhook_url: str = ""
    audit_queue_size: int = Field(default=10_000, gt=0)

    # Cache
    cache_max_size: int = Field(default=1000, gt=0)
    cache_default_ttl_ms: int = Field(default=5 * 60_000, gt=0)
    cache_eviction_fraction: float = Field(default=0.1, gt=0, le=1)
    cache_sweep_interval_s: float = Field(default=300.0, gt=0)

    # Rate limiting
    rate_limits: Dict[str, RateLimitConfig] = Field(default_factory=_default_rate_limits)
    window_retention_ms: int = Field(default=60 * 60_000, ge=0)
    security_sweep_interval_s: float = Field(default=300.0, gt=0)

    # Blocking / escalation
    block_duration_ms: int = Field(default=15 * 60_000, gt=0)
    block_backoff_factor: float = Field(default=2.0, ge=1)
    max_block_duration_ms: int = Field(default=24 * 60 * 60_000, gt=0)
    suspicion_threshold: int = Field(default=3, gt=0)
    suspicion_decay_probability: float = Field(default=0.1, ge=0, le=1)
    block_history_retention_ms: int = Field(default=24 * 60 * 60_000, gt=0)

    # Abuse heuristics
    attack_block_duration_ms: int = Field(default=60 * 60_000, gt=0)
    ddos_window_ms: int = Field(default=5 * 60_000, gt=0)
    ddos_request_threshold: int = Field(default=500, gt=0)
    legitimate_bots: List[str] = [
        "Googlebot",
        "Bingbot",
        "Slackbot",
        "TwitterBot",
        "facebookexternalhit",
        "LinkedInBot",
    ]
    access_risk_window_ms: int = Field(default=5 * 60_000, gt=0)
    access_risk_max_attempts: int = Field(default=50, gt=0)

    # Access control
    permissions_path: str = ""  # empty = bundled access/base_permissions.yml

    # HTTP adapter
    security_headers_enabled: bool = True
    sensitive_path_prefixes: List[str] = ["/api/admin", "/api/diagnose"]

    @field_validator("audit_sink")
    @classmethod
    def validate_audit_sink(cls, v: str) -> str:
        if v not in ("memory", "database", "webhook", "log"):
            raise ValueError(f"Unknown audit sink {v!r}")
        return v

    @model_validator(mode="after")
    def validate_webhook_url(self) -> "Settings":
        if self.audit_sink == "webhook" and not self.audit_webhook_url:
            raise ValueError(
                "audit_sink=webhook requires REQGOV_AUDIT_WEBHOOK_URL to be set."
            )
        return self

    class Config:
        env_prefix = "REQGOV_"


@lru_cache
def get_settings() -> Settings:
    return Settings()
