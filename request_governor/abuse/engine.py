from __future__ import annotations

import ipaddress
import logging
from collections import deque
from threading import Lock
from typing import Deque, Dict, Optional, Union

from ..clock import Clock, now_ms
from ..ratelimit.blocks import BlockRegistry
from ..ratelimit.limiter import RateLimiterRegistry
from ..resources import ResourceDirectory
from ..schemas import Action, Actor, AttackAssessment, RiskAssessment, RiskLevel
from ..telemetry.events import SecurityEventLogger
from .user_agent import SubstringUserAgentClassifier, UserAgentClassifier

logger = logging.getLogger("governor.abuse")

# Resource types only admins are expected to touch
SENSITIVE_RESOURCES = {"admin", "audit_logs", "system"}

SIGNAL_HIGH_VOLUME = "high_request_volume"

# Reports younger than this are suspicious delete targets
RECENT_REPORT_AGE_MS = 24 * 60 * 60 * 1000

# Shorter user agents count against an origin's risk score
MIN_TRUSTED_USER_AGENT_LENGTH = 20


def _extract_address(identifier: str) -> Optional[Union[ipaddress.IPv4Address, ipaddress.IPv6Address]]:
    """Parse ``ip:<addr>`` or a bare address; None for non-IP identifiers."""
    raw = identifier[3:] if identifier.startswith("ip:") else identifier
    # X-Forwarded-For style lists: the first hop is the client
    raw = raw.split(",")[0].strip()
    try:
        return ipaddress.ip_address(raw)
    except ValueError:
        return None


class AccessAttemptTracker:
    """Timestamps of recent access-control checks, per actor."""

    def __init__(self, clock: Clock = now_ms) -> None:
        self._clock = clock
        self._lock = Lock()
        self._attempts: Dict[str, Deque[int]] = {}

    def record(self, actor_id: str) -> None:
        now = self._clock()
        with self._lock:
            self._attempts.setdefault(actor_id, deque()).append(now)

    def count_since(self, actor_id: str, since_ms: int) -> int:
        with self._lock:
            attempts = self._attempts.get(actor_id)
            if not attempts:
                return 0
            return sum(1 for ts in attempts if ts >= since_ms)

    def prune(self, before_ms: int) -> int:
        removed = 0
        with self._lock:
            for actor_id, attempts in list(self._attempts.items()):
                while attempts and attempts[0] < before_ms:
                    attempts.popleft()
                    removed += 1
                if not attempts:
                    del self._attempts[actor_id]
        return removed


class AbuseEngine:
    """
    Heuristic abuse / DDoS detection and access-risk scoring.

    Attack detection combines the trailing request volume across all
    limiter classes with the user-agent classifier's signals. Two or more
    signals at once is treated as an attack and the identifier is blocked
    for ``attack_block_duration_ms`` on top of the rate limiter's own
    escalation.
    """

    def __init__(
        self,
        limiters: RateLimiterRegistry,
        blocks: BlockRegistry,
        events: SecurityEventLogger,
        classifier: Optional[UserAgentClassifier] = None,
        directory: Optional[ResourceDirectory] = None,
        ddos_window_ms: int = 5 * 60 * 1000,
        ddos_request_threshold: int = 500,
        attack_block_duration_ms: int = 60 * 60 * 1000,
        access_risk_window_ms: int = 5 * 60 * 1000,
        access_risk_max_attempts: int = 50,
        clock: Clock = now_ms,
    ) -> None:
        self.limiters = limiters
        self.blocks = blocks
        self.events = events
        self.classifier = classifier or SubstringUserAgentClassifier()
        self.directory = directory
        self.ddos_window_ms = ddos_window_ms
        self.ddos_request_threshold = ddos_request_threshold
        self.attack_block_duration_ms = attack_block_duration_ms
        self.access_risk_window_ms = access_risk_window_ms
        self.access_risk_max_attempts = access_risk_max_attempts
        self._clock = clock
        self.attempts = AccessAttemptTracker(clock)

    # ------------------------------------------------------------------
    # Attack detection
    # ------------------------------------------------------------------

    def detect_attack(self, identifier: str, user_agent: Optional[str] = None) -> AttackAssessment:
        since = self._clock() - self.ddos_window_ms
        recent = self.limiters.recent_request_volume(identifier, since)

        signals = []
        if recent > self.ddos_request_threshold:
            signals.append(SIGNAL_HIGH_VOLUME)
        signals.extend(self.classifier.signals(user_agent))

        assessment = AttackAssessment(
            is_attack=len(signals) >= 2, signals=signals, recent_requests=recent,
        )
        if assessment.is_attack:
            self.events.log_security_event(
                "DDOS_DETECTED",
                identifier,
                {"recent_requests": recent, "user_agent": user_agent, "signals": signals},
                severity="critical",
            )
            self.blocks.block(
                identifier,
                self.attack_block_duration_ms,
                reason="Attack pattern detected",
                severity="critical",
                details={"signals": signals},
            )
        return assessment

    # ------------------------------------------------------------------
    # Origin risk
    # ------------------------------------------------------------------

    def ip_risk_score(self, identifier: str, user_agent: Optional[str] = None) -> int:
        score = 0

        address = _extract_address(identifier)
        if address is not None and (address.is_private or address.is_loopback):
            score += 1  # internal range: possibly a proxy or VPN hop

        if not user_agent or len(user_agent) < MIN_TRUSTED_USER_AGENT_LENGTH:
            score += 2

        if self.blocks.has_block_history(identifier):
            score += 3

        score += min(self.blocks.suspicion(identifier), 3)
        return score

    def assess_ip_risk(self, identifier: str, user_agent: Optional[str] = None) -> RiskLevel:
        score = self.ip_risk_score(identifier, user_agent)
        if score >= 6:
            return RiskLevel.HIGH
        if score >= 3:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    # ------------------------------------------------------------------
    # Access risk (consumed by the access-control gate)
    # ------------------------------------------------------------------

    def record_access(self, actor_id: str) -> None:
        self.attempts.record(actor_id)

    def assess_access_risk(
        self,
        actor: Actor,
        resource_type: str,
        resource_id: str,
        action: Action,
    ) -> RiskAssessment:
        try:
            since = self._clock() - self.access_risk_window_ms
            if self.attempts.count_since(actor.id, since) > self.access_risk_max_attempts:
                return RiskAssessment(level=RiskLevel.HIGH, reason="Too many recent access attempts")

            if resource_type in SENSITIVE_RESOURCES and actor.role != "admin":
                return RiskAssessment(level=RiskLevel.HIGH, reason="Non-admin accessing sensitive resource")

            ip_risk = RiskLevel.LOW
            if actor.ip:
                ip_risk = self.assess_ip_risk(f"ip:{actor.ip}", actor.user_agent)
                if ip_risk is RiskLevel.HIGH:
                    return RiskAssessment(level=RiskLevel.HIGH, reason="High-risk network origin")

            if action is Action.DELETE and resource_type == "reports" and self.directory is not None:
                created = self.directory.created_at_ms(resource_type, resource_id)
                if created is not None and self._clock() - created < RECENT_REPORT_AGE_MS:
                    return RiskAssessment(level=RiskLevel.MEDIUM, reason="Attempting to delete recent report")

            if ip_risk is RiskLevel.MEDIUM:
                return RiskAssessment(level=RiskLevel.MEDIUM, reason="Elevated-risk network origin")

            return RiskAssessment(level=RiskLevel.LOW)
        except Exception:
            logger.exception("Risk assessment failed for actor %s", actor.id)
            return RiskAssessment(level=RiskLevel.MEDIUM, reason="Risk assessment system error")

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def prune(self) -> int:
        """Forget access attempts older than the risk window."""
        return self.attempts.prune(self._clock() - self.access_risk_window_ms)
