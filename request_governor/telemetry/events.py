from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..event_bus import EventBus, SecurityEvent
from ..schemas import AuditLogEntry
from .audit import AuditDispatcher

logger = logging.getLogger("governor.security")

_LOG_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "high": logging.WARNING,
    "critical": logging.CRITICAL,
}


class SecurityEventLogger:
    """Single entry point for audit writes and security events.

    A security event is written to the audit trail as
    ``SECURITY_<EVENT>`` against resource type ``security``, logged locally,
    and broadcast on the event bus.
    """

    def __init__(self, audit: AuditDispatcher, bus: Optional[EventBus] = None) -> None:
        self.audit = audit
        self.bus = bus

    def log_action(
        self,
        actor_id: str,
        event_type: str,
        resource_type: str,
        resource_id: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.audit.emit(
            AuditLogEntry(
                actor_id=actor_id,
                event_type=event_type,
                resource_type=resource_type,
                resource_id=resource_id,
                details=details or {},
            )
        )

    def log_security_event(
        self,
        event: str,
        identifier: str,
        details: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
        severity: str = "warning",
    ) -> None:
        details = details or {}
        self.log_action(
            actor_id or "system",
            f"SECURITY_{event}",
            "security",
            identifier,
            {
                "event": event,
                "identifier": identifier,
                "severity": severity,
                "details": details,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )
        logger.log(
            _LOG_LEVELS.get(severity, logging.WARNING),
            "Security event: %s (identifier: %s, actor: %s) %s",
            event, identifier, actor_id or "system", details,
        )
        if self.bus is not None:
            self.bus.publish(
                SecurityEvent(
                    event=event,
                    identifier=identifier,
                    severity=severity,
                    details=details,
                    actor_id=actor_id,
                )
            )
