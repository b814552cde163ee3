from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .schemas import AccessDecision


class GovernanceError(Exception):
    """Base class for errors raised by the governance layer."""


class ConfigurationError(GovernanceError):
    """Invalid limiter, permission or settings configuration.

    Raised while building components at startup, never per request.
    """


class AccessDeniedError(GovernanceError):
    """Raised by ``require_permission`` helpers when the gate denies access."""

    def __init__(self, decision: "AccessDecision") -> None:
        super().__init__(f"Access denied: {decision.reason}")
        self.decision = decision
