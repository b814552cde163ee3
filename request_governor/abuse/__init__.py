"""Abuse / DDoS heuristics and access-risk scoring."""

from .engine import SENSITIVE_RESOURCES, AbuseEngine, AccessAttemptTracker
from .user_agent import LEGITIMATE_BOTS, SubstringUserAgentClassifier, UserAgentClassifier

__all__ = [
    "LEGITIMATE_BOTS",
    "SENSITIVE_RESOURCES",
    "AbuseEngine",
    "AccessAttemptTracker",
    "SubstringUserAgentClassifier",
    "UserAgentClassifier",
]
