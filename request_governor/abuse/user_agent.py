from __future__ import annotations

from typing import Iterable, List, Optional, Protocol

# Crawlers whose user agents contain "bot" but are expected traffic
LEGITIMATE_BOTS = [
    "Googlebot",
    "Bingbot",
    "Slackbot",
    "TwitterBot",
    "facebookexternalhit",
    "LinkedInBot",
]

SIGNAL_MISSING_USER_AGENT = "missing_or_short_user_agent"
SIGNAL_SUSPICIOUS_BOT = "suspicious_bot"


class UserAgentClassifier(Protocol):
    """Pluggable user-agent heuristics for the abuse engine.

    Returns the names of the signals the user agent trips; an empty list
    means the user agent looks ordinary.
    """

    def signals(self, user_agent: Optional[str]) -> List[str]:
        ...


class SubstringUserAgentClassifier:
    """Substring checks: missing/short user agent and unknown "bot"."""

    def __init__(
        self,
        legitimate_bots: Iterable[str] = LEGITIMATE_BOTS,
        min_length: int = 10,
    ) -> None:
        self.legitimate_bots = [b.lower() for b in legitimate_bots]
        self.min_length = min_length

    def is_legitimate_bot(self, user_agent: str) -> bool:
        ua = user_agent.lower()
        return any(bot in ua for bot in self.legitimate_bots)

    def signals(self, user_agent: Optional[str]) -> List[str]:
        # Checked independently: a short unknown bot trips both
        found = []
        if not user_agent or len(user_agent) < self.min_length:
            found.append(SIGNAL_MISSING_USER_AGENT)
        if user_agent and "bot" in user_agent.lower() and not self.is_legitimate_bot(user_agent):
            found.append(SIGNAL_SUSPICIOUS_BOT)
        return found
