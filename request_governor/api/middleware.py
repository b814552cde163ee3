"""
api/middleware.py — Request governance at the HTTP edge
========================================================
Raw ASGI middleware applied to every HTTP request:

  1. ``/api/*`` paths are counted against their limiter class
     (429 + Retry-After when over the limit or blocked)
  2. DDoS heuristics for the caller (403 on a detected attack)
  3. High-risk origins are refused on sensitive prefixes (403)

Security headers are added to every response, including the refusals.
The checks run in a worker thread, since an unstarted context delivers
audit entries inline.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Tuple

from starlette.requests import Request
from starlette.responses import JSONResponse

from ..context import GovernanceContext
from ..schemas import RateLimitResult, RiskLevel

logger = logging.getLogger("governor.api")

SECURITY_HEADERS: Dict[str, str] = {
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
    "Content-Security-Policy": "default-src 'self'; frame-ancestors 'none'; base-uri 'self'; form-action 'self'",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
}

# (path prefix, limiter class), first match wins
PATH_LIMITER_CLASSES: List[Tuple[str, str]] = [
    ("/api/auth", "auth"),
    ("/api/diagnose", "diagnosis"),
    ("/api/upload", "upload"),
    ("/api/admin", "admin"),
]


def classify_path(path: str) -> Optional[str]:
    """Limiter class for a request path, or None for paths outside ``/api/``."""
    if not path.startswith("/api/"):
        return None
    for prefix, limiter in PATH_LIMITER_CLASSES:
        if path == prefix or path.startswith(prefix + "/"):
            return limiter
    return "api"


def client_identifier(request: Request) -> str:
    """``user:<id>`` for identified callers, else ``ip:<addr>``."""
    user_id = request.headers.get("x-user-id")
    if user_id:
        return f"user:{user_id}"
    return f"ip:{client_ip(request)}"


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client is not None:
        return request.client.host
    return "unknown"


def rate_limit_headers(result: RateLimitResult) -> Dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_at_ms),
    }


class GovernanceMiddleware:
    def __init__(self, app: Callable, context: GovernanceContext) -> None:
        self.app = app
        self.context = context
        settings = context.settings
        self.sensitive_prefixes = list(settings.sensitive_path_prefixes)
        self.security_headers = SECURITY_HEADERS if settings.security_headers_enabled else {}

    async def __call__(self, scope: dict, receive: Callable, send: Callable) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        extra_headers = dict(self.security_headers)
        if classify_path(request.url.path) is not None:
            # Limiter, heuristics and audit writes may block; keep them off the loop
            refusal = await asyncio.to_thread(self._govern, request, extra_headers)
            if refusal is not None:
                await refusal(scope, receive, send)
                return

        await self.app(scope, receive, self._with_headers(send, extra_headers))

    def _govern(self, request: Request, extra_headers: Dict[str, str]) -> Optional[JSONResponse]:
        """Run the governance checks; a response to send instead, or None.

        Rate-limit headers are added to ``extra_headers`` in place.
        """
        path = request.url.path
        limiter = classify_path(path)
        user_agent = request.headers.get("user-agent")
        identifier = client_identifier(request)
        result = self.context.limiters.check(limiter, identifier, user_agent=user_agent)
        extra_headers.update(rate_limit_headers(result))
        if not result.allowed:
            retry_after = result.retry_after_seconds(self.context.clock())
            extra_headers["Retry-After"] = str(retry_after)
            logger.info("Rate limited %s on %s (retry after %ss)", identifier, limiter, retry_after)
            return JSONResponse(
                {"detail": "Too many requests.", "retry_after": retry_after},
                status_code=429,
                headers=extra_headers,
            )

        if self.context.abuse.detect_attack(identifier, user_agent).is_attack:
            logger.warning("Attack pattern refused for %s on %s", identifier, path)
            return self._refusal(extra_headers)

        if self._is_sensitive(path):
            origin = f"ip:{client_ip(request)}"
            if self.context.abuse.assess_ip_risk(origin, user_agent) is RiskLevel.HIGH:
                self.context.events.log_security_event(
                    "HIGH_RISK_IP_BLOCKED",
                    origin,
                    {"path": path, "user_agent": user_agent, "risk_level": RiskLevel.HIGH.value},
                )
                return self._refusal(extra_headers)
        return None

    def _is_sensitive(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.sensitive_prefixes)

    @staticmethod
    def _refusal(headers: Dict[str, str]) -> JSONResponse:
        return JSONResponse({"detail": "Access denied."}, status_code=403, headers=headers)

    @staticmethod
    def _with_headers(send: Callable, headers: Dict[str, str]) -> Callable:
        header_list = [(k.lower().encode(), v.encode()) for k, v in headers.items()]

        async def send_wrapper(message: dict) -> None:
            if message["type"] == "http.response.start":
                existing = list(message.get("headers", []))
                seen = {h[0].lower() for h in existing}
                for name_b, value_b in header_list:
                    if name_b not in seen:
                        existing.append((name_b, value_b))
                message["headers"] = existing
            await send(message)

        return send_wrapper
