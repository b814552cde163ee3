"""In-process request governance: caching, rate limiting, abuse heuristics
and access control for request-handling code."""

__version__ = "0.1.0"
