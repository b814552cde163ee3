"""Fixed-window rate limiting with shared, escalating identifier blocks."""

from .blocks import BlockEntry, BlockRegistry
from .limiter import (
    REQUIRED_LIMITER_CLASSES,
    FixedWindowRateLimiter,
    RateLimiterRegistry,
    RateWindowRecord,
)

__all__ = [
    "REQUIRED_LIMITER_CLASSES",
    "BlockEntry",
    "BlockRegistry",
    "FixedWindowRateLimiter",
    "RateLimiterRegistry",
    "RateWindowRecord",
]
