from __future__ import annotations

import time
from typing import Callable

# All governance timestamps are integer epoch milliseconds.
Clock = Callable[[], int]


def now_ms() -> int:
    return time.time_ns() // 1_000_000
