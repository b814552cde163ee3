from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger("governor.sweeper")


class PeriodicTask:
    """Runs ``fn`` every ``interval_s`` seconds on a daemon thread.

    The first run happens one interval after ``start()``. A failing run is
    logged and the schedule continues.
    """

    def __init__(self, name: str, interval_s: float, fn: Callable[[], object]) -> None:
        self.name = name
        self.interval_s = interval_s
        self.fn = fn
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"governor-{self.name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Sweep %s did not stop within %.1fs", self.name, timeout)
        self._thread = None

    def run_once(self) -> None:
        try:
            result = self.fn()
            logger.debug("Sweep %s finished: %s", self.name, result)
        except Exception:
            logger.exception("Sweep %s failed", self.name)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            self.run_once()
