"""
Per-connector request spacing.
"""

import threading
import time
from typing import Callable, Optional


class RateLimiter:
    """
    Enforces a minimum interval between outbound requests.

    One instance belongs to one connector. The lock is held while sleeping,
    so concurrent callers on the same connector are serialized and each
    request starts at least ``interval`` seconds after the previous one.
    """

    def __init__(
        self,
        interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.interval = max(0.0, interval)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_request_at: Optional[float] = None

    def wait(self) -> None:
        """Block until the next request may start, then claim the slot."""
        with self._lock:
            now = self._clock()
            if self._last_request_at is not None:
                elapsed = now - self._last_request_at
                if elapsed < self.interval:
                    self._sleep(self.interval - elapsed)
                    now = self._clock()
            self._last_request_at = now

    def reset(self) -> None:
        with self._lock:
            self._last_request_at = None
