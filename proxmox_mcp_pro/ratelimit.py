from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Optional

from .config import RateLimitConfig

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """
    Admits at most ``max_requests`` calls within any trailing ``window_ms``.

    Every admission check prunes the recorded timestamps first, so the window
    is a true rolling one rather than a periodically reset counter. The
    prune/check/record step runs under a lock; waiting happens outside it and
    the check is repeated after every wake-up.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_ms: int = 60000,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        self.max_requests = max_requests
        self.window_ms = window_ms
        self._window = window_ms / 1000.0
        self._clock = clock
        self._sleep = sleep
        self._requests: Deque[float] = deque()
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, cfg: RateLimitConfig, **kwargs) -> "SlidingWindowRateLimiter":
        return cls(cfg.max_requests, cfg.window_ms, **kwargs)

    def _prune(self, now: float) -> None:
        while self._requests and now - self._requests[0] >= self._window:
            self._requests.popleft()

    def _try_admit(self) -> Optional[float]:
        """Record an admission and return None, or return how long to wait."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._requests) < self.max_requests:
                self._requests.append(now)
                return None
            return self._window - (now - self._requests[0])

    def admit(self) -> None:
        while True:
            wait = self._try_admit()
            if wait is None:
                return
            if wait <= 0:
                continue
            logger.debug("Rate limit reached (%d/%dms), waiting %.3fs", self.max_requests, self.window_ms, wait)
            self._sleep(wait)

    def in_window(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._requests)
