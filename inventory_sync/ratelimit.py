"""Sliding-window rate limiter for outbound pricing batches."""

from __future__ import annotations

import collections
import logging
import threading
import time
from typing import Callable, Deque

from .config import MAX_BATCH_CALLS_PER_MIN

logger = logging.getLogger(__name__)


class RateLimiter:
    """Grant at most ``max_calls`` acquisitions in any trailing ``window`` seconds.

    Each instance owns its history.  Call sites that must share a budget
    share an instance; independent ones build their own.  ``clock`` and
    ``sleep`` are injectable so tests can drive time by hand.
    """

    def __init__(
        self,
        max_calls: int = MAX_BATCH_CALLS_PER_MIN,
        window: float = 60.0,
        *,
        margin: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_calls < 1:
            raise ValueError("max_calls must be at least 1")
        if window <= 0:
            raise ValueError("window must be positive")
        self.max_calls = max_calls
        self.window = window
        self.margin = margin
        self._clock = clock
        self._sleep = sleep
        self._calls: Deque[float] = collections.deque()
        self._lock = threading.Lock()

    def _evict(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self.window:
            self._calls.popleft()

    def acquire(self) -> float:
        """Block until a slot is free, record it, and return the seconds waited."""
        waited = 0.0
        # Held across the sleep so grants are handed out strictly in order.
        with self._lock:
            while True:
                now = self._clock()
                self._evict(now)
                if len(self._calls) < self.max_calls:
                    self._calls.append(now)
                    return waited
                delay = self.window - (now - self._calls[0]) + self.margin
                logger.info(
                    "Rate limit hit (%d/%d calls in last %.0fs). Waiting %.1fs...",
                    len(self._calls), self.max_calls, self.window, delay,
                )
                self._sleep(delay)
                waited += delay

    def in_window(self) -> int:
        """Number of grants inside the current window."""
        with self._lock:
            self._evict(self._clock())
            return len(self._calls)


__all__ = ["RateLimiter"]
