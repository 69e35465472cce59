from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable


class RateLimitExceededError(RuntimeError):
    def __init__(self, retry_after_seconds: int):
        super().__init__(f"Too many AI requests, please try again in {retry_after_seconds} seconds")
        self.retry_after_seconds = retry_after_seconds


class SlidingWindowRateLimiter:
    """Per-caller request cap over a sliding time window, held in process memory."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self._max_requests = max_requests
        self._window_seconds = float(window_seconds)
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    @property
    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def _sweep(self, cutoff: float) -> None:
        for key in [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]:
            del self._hits[key]

    def hit(self, key: str) -> None:
        now = self._clock()
        cutoff = now - self._window_seconds
        with self._lock:
            if now - self._last_sweep >= self._window_seconds:
                self._sweep(cutoff)
                self._last_sweep = now
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= self._max_requests:
                retry_after = max(1, int(hits[0] + self._window_seconds - now + 0.999))
                raise RateLimitExceededError(retry_after)
            hits.append(now)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
