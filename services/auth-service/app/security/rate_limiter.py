"""In-memory sliding window rate limiter for credential endpoints."""

from __future__ import annotations

import time
from collections import deque
from threading import Lock
from typing import Deque, Dict


class SlidingWindowRateLimiter:
    """Thread-safe sliding window rate limiter keyed by caller-chosen strings.

    Keys whose window has emptied are evicted, and a full sweep over every key
    runs at most once per window, so one-off callers do not accumulate.
    """

    def __init__(self, max_requests: int, window_seconds: int) -> None:
        self._max_requests = max_requests
        self._window = window_seconds
        self._events: Dict[str, Deque[float]] = {}
        self._next_sweep = 0.0
        self._lock = Lock()

    def _prune(self, queue: Deque[float], now: float) -> None:
        while queue and now - queue[0] > self._window:
            queue.popleft()

    def _sweep(self, now: float) -> None:
        if now < self._next_sweep:
            return
        self._next_sweep = now + self._window
        for key in list(self._events):
            queue = self._events[key]
            self._prune(queue, now)
            if not queue:
                del self._events[key]

    def allow(self, key: str) -> bool:
        """Record a hit for ``key`` and return ``False`` once the window is full."""
        now = time.time()
        with self._lock:
            self._sweep(now)
            queue = self._events.get(key)
            if queue is None:
                queue = self._events[key] = deque()
            self._prune(queue, now)
            if len(queue) >= self._max_requests:
                return False
            queue.append(now)
            return True

    def reset(self, key: str) -> None:
        """Forget every hit recorded for ``key``."""
        with self._lock:
            self._events.pop(key, None)
