"""In-memory rate limiter for participant-facing write endpoints."""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque


class InMemoryRateLimiter:
    """Sliding-window limiter keyed by client and route.

    Counts are per process; a multi-worker deployment gets one window
    per worker.
    """

    def __init__(self):
        self._windows: dict[str, deque] = defaultdict(deque)
        self._lock = threading.Lock()

    @staticmethod
    def _prune(hits: deque, now: float, window_seconds: int) -> None:
        while hits and now - hits[0] > window_seconds:
            hits.popleft()

    def allow(self, key: str, max_requests: int, window_seconds: int) -> tuple[bool, int]:
        """Record a hit for `key`; return (allowed, retry_after_seconds)."""
        now = time.monotonic()
        with self._lock:
            hits = self._windows[key]
            self._prune(hits, now, window_seconds)
            if len(hits) < max_requests:
                hits.append(now)
                return True, 0
            oldest = hits[0]
        return False, max(1, int(window_seconds - (now - oldest)))

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
