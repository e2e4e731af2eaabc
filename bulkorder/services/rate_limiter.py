"""
Upload Rate Limiter: per-client sliding window for bulk uploads.

Default: 10 uploads per 300 s per client key (usually the client IP).
A denied request is not recorded, so a blocked client regains access as
soon as its oldest admitted request leaves the window.

Implementation: In-memory sliding window. Resets on restart.
"""
from __future__ import annotations

import logging
import math
import time
from collections import defaultdict
from threading import Lock
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class SlidingWindow:
    """Thread-safe sliding-window counter for a single key."""

    __slots__ = ("_timestamps", "_lock")

    def __init__(self):
        self._timestamps: list[float] = []
        self._lock = Lock()

    def _prune(self, window_s: float, now: float) -> None:
        cutoff = now - window_s
        self._timestamps = [t for t in self._timestamps if t > cutoff]

    def count_in_window(self, window_s: float, now: float) -> int:
        """Return how many events occurred in the last *window_s* seconds."""
        with self._lock:
            self._prune(window_s, now)
            return len(self._timestamps)

    def count_and_record(self, window_s: float, now: float) -> int:
        """Prune, record new event, return count AFTER recording."""
        with self._lock:
            self._prune(window_s, now)
            self._timestamps.append(now)
            return len(self._timestamps)

    def try_record(self, limit: int, window_s: float, now: float) -> Optional[float]:
        """Record an event if under *limit*. Returns None when recorded,
        else the seconds until the oldest event leaves the window."""
        with self._lock:
            self._prune(window_s, now)
            if len(self._timestamps) >= limit:
                return self._timestamps[0] + window_s - now
            self._timestamps.append(now)
            return None


class UploadRateLimiter:
    """Per-client sliding-window limiter."""

    def __init__(
        self,
        max_requests: int = 10,
        window_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_s = window_s
        self._clock = clock
        self._windows: dict[str, SlidingWindow] = defaultdict(SlidingWindow)

    def check_and_record(self, client_key: str) -> Optional[int]:
        """Admit one request for *client_key*.

        Returns None when admitted, otherwise the Retry-After value in
        whole seconds (at least 1).
        """
        now = self._clock()
        wait = self._windows[client_key].try_record(self.max_requests, self.window_s, now)
        if wait is None:
            return None
        retry_after = max(1, math.ceil(wait))
        logger.warning(
            "Upload rate limit hit: client=%s limit=%d/%ss retry_after=%ds",
            client_key, self.max_requests, self.window_s, retry_after,
        )
        return retry_after

    def remaining(self, client_key: str) -> int:
        used = self._windows[client_key].count_in_window(self.window_s, self._clock())
        return max(0, self.max_requests - used)

    def sweep(self) -> int:
        """Drop keys whose windows have fully expired. Returns keys removed."""
        now = self._clock()
        stale = [
            key for key, window in list(self._windows.items())
            if window.count_in_window(self.window_s, now) == 0
        ]
        for key in stale:
            self._windows.pop(key, None)
        return len(stale)
