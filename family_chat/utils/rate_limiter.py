#!/usr/bin/env python3
"""
Admission control for inbound chat sends.

The gateway only depends on the ``RateLimiter`` interface (``admit(user_id)``),
so the in-memory sliding window below can be replaced by a shared-store
implementation when the server runs as several processes.
"""

import time
import threading
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Optional

import logging

logger = logging.getLogger(__name__)


class RateLimiter:
    """Per-user admission control interface"""

    def admit(self, user_id: str) -> bool:
        raise NotImplementedError

    def reset(self, user_id: Optional[str] = None):
        """Forget recorded attempts for one user or everyone"""
        raise NotImplementedError


class SlidingWindowRateLimiter(RateLimiter):
    """
    Sliding window log limiter.

    Keeps, per user, the timestamps of admitted sends inside the trailing
    window. An attempt first discards timestamps older than the window and is
    admitted only while fewer than ``max_events`` remain; admission records
    the new timestamp. Rejected attempts are not recorded.

    Example:
        >>> limiter = SlidingWindowRateLimiter(max_events=10, window_ms=5000)
        >>> limiter.admit('user-1')
        True
    """

    def __init__(self, max_events: int = 10, window_ms: int = 5000,
                 clock: Optional[Callable[[], float]] = None):
        if max_events < 1:
            raise ValueError("max_events must be at least 1")
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        self.max_events = max_events
        self.window_ms = window_ms
        self._clock = clock or (lambda: time.monotonic() * 1000.0)
        self._events: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def admit(self, user_id: str) -> bool:
        now = self._clock()
        cutoff = now - self.window_ms
        with self._lock:
            timestamps = self._events[user_id]
            while timestamps and timestamps[0] <= cutoff:
                timestamps.popleft()

            if len(timestamps) >= self.max_events:
                logger.info(f"Send rate limit hit for user {user_id} "
                            f"({self.max_events} per {self.window_ms}ms)")
                return False

            timestamps.append(now)
            return True

    def reset(self, user_id: Optional[str] = None):
        with self._lock:
            if user_id is None:
                self._events.clear()
            else:
                self._events.pop(user_id, None)

    def count(self, user_id: str) -> int:
        """Number of admitted sends currently inside the window"""
        cutoff = self._clock() - self.window_ms
        with self._lock:
            return sum(1 for ts in self._events.get(user_id, ()) if ts > cutoff)
