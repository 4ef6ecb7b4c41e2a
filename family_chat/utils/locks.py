"""
Keyed lock registry used to serialize work per user or per conversation.
"""

import threading
from contextlib import contextmanager
from typing import Dict


class KeyedLocks:
    """Lazily created re-entrant lock per key"""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def get(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str):
        lock = self.get(key)
        with lock:
            yield

    def __len__(self):
        return len(self._locks)
