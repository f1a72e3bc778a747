"""
Per-key locking for AI Collaboration Hub

Serializes work on one entity, recipient, proposal or agent without
contending with unrelated keys.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List


class KeyedLock:
    """
    Registry of re-entrant locks scoped to a key.

    Locks are created on first use and dropped once no thread holds
    or waits on them, so the registry stays proportional to the number
    of keys currently in use.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}
        self._users: Dict[str, int] = {}

    def _acquire_ref(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            self._users[key] = self._users.get(key, 0) + 1
            return lock

    def _release_ref(self, key: str):
        with self._guard:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Hold the lock for a single key."""
        lock = self._acquire_ref(key)
        try:
            with lock:
                yield
        finally:
            self._release_ref(key)

    @contextmanager
    def hold_many(self, keys: Iterable[str]) -> Iterator[None]:
        """Hold the locks for several keys, acquired in sorted order."""
        ordered: List[str] = sorted(set(keys))
        acquired: List[str] = []
        try:
            for key in ordered:
                self._acquire_ref(key).acquire()
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
                self._release_ref(key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
