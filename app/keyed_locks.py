from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class KeyedLocks:
    """Per-key mutual exclusion; unused keys are released once no holder or waiter remains."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._refcounts: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            self._refcounts[key] = self._refcounts.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                remaining = self._refcounts.get(key, 1) - 1
                if remaining <= 0:
                    self._refcounts.pop(key, None)
                    self._locks.pop(key, None)
                else:
                    self._refcounts[key] = remaining

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)
