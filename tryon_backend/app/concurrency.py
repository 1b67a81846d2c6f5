"""Locking helpers shared by the in-process stores and services."""
from __future__ import annotations

from contextlib import contextmanager
from threading import Lock
from typing import Dict, Iterator


class KeyedLock:
    """Hands out one mutex per key and forgets it once nobody holds it.

    Callers on different keys never contend; callers on the same key are
    serialized in arrival order of the underlying ``threading.Lock``.
    """

    def __init__(self) -> None:
        self._registry_lock = Lock()
        self._locks: Dict[str, Lock] = {}
        self._holders: Dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = Lock()
                self._locks[key] = lock
            self._holders[key] = self._holders.get(key, 0) + 1

        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._registry_lock:
                remaining = self._holders[key] - 1
                if remaining:
                    self._holders[key] = remaining
                else:
                    del self._holders[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)


__all__ = ["KeyedLock"]
