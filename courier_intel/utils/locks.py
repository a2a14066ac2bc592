"""
Keyed in-process locks.

Serializes work per key (customer hash) inside one process. Cross-process
serialization comes from the row lock the ingestion service takes on the
customer row; this registry covers SQLite, where that lock is a no-op.
"""
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional


class KeyedLockRegistry:
    """One re-entrant lock per key, dropped when no thread holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}
        self._refcounts: Dict[str, int] = {}

    @contextmanager
    def hold(self, key: Optional[str], timeout: float = -1) -> Iterator[bool]:
        """
        Hold the lock for ``key`` for the duration of the block.

        A None key yields immediately without locking. Yields False if the
        lock could not be taken within ``timeout`` seconds.
        """
        if key is None:
            yield True
            return

        with self._guard:
            lock = self._locks.setdefault(key, threading.RLock())
            self._refcounts[key] = self._refcounts.get(key, 0) + 1

        acquired = lock.acquire(timeout=timeout)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()
            with self._guard:
                self._refcounts[key] -= 1
                if self._refcounts[key] == 0:
                    del self._refcounts[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# Process-wide registry used by the ingestion service
customer_locks = KeyedLockRegistry()
