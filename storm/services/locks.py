"""
Per-key serialization points.

Account locks guard a storm account's mutation and the completion of its
transfer jobs. A bulk update holds the locks of every storm account it
writes, taken in key order. Enterprise locks guard the registered-count
commit. When both are needed the account lock is always taken first.
"""

import threading
from contextlib import ExitStack, contextmanager
from typing import Dict, Iterable, Iterator, List


def enterprise_key(enterprise_id: int) -> str:
    return f"enterprise:{int(enterprise_id)}"


def account_key(account_id: int) -> str:
    return f"account:{int(account_id)}"


class KeyedLocks:
    """One reentrant lock per key, held only while some thread uses the key."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, List] = {}  # key -> [RLock, users]

    def _checkout(self, key: str) -> threading.RLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        lock = self._checkout(key)
        try:
            with lock:
                yield
        finally:
            self._checkin(key)

    @contextmanager
    def lock_all(self, keys: Iterable[str]) -> Iterator[None]:
        """Hold several keys at once, taken in sorted order."""
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.lock(key))
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


_locks: KeyedLocks = None
_locks_guard = threading.Lock()


def get_keyed_locks() -> KeyedLocks:
    global _locks
    if _locks is not None:
        return _locks
    with _locks_guard:
        if _locks is None:
            _locks = KeyedLocks()
        return _locks
