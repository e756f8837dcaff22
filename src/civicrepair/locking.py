"""Per-aggregate locks.

Only one state transition is ever in flight for a given grievance,
ballot or assignment. Locks are re-entrant so a component holding a
grievance lock can call into another component that takes the same lock.

Lock order: ballot → grievance → assignment.

Locks are held weakly: an entry lives only while some caller references it.
"""

from __future__ import annotations

import threading
import weakref
from contextlib import contextmanager
from typing import Iterator


class LockRegistry:
    """Hands out one ``threading.RLock`` per aggregate key.

    Usage:
        locks = LockRegistry()
        with locks.hold("grievance", grievance_id):
            ...
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: weakref.WeakValueDictionary[str, threading.RLock] = (
            weakref.WeakValueDictionary()
        )

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def lock_for(self, kind: str, entity_id: str) -> threading.RLock:
        key = f"{kind}:{entity_id}"
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, kind: str, entity_id: str) -> Iterator[None]:
        lock = self.lock_for(kind, entity_id)
        with lock:
            yield
