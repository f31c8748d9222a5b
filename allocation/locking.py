from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class ResourceLockRegistry:
    """One exclusive in-process lock per resource id."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, resource_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(resource_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[resource_id] = lock
            return lock

    @contextmanager
    def hold(self, *resource_ids: str) -> Iterator[None]:
        # always acquired in sorted id order
        ordered = sorted({resource_id for resource_id in resource_ids if resource_id})
        acquired: list[threading.Lock] = []
        try:
            for resource_id in ordered:
                lock = self._lock_for(resource_id)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
