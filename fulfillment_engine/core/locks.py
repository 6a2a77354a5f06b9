"""
Per-entity locking.

Serializes work on one request or one (client, period, service) quota row
within a process. Every acquisition is bounded; nothing waits forever.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator

import structlog

from .errors import Contended

logger = structlog.get_logger(__name__)


class _KeyedLock:
    """A lock plus the number of threads holding or waiting for it."""

    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class KeyedLockManager:
    """Hands out one lock per key, created on first use.

    An entry lives only while some thread holds or waits for its key, so the
    map stays as small as the work in flight.
    """

    def __init__(self, timeout_seconds: float = 5.0):
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[Hashable, _KeyedLock] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: Hashable) -> _KeyedLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _KeyedLock()
                self._locks[key] = entry
            entry.users += 1
            return entry

    def _checkin(self, key: Hashable, entry: _KeyedLock) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Hold the lock for ``key`` for the duration of the block.

        Raises:
            Contended: If the lock isn't acquired within the timeout
        """
        entry = self._checkout(key)
        try:
            if not entry.lock.acquire(timeout=self.timeout_seconds):
                logger.warning("Lock contended", key=str(key), timeout=self.timeout_seconds)
                raise Contended(f"Timed out after {self.timeout_seconds}s waiting for {key}")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)
