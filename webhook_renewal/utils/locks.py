"""Per-key asyncio locks for single-flight work on one user or subscription."""

from asyncio import Lock
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class KeyedLocks:
    """
    Registry of asyncio locks keyed by an entity identifier.

    Shared between the admission path and the renewal engine so that
    "read current state, decide, write new state" for one user never
    interleaves with another mutation of the same user.

    A key's lock lives only while someone holds or waits for it, so the
    registry stays proportional to in-flight work rather than to every
    user ever seen.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Acquire the lock for ``key`` for the duration of the block."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def waiters(self, key: str) -> int:
        """Number of tasks holding or queued on ``key``."""
        return self._users.get(key, 0)

    def __len__(self) -> int:
        return len(self._locks)
