"""Keyed asyncio locks for serialising work per cart owner."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from threading import Lock


class KeyedLocks:
    """Registry of asyncio locks, one per key, released when unused.

    Only serialises callers within this process. Cross-process safety comes
    from the database unique constraints on carts.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}
        self._guard = Lock()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, asyncio.Lock())
            self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            with self._guard:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


_owner_locks: KeyedLocks | None = None


def get_owner_locks() -> KeyedLocks:
    """Get or create the global per-owner lock registry."""
    global _owner_locks
    if _owner_locks is None:
        _owner_locks = KeyedLocks()
    return _owner_locks
