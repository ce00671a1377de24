"""Per-key asyncio locks used to serialize read-then-write reconciliation.

Two deliveries for the same order (or message id) handled by this process run
one after the other; cross-process races are caught by the unique constraints
and row locks in the ledger itself.
"""

import asyncio
from contextlib import asynccontextmanager


class KeyedLock:
    """Lazily created lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
