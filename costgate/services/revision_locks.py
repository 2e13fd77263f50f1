"""
Per-revision mutual exclusion.
Events for one revision run one at a time, in arrival order.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict
import asyncio


class RevisionLocks:
    """Registry of asyncio locks keyed by revision id; entries are dropped when idle."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, revision_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(revision_id, asyncio.Lock())
        self._waiters[revision_id] = self._waiters.get(revision_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[revision_id] -= 1
            if self._waiters[revision_id] == 0:
                del self._waiters[revision_id]
                del self._locks[revision_id]

    def __len__(self) -> int:
        return len(self._locks)
