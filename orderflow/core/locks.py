"""
Per-key asyncio locks.

Serializes read-modify-write cycles on a single order inside one process.
Cross-process safety comes from the optimistic ``version`` column on the
order row; this only keeps a webhook and an admin action racing on the same
order from both loading the same version.
"""
import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Dict


class KeyedLockManager:
    """
    Manages one lock per key (order code).

    Idle locks are dropped once nobody holds or waits on them so the map does
    not grow with every order ever touched.
    """
    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._waiters: Dict[str, int] = defaultdict(int)
        self._lock = asyncio.Lock()  # Protects _locks dict creation

    @asynccontextmanager
    async def hold(self, key: str):
        async with self._lock:
            lock = self._locks[key]
            self._waiters[key] += 1
        try:
            async with lock:
                yield
        finally:
            async with self._lock:
                self._waiters[key] -= 1
                if self._waiters[key] <= 0:
                    self._waiters.pop(key, None)
                    self._locks.pop(key, None)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)
