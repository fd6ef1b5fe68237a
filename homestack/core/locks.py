"""Per-app advisory locks so lifecycle operations on one app never interleave."""

import asyncio
from contextlib import asynccontextmanager

import structlog

logger = structlog.get_logger()


class AppOperationLocks:
    """One ``asyncio.Lock`` per app id, dropped once nobody holds or waits on it.

    ``asyncio.Lock`` wakes waiters in FIFO order, so operations for the same app
    run in submission order. Different apps never contend.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, app_id: str):
        lock = self._locks.setdefault(app_id, asyncio.Lock())
        self._holders[app_id] = self._holders.get(app_id, 0) + 1
        try:
            if lock.locked():
                logger.debug("Waiting for app operation lock", app_id=app_id)
            async with lock:
                yield
        finally:
            self._holders[app_id] -= 1
            if self._holders[app_id] == 0:
                del self._holders[app_id]
                self._locks.pop(app_id, None)

    def is_locked(self, app_id: str) -> bool:
        lock = self._locks.get(app_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
