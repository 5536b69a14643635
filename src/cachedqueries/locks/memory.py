"""In-process lock managers.

InProcessLockManager keeps one asyncio.Lock per key and is the right
choice when a single process owns the cache. NullLockManager disables
stampede protection entirely.
"""

from __future__ import annotations

import asyncio
import logging

from cachedqueries.locks.base import LockManager, wait_or_cancelled

logger = logging.getLogger(__name__)


class InProcessLockManager(LockManager):
    """One asyncio.Lock per key, created on demand.

    Locks with no holder and no waiters are dropped on release so the map
    only holds keys that are in use.
    """

    def __init__(self, lock_timeout: float = 5.0, poll_interval: float = 0.05):
        super().__init__(lock_timeout, poll_interval)
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiting: dict[str, int] = {}

    async def lock(
        self,
        key: str,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> bool:
        if cancel is not None and cancel.is_set():
            return False

        lock = self._locks.setdefault(key, asyncio.Lock())
        if not lock.locked():
            await lock.acquire()
            return True

        self._waiting[key] = self._waiting.get(key, 0) + 1
        try:
            return await self._wait_for(lock, self._timeout(timeout), cancel)
        finally:
            remaining = self._waiting.get(key, 1) - 1
            if remaining:
                self._waiting[key] = remaining
            else:
                self._waiting.pop(key, None)

    async def _wait_for(
        self,
        lock: asyncio.Lock,
        timeout: float,
        cancel: asyncio.Event | None,
    ) -> bool:
        acquire = asyncio.ensure_future(lock.acquire())
        waiters: set[asyncio.Future[object]] = {acquire}
        cancelled = asyncio.ensure_future(cancel.wait()) if cancel is not None else None
        if cancelled is not None:
            waiters.add(cancelled)

        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if cancelled is not None:
                cancelled.cancel()

        if acquire.done():
            return not acquire.cancelled()

        acquire.cancel()
        await asyncio.wait({acquire})
        # The lock may have been handed over before the cancel landed
        acquired = not acquire.cancelled() and acquire.exception() is None
        if not acquired:
            logger.debug("Gave up waiting for in-process lock")
        return acquired

    async def release(self, key: str) -> None:
        lock = self._locks.get(key)
        if lock is None or not lock.locked():
            logger.debug(f"Release of unheld lock {key} ignored")
            return
        lock.release()
        if not lock.locked() and not self._waiting.get(key):
            self._locks.pop(key, None)

    async def check_lock(
        self,
        key: str,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout(timeout)
        while True:
            lock = self._locks.get(key)
            if lock is None or not lock.locked():
                return
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.debug(f"Timed out waiting for lock {key} to clear")
                return
            if await wait_or_cancelled(min(self.poll_interval, remaining), cancel):
                return

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


class NullLockManager(LockManager):
    """Lock manager that never blocks."""

    async def lock(
        self,
        key: str,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> bool:
        return True

    async def release(self, key: str) -> None:
        return None

    async def check_lock(
        self,
        key: str,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        return None
