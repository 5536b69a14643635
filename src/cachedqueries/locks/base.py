"""Per-key lock manager interface.

Locks are advisory. They reduce duplicate origin queries when several
callers miss the same key at once, but nothing depends on them for
correctness: a lock that cannot be taken in time is simply skipped.

Cancellation is signalled with an ``asyncio.Event``. Waiting loops return
as soon as it is set instead of raising.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

DEFAULT_LOCK_TIMEOUT = 5.0  # Seconds
DEFAULT_POLL_INTERVAL = 0.05  # Seconds


async def wait_or_cancelled(delay: float, cancel: asyncio.Event | None = None) -> bool:
    """Sleep for ``delay`` seconds.

    Returns:
        True if ``cancel`` was set before the delay elapsed, False otherwise.
    """
    if cancel is None:
        await asyncio.sleep(delay)
        return False
    if cancel.is_set():
        return True
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
        return True
    except asyncio.TimeoutError:
        return False


class LockManager(ABC):
    """Abstract per-key mutual exclusion.

    Args:
        lock_timeout: Default maximum wait in seconds for ``lock`` and ``check_lock``
        poll_interval: Delay between polls in seconds
    """

    def __init__(
        self,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.lock_timeout = lock_timeout
        self.poll_interval = poll_interval

    @abstractmethod
    async def lock(
        self,
        key: str,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> bool:
        """Acquire the lock for ``key``.

        Args:
            key: Cache key to lock
            timeout: Maximum wait in seconds (defaults to ``lock_timeout``)
            cancel: Event that aborts the wait when set

        Returns:
            True if acquired; False on timeout, cancellation or backend failure
        """
        ...

    @abstractmethod
    async def release(self, key: str) -> None:
        """Release the lock for ``key``. Best effort, never raises."""
        ...

    @abstractmethod
    async def check_lock(
        self,
        key: str,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        """Wait until ``key`` is observed unlocked, without taking the lock.

        Returns after the lock is released, the timeout elapses, or
        ``cancel`` is set, whichever comes first.
        """
        ...

    @asynccontextmanager
    async def hold(
        self,
        key: str,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[bool]:
        """Hold the lock for the duration of the block.

        Yields whether the lock was acquired. An acquired lock is released
        on every exit path, including exceptions raised inside the block.
        """
        acquired = await self.lock(key, timeout, cancel)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release(key)

    async def close(self) -> None:
        return None

    def _timeout(self, timeout: float | None) -> float:
        return self.lock_timeout if timeout is None else timeout
