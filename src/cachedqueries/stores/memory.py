"""In-process cache backend.

Keeps serialized bytes in a dict so cached values are snapshots, never live
references into caller objects. Expiry is checked on read, and writes sweep
out every expired entry at most once per sweep interval, so keys that are
never read again do not accumulate.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import timedelta

from cachedqueries.stores.base import CacheBackend

DEFAULT_SWEEP_INTERVAL = 60.0  # Seconds


class MemoryBackend(CacheBackend):
    """Dict-backed medium with absolute TTLs on a monotonic clock.

    Args:
        clock: Monotonic time source in seconds
        sweep_interval: Minimum seconds between expiry sweeps on write
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
    ):
        self._clock = clock
        self.sweep_interval = sweep_interval
        self._entries: dict[str, tuple[bytes, float | None]] = {}
        self._next_sweep = clock() + sweep_interval

    async def get(self, key: str) -> bytes | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        data, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return data

    async def set(self, key: str, data: bytes, ttl: timedelta | None = None) -> None:
        now = self._clock()
        if now >= self._next_sweep:
            self.purge_expired(now)
        expires_at = None if ttl is None else now + ttl.total_seconds()
        self._entries[key] = (data, expires_at)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def purge_expired(self, now: float | None = None) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self._clock() if now is None else now
        expired = [
            key
            for key, (_, expires_at) in self._entries.items()
            if expires_at is not None and expires_at <= now
        ]
        for key in expired:
            del self._entries[key]
        self._next_sweep = now + self.sweep_interval
        return len(expired)

    def keys(self) -> list[str]:
        """Return the keys currently held, expired ones included."""
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
