"""Distributed per-key locks on Redis.

Each lock is a lease key holding an owner token, written with
SET NX PX so it expires on its own if the holder dies. Acquire and check
poll at a fixed interval; release deletes the lease only if it still holds
our token.

Example:
    locks = RedisLockManager(await get_redis(), lock_timeout=5.0)

    async with locks.hold(cache_key) as acquired:
        if acquired:
            await populate()
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable
from typing import TYPE_CHECKING, cast
from uuid import uuid4

from cachedqueries.locks.base import (
    DEFAULT_LOCK_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    LockManager,
    wait_or_cancelled,
)

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

LOCK_PREFIX = "cachedqueries:lock:"

# Delete the lease only if we still own it
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


def _generate_instance_id() -> str:
    """Generate a unique instance ID for lock ownership."""
    hostname = os.environ.get("HOSTNAME", os.environ.get("POD_NAME", "unknown"))
    return f"{hostname}-{uuid4().hex[:8]}"


class RedisLockManager(LockManager):
    """Redis lease locks shared by every process using the same server.

    The lease expiry equals the acquire timeout, so a crashed holder blocks
    other callers for at most that long. The owner token is derived from
    the instance and the key; tasks of one process that contend for the
    same key are kept apart by NX but share the token.

    Args:
        client: redis.asyncio client
        lock_timeout: Default wait and lease length in seconds
        poll_interval: Delay between SET NX attempts in seconds
        prefix: Namespace for lease keys
        instance_id: Owner identity (auto-generated if None)
    """

    def __init__(
        self,
        client: Redis,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        prefix: str = LOCK_PREFIX,
        instance_id: str | None = None,
    ):
        super().__init__(lock_timeout, poll_interval)
        self.client = client
        self.prefix = prefix
        self.instance_id = instance_id or _generate_instance_id()

    def lock_key(self, key: str) -> str:
        """The Redis key used for the lease."""
        return f"{self.prefix}{key}"

    def owner_token(self, key: str) -> str:
        return f"{self.instance_id}:{key}_lock"

    async def lock(
        self,
        key: str,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> bool:
        wait = self._timeout(timeout)
        lease_ms = max(1, int(wait * 1000))
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait

        while True:
            if cancel is not None and cancel.is_set():
                return False
            try:
                acquired = await self.client.set(
                    self.lock_key(key),
                    self.owner_token(key),
                    nx=True,  # Only set if not exists
                    px=lease_ms,  # Expire with the timeout
                )
            except Exception as e:
                logger.warning(f"Failed to acquire lock for {key}: {e}")
                return False

            if acquired:
                return True

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.debug(f"Timed out acquiring lock for {key}")
                return False
            if await wait_or_cancelled(min(self.poll_interval, remaining), cancel):
                return False

    async def release(self, key: str) -> None:
        try:
            result = await cast(
                Awaitable[int],
                self.client.eval(RELEASE_SCRIPT, 1, self.lock_key(key), self.owner_token(key)),
            )
        except Exception as e:
            logger.warning(f"Failed to release lock for {key}: {e}")
            return
        if not result:
            logger.debug(f"Lock for {key} had already expired or changed owner")

    async def check_lock(
        self,
        key: str,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout(timeout)

        while True:
            try:
                held = await self.client.exists(self.lock_key(key))
            except Exception as e:
                logger.warning(f"Failed to check lock for {key}: {e}")
                return
            if not held:
                return

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.debug(f"Timed out waiting for lock {key} to clear")
                return
            if await wait_or_cancelled(min(self.poll_interval, remaining), cancel):
                return

    async def get_owner(self, key: str) -> str | None:
        """Get the owner token of the current lease, if any."""
        value = await self.client.get(self.lock_key(key))
        if value is None:
            return None
        return value.decode() if isinstance(value, bytes) else value
