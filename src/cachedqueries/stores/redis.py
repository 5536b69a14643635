"""Redis cache backend.

Stores serialized values as raw bytes with millisecond TTLs.
Uses redis-py async client for connection pooling.
"""

from __future__ import annotations

from collections.abc import Awaitable
from datetime import timedelta
from typing import TYPE_CHECKING, cast

import redis.asyncio as redis

from cachedqueries.config import settings
from cachedqueries.stores.base import CacheBackend

if TYPE_CHECKING:
    from redis.asyncio import Redis

# Module-level connection pool
_redis_client: Redis | None = None


async def get_redis(url: str | None = None) -> Redis:
    """Get or create the shared Redis client.

    Uses connection pooling for efficient connection management.
    """
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(  # type: ignore[no-untyped-call]
            url or settings.redis_url,
            encoding="utf-8",
            decode_responses=False,  # We're storing bytes
        )
    return _redis_client


async def close_redis() -> None:
    """Close Redis connections."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


def ttl_milliseconds(ttl: timedelta) -> int:
    """Convert a TTL to whole milliseconds, never below 1."""
    return max(1, int(ttl.total_seconds() * 1000))


class RedisBackend(CacheBackend):
    """Cache medium on a Redis server.

    Args:
        client: redis.asyncio client created with ``decode_responses=False``
        owns_client: Close the client when the backend is closed
    """

    def __init__(self, client: Redis, owns_client: bool = False):
        self.client = client
        self.owns_client = owns_client

    async def get(self, key: str) -> bytes | None:
        return cast(bytes | None, await self.client.get(key))

    async def set(self, key: str, data: bytes, ttl: timedelta | None = None) -> None:
        if ttl is None:
            await self.client.set(key, data)
        else:
            await self.client.set(key, data, px=ttl_milliseconds(ttl))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def ping(self) -> bool:
        """Check Redis connectivity."""
        try:
            await cast(Awaitable[bool], self.client.ping())
            return True
        except Exception:
            return False

    async def close(self) -> None:
        if self.owns_client:
            await self.client.aclose()
