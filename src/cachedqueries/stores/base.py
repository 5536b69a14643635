"""Cache store interfaces.

A CacheBackend moves bytes to and from a key-value medium and may raise.
A CacheStore wraps a backend with the codec and turns every failure into
a result value, so callers see a miss or a no-op and never an exception.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from cachedqueries.serialization import ReferenceCodec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreResult:
    """Outcome of a write or delete."""

    ok: bool = True
    error: str | None = None

    @classmethod
    def failed(cls, error: BaseException | str) -> StoreResult:
        return cls(ok=False, error=str(error))


@dataclass(frozen=True)
class CacheResult:
    """Outcome of a read.

    ``hit`` is True only when a value was found and decoded. A failed read
    is reported as a miss with ``error`` set.
    """

    value: Any = None
    hit: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def found(cls, value: Any) -> CacheResult:
        return cls(value=value, hit=True)

    @classmethod
    def miss(cls) -> CacheResult:
        return cls()

    @classmethod
    def failed(cls, error: BaseException | str) -> CacheResult:
        return cls(error=str(error))


class CacheBackend(ABC):
    """Abstract byte-level key-value medium."""

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Return the bytes stored under ``key``, or None if absent or expired."""
        ...

    @abstractmethod
    async def set(self, key: str, data: bytes, ttl: timedelta | None = None) -> None:
        """Store bytes under ``key``.

        Args:
            key: Cache key
            data: Serialized value
            ttl: Absolute time-to-live from now; None stores without expiry
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete ``key``. Deleting an absent key is not an error."""
        ...

    async def ping(self) -> bool:
        """Check connectivity to the medium."""
        return True

    async def close(self) -> None:
        """Release connections held by the backend."""
        return None


class CacheStore:
    """Typed cache operations that never raise.

    Args:
        backend: Byte-level medium
        codec: Serializer for values; defaults to a ReferenceCodec
    """

    def __init__(self, backend: CacheBackend, codec: ReferenceCodec | None = None):
        self.backend = backend
        self.codec = codec or ReferenceCodec()

    async def get(self, key: str) -> CacheResult:
        """Read and decode the value under ``key``."""
        try:
            data = await self.backend.get(key)
            if data is None:
                return CacheResult.miss()
            return CacheResult.found(self.codec.loads(data))
        except Exception as e:
            logger.warning(f"Cache get failed for {key}: {e}")
            return CacheResult.failed(e)

    async def set(self, key: str, value: Any, ttl: timedelta | None = None) -> StoreResult:
        """Encode and write ``value`` under ``key``."""
        try:
            data = self.codec.dumps(value)
            await self.backend.set(key, data, ttl)
            return StoreResult()
        except Exception as e:
            logger.warning(f"Cache set failed for {key}: {e}")
            return StoreResult.failed(e)

    async def delete(self, key: str) -> StoreResult:
        """Remove ``key`` from the medium."""
        try:
            await self.backend.delete(key)
            return StoreResult()
        except Exception as e:
            logger.warning(f"Cache delete failed for {key}: {e}")
            return StoreResult.failed(e)

    async def health_check(self) -> bool:
        """Check backend connectivity."""
        try:
            return await self.backend.ping()
        except Exception:
            return False

    async def close(self) -> None:
        try:
            await self.backend.close()
        except Exception as e:
            logger.warning(f"Failed to close cache backend: {e}")
