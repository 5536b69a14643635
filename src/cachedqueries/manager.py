"""Cache manager: the context object that wires the cache layer together.

A process builds one CacheManager at startup and either passes it to the
code that needs it or registers it once with ``configure_cache_manager``:

    manager = await CacheManager.from_settings(settings)
    configure_cache_manager(manager)

    orders = await get_cache_manager().to_list(query, CachingOptions.for_tags("Order"))

``reset_cache_manager`` exists for test teardown.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from datetime import timedelta
from typing import Any, TypeVar

from cachedqueries.config import Settings
from cachedqueries.errors import CacheConfigurationError, CacheNotConfiguredError
from cachedqueries.invalidation import (
    CacheInvalidator,
    InvalidationBroadcaster,
    InvalidationMessage,
)
from cachedqueries.keys import CacheKeyFactory, QueryCacheKeyFactory
from cachedqueries.locks.base import LockManager
from cachedqueries.locks.memory import InProcessLockManager, NullLockManager
from cachedqueries.locks.redis import RedisLockManager
from cachedqueries.options import CachingOptions
from cachedqueries.query import Query, TagSupplier
from cachedqueries.serialization import ReferenceCodec
from cachedqueries.stores.base import CacheBackend, CacheStore
from cachedqueries.stores.memory import MemoryBackend
from cachedqueries.stores.redis import RedisBackend, get_redis
from cachedqueries.strategies import (
    DEFAULT_CACHE_DURATION,
    CacheCollectionStrategy,
    CacheEntryStrategy,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

STORE_BACKENDS = ("memory", "redis")
LOCK_BACKENDS = ("memory", "redis", "null")


class CacheManager:
    """Entry point for cached queries and invalidation.

    Args:
        store: Typed cache store (required)
        lock_manager: Defaults to an InProcessLockManager
        key_factory: Defaults to a QueryCacheKeyFactory
        invalidator: Defaults to a CacheInvalidator over ``store``
        tag_supplier: Derives tags for calls that pass none
        default_duration: TTL for calls whose options do not set one
        broadcaster: Relays invalidations to other instances
    """

    def __init__(
        self,
        store: CacheStore,
        lock_manager: LockManager | None = None,
        key_factory: CacheKeyFactory | None = None,
        invalidator: CacheInvalidator | None = None,
        tag_supplier: TagSupplier | None = None,
        default_duration: timedelta = DEFAULT_CACHE_DURATION,
        broadcaster: InvalidationBroadcaster | None = None,
    ):
        if store is None:
            raise CacheConfigurationError("A cache store is required")
        if default_duration is None or default_duration <= timedelta(0):
            raise CacheConfigurationError(
                f"default_duration must be positive, got {default_duration}"
            )

        self.store = store
        self.lock_manager = lock_manager or InProcessLockManager()
        self.key_factory = key_factory or QueryCacheKeyFactory()
        self.invalidator = invalidator or CacheInvalidator(store)
        self.tag_supplier = tag_supplier
        self.default_duration = default_duration
        self.broadcaster = broadcaster

        strategy_args: dict[str, Any] = {
            "store": self.store,
            "lock_manager": self.lock_manager,
            "key_factory": self.key_factory,
            "invalidator": self.invalidator,
            "tag_supplier": self.tag_supplier,
            "default_duration": self.default_duration,
        }
        self.entry_strategy = CacheEntryStrategy(**strategy_args)
        self.collection_strategy = CacheCollectionStrategy(**strategy_args)

        if self.broadcaster is not None:
            self.broadcaster.add_handler(self._apply_remote_invalidation)

    @classmethod
    async def from_settings(
        cls,
        settings: Settings,
        tag_supplier: TagSupplier | None = None,
        key_factory: CacheKeyFactory | None = None,
        codec: ReferenceCodec | None = None,
    ) -> CacheManager:
        """Build a manager from configuration.

        Raises:
            CacheConfigurationError: If a backend name is not supported
        """
        if settings.store_backend not in STORE_BACKENDS:
            raise CacheConfigurationError(
                f"Unsupported store backend: {settings.store_backend}"
            )
        if settings.lock_backend not in LOCK_BACKENDS:
            raise CacheConfigurationError(f"Unsupported lock backend: {settings.lock_backend}")

        needs_redis = (
            settings.store_backend == "redis"
            or settings.lock_backend == "redis"
            or settings.broadcast_invalidations
        )
        client = await get_redis(settings.redis_url) if needs_redis else None

        backend: CacheBackend
        if settings.store_backend == "redis":
            backend = RedisBackend(client)  # type: ignore[arg-type]
        else:
            backend = MemoryBackend()
        store = CacheStore(backend, codec)

        lock_manager: LockManager
        if settings.lock_backend == "redis":
            lock_manager = RedisLockManager(
                client,  # type: ignore[arg-type]
                lock_timeout=settings.lock_timeout,
                poll_interval=settings.lock_poll_interval,
                prefix=settings.lock_prefix,
                instance_id=settings.instance_id,
            )
        elif settings.lock_backend == "null":
            lock_manager = NullLockManager(settings.lock_timeout, settings.lock_poll_interval)
        else:
            lock_manager = InProcessLockManager(settings.lock_timeout, settings.lock_poll_interval)

        broadcaster = None
        if settings.broadcast_invalidations:
            broadcaster = InvalidationBroadcaster(
                client,  # type: ignore[arg-type]
                channel=settings.invalidation_channel,
                instance_id=settings.instance_id,
            )

        logger.info(
            f"Cache manager using {settings.store_backend} store "
            f"and {settings.lock_backend} locks"
        )
        return cls(
            store=store,
            lock_manager=lock_manager,
            key_factory=key_factory,
            invalidator=CacheInvalidator(store, tag_prefix=settings.tag_prefix),
            tag_supplier=tag_supplier,
            default_duration=timedelta(seconds=settings.default_cache_duration),
            broadcaster=broadcaster,
        )

    # -------------------------------------------------------------------------
    # Cached reads
    # -------------------------------------------------------------------------

    async def to_list(
        self,
        query: Query[T],
        options: CachingOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> list[T]:
        """Return the query's rows from cache, populating it on a miss."""
        return await self.collection_strategy.execute(query, options, cancel)

    async def first_or_none(
        self,
        query: Query[T],
        options: CachingOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> T | None:
        """Return the query's first row from cache, populating it on a miss.

        A query with no result is not cached.
        """
        return await self.entry_strategy.execute(query, options, cancel)

    def get_cache_key(
        self, query: Query[Any], tags: Iterable[str] = (), first: bool = False
    ) -> str:
        """Key a call with these tags would use ("" when uncacheable).

        Returns the ``to_list`` key, or the ``first_or_none`` key when
        ``first`` is True.
        """
        options = CachingOptions(tags=tuple(tags))
        strategy = self.entry_strategy if first else self.collection_strategy
        return strategy.cache_key(query, options)

    # -------------------------------------------------------------------------
    # Tag index
    # -------------------------------------------------------------------------

    async def link_tags(self, key: str, tags: Iterable[str]) -> None:
        """File an existing cache key under additional tags."""
        await self.invalidator.link_tags(key, tags)

    async def invalidate(self, tags: Iterable[str]) -> list[str]:
        """Delete every cache entry filed under the tags.

        When a broadcaster is configured the tags are also published so
        other instances drop their copies.

        Returns:
            Keys deleted from this instance's store.
        """
        tags = list(tags)
        deleted = await self.invalidator.invalidate_cache(tags)
        if self.broadcaster is not None:
            try:
                await self.broadcaster.publish(tags, deleted)
            except Exception as e:
                logger.warning(f"Failed to broadcast invalidation of {tags}: {e}")
        return deleted

    async def _apply_remote_invalidation(self, message: InvalidationMessage) -> None:
        await self.invalidator.invalidate_cache(message.tags)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start background listeners (the invalidation broadcaster)."""
        if self.broadcaster is not None:
            await self.broadcaster.start()

    async def close(self) -> None:
        """Stop listeners and release backend resources."""
        if self.broadcaster is not None:
            await self.broadcaster.stop()
        await self.lock_manager.close()
        await self.store.close()

    async def health_check(self) -> bool:
        return await self.store.health_check()


# Process-wide instance
_cache_manager: CacheManager | None = None


def configure_cache_manager(manager: CacheManager) -> None:
    """Register the process-wide cache manager.

    Raises:
        CacheConfigurationError: If ``manager`` is None or one is already set
    """
    global _cache_manager
    if manager is None:
        raise CacheConfigurationError("Cannot configure a None cache manager")
    if _cache_manager is not None:
        raise CacheConfigurationError("Cache manager is already configured")
    _cache_manager = manager


def get_cache_manager() -> CacheManager:
    """Get the process-wide cache manager.

    Raises:
        CacheNotConfiguredError: If ``configure_cache_manager`` was not called
    """
    if _cache_manager is None:
        raise CacheNotConfiguredError()
    return _cache_manager


def is_cache_manager_configured() -> bool:
    return _cache_manager is not None


def reset_cache_manager() -> None:
    """Forget the process-wide cache manager. Intended for test teardown."""
    global _cache_manager
    _cache_manager = None
