"""Cache-aside strategies for single results and lists.

Both strategies follow the same flow:

1. Resolve tags (explicit, else from the tag supplier) and derive the key,
   scoped to the strategy so lists and single rows never share an entry.
   An empty key bypasses the cache: the query runs and nothing else happens.
2. Wait for any in-flight populator of the key, then read the store.
   A hit is returned as-is.
3. On a miss, take the key's lock, re-read (the previous holder may have
   just written it), run the query, and store the result with its TTL.
4. File the key under its tags and return the result.

Query errors propagate unchanged. Cache and lock failures never do: the
store and lock managers report them as values, and tag linking is logged
and ignored.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any, Generic, TypeVar

from cachedqueries.invalidation import CacheInvalidator
from cachedqueries.keys import CacheKeyFactory, scoped_key
from cachedqueries.locks.base import LockManager
from cachedqueries.observability.logging import LogContext
from cachedqueries.options import CachingOptions
from cachedqueries.query import Query, TagSupplier
from cachedqueries.stores.base import CacheStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_CACHE_DURATION = timedelta(hours=8)


class CacheStrategy(Generic[R]):
    """Shared get-or-populate flow.

    Args:
        store: Typed cache store
        lock_manager: Per-key lock manager
        key_factory: Derives cache keys from query and tags
        invalidator: Tag index used to file populated keys
        tag_supplier: Derives tags when a call supplies none
        default_duration: TTL for calls whose options do not set one
    """

    operation = "cache"

    def __init__(
        self,
        store: CacheStore,
        lock_manager: LockManager,
        key_factory: CacheKeyFactory,
        invalidator: CacheInvalidator,
        tag_supplier: TagSupplier | None = None,
        default_duration: timedelta = DEFAULT_CACHE_DURATION,
    ):
        self.store = store
        self.lock_manager = lock_manager
        self.key_factory = key_factory
        self.invalidator = invalidator
        self.tag_supplier = tag_supplier
        self.default_duration = default_duration

    def resolve_tags(self, query: Query[Any], options: CachingOptions) -> tuple[str, ...]:
        if not options.retrieve_tags_from_query:
            return options.tags
        if self.tag_supplier is None:
            return ()
        return tuple(self.tag_supplier.derive_tags(query))

    def cache_key(self, query: Query[Any], options: CachingOptions) -> str:
        return self._key(query, self.resolve_tags(query, options))

    def _key(self, query: Query[Any], tags: tuple[str, ...]) -> str:
        return scoped_key(self.key_factory.get_cache_key(query, tags), self.operation)

    async def _run(
        self,
        query: Query[Any],
        options: CachingOptions | None,
        cancel: asyncio.Event | None,
        load: Callable[[], Awaitable[R]],
        cacheable: Callable[[R], bool],
    ) -> R:
        options = options or CachingOptions()
        tags = self.resolve_tags(query, options)
        key = self._key(query, tags)
        if not key:
            return await load()

        with LogContext(operation=self.operation, cache_key=key):
            await self.lock_manager.check_lock(key, cancel=cancel)
            cached = await self.store.get(key)
            if cached.hit:
                logger.debug("Cache hit")
                return cached.value  # type: ignore[no-any-return]

            async with self.lock_manager.hold(key, cancel=cancel) as acquired:
                if acquired:
                    cached = await self.store.get(key)
                    if cached.hit:
                        logger.debug("Cache populated while waiting for lock")
                        return cached.value  # type: ignore[no-any-return]

                result = await load()
                if not cacheable(result):
                    logger.debug("Empty result not cached")
                    return result

                ttl = options.cache_duration or self.default_duration
                await self.store.set(key, result, ttl)

            await self._link_tags(key, tags)
            return result

    async def _link_tags(self, key: str, tags: tuple[str, ...]) -> None:
        if not tags:
            return
        try:
            await self.invalidator.link_tags(key, tags)
        except Exception as e:
            logger.warning(f"Failed to link tags for {key}: {e}")


class CacheCollectionStrategy(CacheStrategy[list[Any]]):
    """Get-or-populate for list results. Empty lists are cached."""

    operation = "collection"

    async def execute(
        self,
        query: Query[T],
        options: CachingOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> list[T]:
        async def load() -> list[Any]:
            return list(await query.fetch_all())

        return await self._run(query, options, cancel, load, lambda _: True)


class CacheEntryStrategy(CacheStrategy[Any]):
    """Get-or-populate for single results.

    A query that finds nothing returns None without writing the cache or
    linking tags, so a later insert is visible on the next call.
    """

    operation = "entry"

    async def execute(
        self,
        query: Query[T],
        options: CachingOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> T | None:
        return await self._run(query, options, cancel, query.fetch_first, _is_present)


def _is_present(value: Any) -> bool:
    return value is not None
