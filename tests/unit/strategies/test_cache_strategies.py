"""Tests for the cache-aside strategies."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest

from cachedqueries.invalidation import CacheInvalidator
from cachedqueries.keys import DefaultCacheKeyFactory
from cachedqueries.locks.base import LockManager
from cachedqueries.locks.memory import InProcessLockManager
from cachedqueries.manager import CacheManager
from cachedqueries.options import CachingOptions
from cachedqueries.query import StaticTagSupplier
from cachedqueries.stores.base import CacheBackend, CacheStore
from cachedqueries.strategies import CacheCollectionStrategy, CacheEntryStrategy
from tests.conftest import FakeClock

ORDERS = CachingOptions.for_tags("Order")


@dataclass
class Order:
    id: int
    status: str = "open"


class CountingQuery:
    """Query over a mutable row list that counts executions."""

    def __init__(
        self,
        rows: list[Any] | None = None,
        identity: str = "orders:open",
        delay: float = 0.0,
        error: Exception | None = None,
    ):
        self.rows = rows if rows is not None else []
        self._identity = identity
        self.delay = delay
        self.error = error
        self.calls = 0

    def identity(self) -> str:
        return self._identity

    async def fetch_all(self) -> Sequence[Any]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.rows)

    async def fetch_first(self) -> Any | None:
        rows = await self.fetch_all()
        return rows[0] if rows else None


class TestCollectionStrategy:
    """Test cached list reads."""

    async def test_miss_then_hit(self, manager: CacheManager) -> None:
        """The second call is served from cache."""
        query = CountingQuery([Order(1), Order(2)])

        first = await manager.to_list(query, ORDERS)
        second = await manager.to_list(query, ORDERS)

        assert first == second == [Order(1), Order(2)]
        assert query.calls == 1

    async def test_empty_list_is_cached(self, manager: CacheManager) -> None:
        """Empty results are stored like any other list."""
        query = CountingQuery([])

        assert await manager.to_list(query, ORDERS) == []
        assert await manager.to_list(query, ORDERS) == []
        assert query.calls == 1

    async def test_key_filed_under_tags(self, manager: CacheManager) -> None:
        """Populated keys are linked to their tags."""
        query = CountingQuery([Order(1)])

        await manager.to_list(query, CachingOptions.for_tags("Order", "Customer"))

        key = manager.get_cache_key(query, ["Order", "Customer"])
        assert await manager.invalidator.get_tag_keys("Order") == [key]
        assert await manager.invalidator.get_tag_keys("Customer") == [key]

    async def test_invalidation_makes_change_visible(self, manager: CacheManager) -> None:
        """Rows added after caching appear once the tag is invalidated."""
        query = CountingQuery([Order(1)])

        assert len(await manager.to_list(query, ORDERS)) == 1
        query.rows.append(Order(2))
        assert len(await manager.to_list(query, ORDERS)) == 1

        await manager.invalidate(["Order"])

        assert len(await manager.to_list(query, ORDERS)) == 2
        assert query.calls == 2

    async def test_different_queries_do_not_collide(self, manager: CacheManager) -> None:
        """Queries with different identities get separate entries."""
        open_orders = CountingQuery([Order(1)], identity="orders:open")
        closed_orders = CountingQuery([Order(2, "closed")], identity="orders:closed")

        assert await manager.to_list(open_orders, ORDERS) == [Order(1)]
        assert await manager.to_list(closed_orders, ORDERS) == [Order(2, "closed")]

    async def test_cached_rows_are_copies(self, manager: CacheManager) -> None:
        """Mutating returned rows does not affect the cache."""
        query = CountingQuery([Order(1)])

        rows = await manager.to_list(query, ORDERS)
        rows[0].status = "mutated"

        assert (await manager.to_list(query, ORDERS))[0].status == "open"

    async def test_tag_supplier_used_without_explicit_tags(
        self, memory_store: CacheStore, lock_manager: InProcessLockManager
    ) -> None:
        """Tags come from the supplier when options carry none."""
        manager = CacheManager(
            store=memory_store,
            lock_manager=lock_manager,
            tag_supplier=StaticTagSupplier("Order"),
        )
        query = CountingQuery([Order(1)])

        await manager.to_list(query)

        assert await manager.invalidator.get_tag_keys("Order") == [manager.get_cache_key(query)]

    async def test_explicit_tags_override_supplier(
        self, memory_store: CacheStore, lock_manager: InProcessLockManager
    ) -> None:
        """Explicit tags win over derived ones."""
        manager = CacheManager(
            store=memory_store,
            lock_manager=lock_manager,
            tag_supplier=StaticTagSupplier("Derived"),
        )

        await manager.to_list(CountingQuery([Order(1)]), CachingOptions.for_tags("Explicit"))

        assert await manager.invalidator.get_tag_keys("Derived") == []
        assert len(await manager.invalidator.get_tag_keys("Explicit")) == 1


class TestEntryStrategy:
    """Test cached single-result reads."""

    async def test_miss_then_hit(self, manager: CacheManager) -> None:
        query = CountingQuery([Order(1)])

        assert await manager.first_or_none(query, ORDERS) == Order(1)
        assert await manager.first_or_none(query, ORDERS) == Order(1)
        assert query.calls == 1

    async def test_none_is_not_cached(self, manager: CacheManager) -> None:
        """A missing row is looked up again on the next call."""
        query = CountingQuery([])

        assert await manager.first_or_none(query, ORDERS) is None
        assert await manager.invalidator.get_tag_keys("Order") == []

        query.rows.append(Order(1))
        assert await manager.first_or_none(query, ORDERS) == Order(1)
        assert query.calls == 2

    async def test_none_writes_nothing(self, lock_manager: InProcessLockManager) -> None:
        """A missing row is neither stored nor linked."""
        backend = AsyncMock(spec=CacheBackend)
        backend.get.return_value = None
        invalidator = AsyncMock(spec=CacheInvalidator)
        manager = CacheManager(
            store=CacheStore(backend), lock_manager=lock_manager, invalidator=invalidator
        )

        assert await manager.first_or_none(CountingQuery([]), ORDERS) is None

        backend.get.assert_awaited()
        backend.set.assert_not_awaited()
        invalidator.link_tags.assert_not_awaited()

    async def test_concurrent_misses_run_query_once(self, manager: CacheManager) -> None:
        """Callers that miss together share a single execution."""
        query = CountingQuery([Order(1)], delay=0.05)

        results = await asyncio.gather(
            *(manager.first_or_none(query, ORDERS) for _ in range(5))
        )

        assert results == [Order(1)] * 5
        assert query.calls == 1

    async def test_concurrent_list_misses_run_query_once(self, manager: CacheManager) -> None:
        query = CountingQuery([Order(1)], delay=0.05)

        results = await asyncio.gather(*(manager.to_list(query, ORDERS) for _ in range(5)))

        assert all(rows == [Order(1)] for rows in results)
        assert query.calls == 1


class TestResultShapes:
    """Test lists and single rows of the same query."""

    async def test_list_then_first(self, manager: CacheManager) -> None:
        """A cached list is not returned as a single row."""
        query = CountingQuery([Order(1), Order(2)])

        assert await manager.to_list(query, ORDERS) == [Order(1), Order(2)]
        assert await manager.first_or_none(query, ORDERS) == Order(1)
        assert query.calls == 2

    async def test_first_then_list(self, manager: CacheManager) -> None:
        """A cached row is not returned as a list."""
        query = CountingQuery([Order(1), Order(2)])

        assert await manager.first_or_none(query, ORDERS) == Order(1)
        assert await manager.to_list(query, ORDERS) == [Order(1), Order(2)]
        assert query.calls == 2

    async def test_both_shapes_served_from_cache(self, manager: CacheManager) -> None:
        query = CountingQuery([Order(1), Order(2)])
        await manager.to_list(query, ORDERS)
        await manager.first_or_none(query, ORDERS)

        assert await manager.to_list(query, ORDERS) == [Order(1), Order(2)]
        assert await manager.first_or_none(query, ORDERS) == Order(1)
        assert query.calls == 2

    async def test_tag_invalidates_both_shapes(self, manager: CacheManager) -> None:
        """Both entries are filed under the tag and dropped together."""
        query = CountingQuery([Order(1)])
        await manager.to_list(query, ORDERS)
        await manager.first_or_none(query, ORDERS)

        assert sorted(await manager.invalidator.get_tag_keys("Order")) == sorted(
            [
                manager.get_cache_key(query, ["Order"]),
                manager.get_cache_key(query, ["Order"], first=True),
            ]
        )

        await manager.invalidate(["Order"])

        assert not (await manager.store.get(manager.get_cache_key(query, ["Order"]))).hit
        assert not (
            await manager.store.get(manager.get_cache_key(query, ["Order"], first=True))
        ).hit


class TestExpiry:
    """Test TTL handling."""

    async def test_explicit_duration(self, manager: CacheManager, clock: FakeClock) -> None:
        """Entries expire after the call's cache duration."""
        query = CountingQuery([Order(1)])
        options = CachingOptions.for_tags("Order", cache_duration=timedelta(seconds=10))

        await manager.to_list(query, options)
        clock.advance(9)
        await manager.to_list(query, options)
        assert query.calls == 1

        clock.advance(2)
        await manager.to_list(query, options)
        assert query.calls == 2

    async def test_default_duration(self, manager: CacheManager, clock: FakeClock) -> None:
        """Calls without a duration use the eight hour default."""
        query = CountingQuery([Order(1)])

        await manager.to_list(query, ORDERS)
        clock.advance(timedelta(hours=8).total_seconds() - 1)
        await manager.to_list(query, ORDERS)
        assert query.calls == 1

        clock.advance(2)
        await manager.to_list(query, ORDERS)
        assert query.calls == 2


class TestFailures:
    """Test behaviour when the query or the cache misbehaves."""

    async def test_query_error_propagates_and_releases_lock(
        self, manager: CacheManager, lock_manager: InProcessLockManager
    ) -> None:
        """Query exceptions reach the caller and leave no lock behind."""
        query = CountingQuery(error=RuntimeError("database down"))
        key = manager.get_cache_key(query, ["Order"])

        with pytest.raises(RuntimeError, match="database down"):
            await manager.to_list(query, ORDERS)

        assert not lock_manager.is_locked(key)
        assert not (await manager.store.get(key)).hit

        query.error = None
        assert await manager.to_list(query, ORDERS) == []

    async def test_store_down_passes_through(self, lock_manager: InProcessLockManager) -> None:
        """An unreachable store degrades to running the query every time."""
        backend = AsyncMock(spec=CacheBackend)
        backend.get.side_effect = ConnectionError("down")
        backend.set.side_effect = ConnectionError("down")
        manager = CacheManager(store=CacheStore(backend), lock_manager=lock_manager)
        query = CountingQuery([Order(1)])

        assert await manager.to_list(query, ORDERS) == [Order(1)]
        assert await manager.to_list(query, ORDERS) == [Order(1)]
        assert query.calls == 2

    async def test_link_failure_does_not_fail_read(
        self, memory_store: CacheStore, lock_manager: InProcessLockManager
    ) -> None:
        """Tag linking errors are logged and the result still returned."""
        invalidator = AsyncMock(spec=CacheInvalidator)
        invalidator.link_tags.side_effect = RuntimeError("index unavailable")
        manager = CacheManager(
            store=memory_store, lock_manager=lock_manager, invalidator=invalidator
        )
        query = CountingQuery([Order(1)])

        assert await manager.to_list(query, ORDERS) == [Order(1)]
        assert await manager.to_list(query, ORDERS) == [Order(1)]
        assert query.calls == 1

    async def test_lock_timeout_still_answers(self, memory_store: CacheStore) -> None:
        """A caller that cannot take the lock runs the query itself."""
        locks = InProcessLockManager(lock_timeout=0.02, poll_interval=0.005)
        manager = CacheManager(store=memory_store, lock_manager=locks)
        query = CountingQuery([Order(1)])
        key = manager.get_cache_key(query, ["Order"])

        await locks.lock(key)
        assert await manager.to_list(query, ORDERS) == [Order(1)]
        assert query.calls == 1

    async def test_cancel_stops_waiting(
        self, manager: CacheManager, lock_manager: InProcessLockManager
    ) -> None:
        """A cancelled caller stops waiting for a held lock and runs the query."""
        query = CountingQuery([Order(1)])
        key = manager.get_cache_key(query, ["Order"])
        await lock_manager.lock(key)
        cancel = asyncio.Event()
        cancel.set()

        result = await asyncio.wait_for(manager.to_list(query, ORDERS, cancel), timeout=0.5)

        assert result == [Order(1)]
        assert lock_manager.is_locked(key)


class TestBypass:
    """Test requests that produce no cache key."""

    async def test_empty_key_runs_query_directly(self) -> None:
        """Without a key nothing but the query is touched."""
        store = AsyncMock(spec=CacheStore)
        locks = AsyncMock(spec=LockManager)
        invalidator = AsyncMock(spec=CacheInvalidator)
        strategy = CacheCollectionStrategy(
            store=store,
            lock_manager=locks,
            key_factory=DefaultCacheKeyFactory(),
            invalidator=invalidator,
        )
        query = CountingQuery([Order(1)])

        assert await strategy.execute(query) == [Order(1)]
        assert await strategy.execute(query) == [Order(1)]

        assert query.calls == 2
        store.get.assert_not_awaited()
        store.set.assert_not_awaited()
        locks.check_lock.assert_not_awaited()
        locks.lock.assert_not_awaited()
        store.delete.assert_not_awaited()
        invalidator.link_tags.assert_not_awaited()

    async def test_entry_bypass(self) -> None:
        store = AsyncMock(spec=CacheStore)
        strategy = CacheEntryStrategy(
            store=store,
            lock_manager=AsyncMock(spec=LockManager),
            key_factory=DefaultCacheKeyFactory(),
            invalidator=AsyncMock(spec=CacheInvalidator),
        )

        assert await strategy.execute(CountingQuery([Order(1)])) == Order(1)
        store.get.assert_not_awaited()
        store.set.assert_not_awaited()
