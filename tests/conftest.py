"""Global pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from cachedqueries.invalidation import CacheInvalidator
from cachedqueries.locks.memory import InProcessLockManager
from cachedqueries.manager import CacheManager, reset_cache_manager
from cachedqueries.stores.base import CacheStore
from cachedqueries.stores.memory import MemoryBackend


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: tests that need Docker-backed services")


@pytest.fixture(autouse=True)
def _reset_global_manager() -> Iterator[None]:
    """Every test starts without a process-wide cache manager."""
    yield
    reset_cache_manager()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_backend(clock: FakeClock) -> MemoryBackend:
    return MemoryBackend(clock=clock)


@pytest.fixture
def memory_store(memory_backend: MemoryBackend) -> CacheStore:
    return CacheStore(memory_backend)


@pytest.fixture
def lock_manager() -> InProcessLockManager:
    return InProcessLockManager(lock_timeout=1.0, poll_interval=0.01)


@pytest.fixture
def invalidator(memory_store: CacheStore) -> CacheInvalidator:
    return CacheInvalidator(memory_store, tag_prefix="test:tag:")


@pytest.fixture
def manager(
    memory_store: CacheStore,
    lock_manager: InProcessLockManager,
    invalidator: CacheInvalidator,
) -> CacheManager:
    """Manager over an in-memory store with fast in-process locks."""
    return CacheManager(store=memory_store, lock_manager=lock_manager, invalidator=invalidator)
