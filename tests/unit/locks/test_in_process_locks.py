"""Tests for in-process lock managers."""

from __future__ import annotations

import asyncio

import pytest

from cachedqueries.locks.base import wait_or_cancelled
from cachedqueries.locks.memory import InProcessLockManager, NullLockManager


class TestWaitOrCancelled:
    """Test the cancellable sleep helper."""

    async def test_elapses_without_event(self) -> None:
        assert await wait_or_cancelled(0.01) is False

    async def test_elapses_when_not_set(self) -> None:
        assert await wait_or_cancelled(0.01, asyncio.Event()) is False

    async def test_already_cancelled(self) -> None:
        """A set event returns immediately."""
        cancel = asyncio.Event()
        cancel.set()
        assert await wait_or_cancelled(10.0, cancel) is True

    async def test_cancelled_during_wait(self) -> None:
        """Setting the event cuts the sleep short."""
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.02, cancel.set)
        assert await asyncio.wait_for(wait_or_cancelled(10.0, cancel), timeout=1.0) is True


class TestInProcessLockManager:
    """Test per-key asyncio locks."""

    @pytest.fixture
    def locks(self) -> InProcessLockManager:
        return InProcessLockManager(lock_timeout=1.0, poll_interval=0.01)

    async def test_acquire_free_lock(self, locks: InProcessLockManager) -> None:
        """An unheld key is acquired immediately."""
        assert await locks.lock("k") is True
        assert locks.is_locked("k")

    async def test_keys_are_independent(self, locks: InProcessLockManager) -> None:
        """Holding one key does not block another."""
        assert await locks.lock("a")
        assert await locks.lock("b", timeout=0.01)

    async def test_contended_lock_times_out(self, locks: InProcessLockManager) -> None:
        """A second caller gives up after the timeout."""
        await locks.lock("k")
        assert await locks.lock("k", timeout=0.05) is False
        assert locks.is_locked("k")

    async def test_waiter_acquires_after_release(self, locks: InProcessLockManager) -> None:
        """A waiting caller gets the lock once the holder releases."""
        await locks.lock("k")
        waiter = asyncio.create_task(locks.lock("k", timeout=1.0))
        await asyncio.sleep(0.02)
        assert not waiter.done()

        await locks.release("k")
        assert await asyncio.wait_for(waiter, timeout=1.0) is True
        assert locks.is_locked("k")

    async def test_cancel_aborts_wait(self, locks: InProcessLockManager) -> None:
        """Setting the cancel event makes a waiter give up."""
        await locks.lock("k")
        cancel = asyncio.Event()
        waiter = asyncio.create_task(locks.lock("k", timeout=10.0, cancel=cancel))
        await asyncio.sleep(0.02)
        cancel.set()
        assert await asyncio.wait_for(waiter, timeout=1.0) is False

    async def test_precancelled_lock_not_taken(self, locks: InProcessLockManager) -> None:
        """A cancelled caller never takes even a free lock."""
        cancel = asyncio.Event()
        cancel.set()
        assert await locks.lock("k", cancel=cancel) is False
        assert not locks.is_locked("k")

    async def test_release_drops_idle_lock(self, locks: InProcessLockManager) -> None:
        """Released locks with no waiters are forgotten."""
        await locks.lock("k")
        await locks.release("k")
        assert not locks.is_locked("k")
        assert "k" not in locks._locks

    async def test_release_unheld_is_noop(self, locks: InProcessLockManager) -> None:
        """Releasing a lock nobody holds does not raise."""
        await locks.release("never-locked")

    async def test_hold_releases_on_exception(self, locks: InProcessLockManager) -> None:
        """The lock is released when the block raises."""
        with pytest.raises(RuntimeError):
            async with locks.hold("k") as acquired:
                assert acquired
                raise RuntimeError("query failed")
        assert not locks.is_locked("k")

    async def test_hold_not_acquired(self, locks: InProcessLockManager) -> None:
        """A timed-out hold yields False and does not release the holder's lock."""
        await locks.lock("k")
        async with locks.hold("k", timeout=0.02) as acquired:
            assert acquired is False
        assert locks.is_locked("k")

    async def test_check_lock_unlocked_returns(self, locks: InProcessLockManager) -> None:
        """Checking an unheld key returns at once."""
        await asyncio.wait_for(locks.check_lock("k"), timeout=0.1)

    async def test_check_lock_waits_for_release(self, locks: InProcessLockManager) -> None:
        """Check returns once the holder releases."""
        await locks.lock("k")
        checker = asyncio.create_task(locks.check_lock("k", timeout=5.0))
        await asyncio.sleep(0.03)
        assert not checker.done()

        await locks.release("k")
        await asyncio.wait_for(checker, timeout=1.0)
        assert not locks.is_locked("k")

    async def test_check_lock_times_out(self, locks: InProcessLockManager) -> None:
        """Check returns after the timeout even if the lock is still held."""
        await locks.lock("k")
        await asyncio.wait_for(locks.check_lock("k", timeout=0.05), timeout=1.0)
        assert locks.is_locked("k")

    async def test_check_lock_cancelled(self, locks: InProcessLockManager) -> None:
        """Check returns when the cancel event is set."""
        await locks.lock("k")
        cancel = asyncio.Event()
        checker = asyncio.create_task(locks.check_lock("k", timeout=10.0, cancel=cancel))
        await asyncio.sleep(0.02)
        cancel.set()
        await asyncio.wait_for(checker, timeout=1.0)


class TestNullLockManager:
    """Test the no-op lock manager."""

    async def test_always_acquires(self) -> None:
        """Every caller acquires, even for the same key."""
        locks = NullLockManager()
        assert await locks.lock("k")
        assert await locks.lock("k")
        await locks.release("k")
        await locks.check_lock("k")
