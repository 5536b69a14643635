"""Per-key lock managers for stampede protection.

- InProcessLockManager: asyncio.Lock per key, single process
- RedisLockManager: SET NX PX leases, shared across processes
- NullLockManager: no locking
"""

from cachedqueries.locks.base import LockManager, wait_or_cancelled
from cachedqueries.locks.memory import InProcessLockManager, NullLockManager
from cachedqueries.locks.redis import RedisLockManager

__all__ = [
    "LockManager",
    "InProcessLockManager",
    "NullLockManager",
    "RedisLockManager",
    "wait_or_cancelled",
]
