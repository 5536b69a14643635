"""Cache stores.

- CacheBackend: byte-level medium (in-process dict or Redis)
- CacheStore: typed get/set/delete that degrades every failure to a miss
"""

from cachedqueries.stores.base import CacheBackend, CacheResult, CacheStore, StoreResult
from cachedqueries.stores.memory import MemoryBackend
from cachedqueries.stores.redis import RedisBackend, close_redis, get_redis

__all__ = [
    "CacheBackend",
    "CacheResult",
    "CacheStore",
    "StoreResult",
    "MemoryBackend",
    "RedisBackend",
    "get_redis",
    "close_redis",
]
