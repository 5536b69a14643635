"""cached-queries: tag-indexed cache-aside layer for async queries.

Provides:
- Deterministic cache keys derived from a query's identity and tags
- A tag index so entries can be invalidated by semantic group
- Per-key locks so concurrent misses run the origin query once
- Redis and in-process backends that degrade to a miss on failure
"""

from cachedqueries.errors import (
    CacheConfigurationError,
    CachedQueriesError,
    CacheNotConfiguredError,
)
from cachedqueries.invalidation import CacheInvalidator, InvalidationBroadcaster
from cachedqueries.keys import (
    CacheContextProvider,
    DefaultCacheKeyFactory,
    QueryCacheKeyFactory,
    StaticContextProvider,
)
from cachedqueries.manager import (
    CacheManager,
    configure_cache_manager,
    get_cache_manager,
    reset_cache_manager,
)
from cachedqueries.options import CachingOptions
from cachedqueries.query import CallableQuery, Query, StaticTagSupplier, TagSupplier
from cachedqueries.strategies import CacheCollectionStrategy, CacheEntryStrategy

__version__ = "0.4.0"

__all__ = [
    # Errors
    "CachedQueriesError",
    "CacheConfigurationError",
    "CacheNotConfiguredError",
    # Queries and options
    "CachingOptions",
    "CallableQuery",
    "Query",
    "StaticTagSupplier",
    "TagSupplier",
    # Keys
    "CacheContextProvider",
    "StaticContextProvider",
    "DefaultCacheKeyFactory",
    "QueryCacheKeyFactory",
    # Tag index
    "CacheInvalidator",
    "InvalidationBroadcaster",
    # Strategies and manager
    "CacheCollectionStrategy",
    "CacheEntryStrategy",
    "CacheManager",
    "configure_cache_manager",
    "get_cache_manager",
    "reset_cache_manager",
]
