"""Exception types for cached-queries.

Only programmer errors surface as exceptions. Backing-store failures,
lock timeouts and uncacheable keys are reported as values (see
``cachedqueries.stores.base.CacheResult``) and never reach the caller.
"""

from __future__ import annotations


class CachedQueriesError(Exception):
    """Base class for cached-queries errors."""


class CacheConfigurationError(CachedQueriesError, ValueError):
    """Raised when the cache is wired with invalid options."""


class CacheNotConfiguredError(CachedQueriesError, RuntimeError):
    """Raised when the process-wide cache manager is used before it is set."""

    def __init__(self, message: str = "Cache manager is not configured") -> None:
        super().__init__(message)
