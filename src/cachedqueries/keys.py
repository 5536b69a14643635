"""Cache key derivation.

Key format: uppercase hex SHA-256 of these segments joined by newlines
    {context_key}
    {identity}
    {tag_1}_{tag_2}_..._{tag_n}

Where:
- context_key: partition string from a CacheContextProvider ("" by default)
- identity: query identity (QueryCacheKeyFactory only)
- tags: stripped, deduplicated and sorted invalidation tags

An empty string is never a valid key. Factories return "" to mean
"do not cache this request".

Strategies hash the factory key once more with their result shape
("entry" or "collection") via scoped_key, so a single row and the full
list of the same query are cached under different keys.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from typing import Any, Protocol

from cachedqueries.query import Query

TAG_SEPARATOR = "_"
SEGMENT_SEPARATOR = "\n"


class CacheContextProvider:
    """Supplies a partition string folded into every cache key.

    Subclass to separate tenants or schemas that share one backing store.
    """

    def get_context_key(self) -> str:
        return ""


class StaticContextProvider(CacheContextProvider):
    """Context provider returning a fixed partition string."""

    def __init__(self, context_key: str):
        self.context_key = context_key

    def get_context_key(self) -> str:
        return self.context_key


class CacheKeyFactory(Protocol):
    def get_cache_key(self, query: Query[Any] | None, tags: Iterable[str]) -> str:
        ...


def canonical_tags(tags: Iterable[str]) -> list[str]:
    """Strip, drop blanks, deduplicate and sort tags."""
    return sorted({tag.strip() for tag in tags if tag and tag.strip()})


def hash_key(*segments: str) -> str:
    """SHA-256 of the newline-joined segments as uppercase hex."""
    text = SEGMENT_SEPARATOR.join(segments)
    return hashlib.sha256(text.encode("utf-8")).hexdigest().upper()


def scoped_key(key: str, scope: str) -> str:
    """Derive a per-scope key so differently shaped results never share an entry.

    The empty key stays empty.
    """
    if not key:
        return ""
    return hash_key(key, scope)


class DefaultCacheKeyFactory:
    """Tag-only key factory.

    Every query filed under the same tag set shares one key, so callers
    that need per-query entries should use QueryCacheKeyFactory.
    """

    def __init__(self, context_provider: CacheContextProvider | None = None):
        self.context_provider = context_provider or CacheContextProvider()

    def get_cache_key(self, query: Query[Any] | None, tags: Iterable[str]) -> str:
        normalized = canonical_tags(tags)
        if not normalized:
            return ""
        context_key = self.context_provider.get_context_key()
        return hash_key(context_key, TAG_SEPARATOR.join(normalized))


class QueryCacheKeyFactory(DefaultCacheKeyFactory):
    """Key factory that folds the query identity into the hash.

    Differently shaped queries over the same tags get different keys.
    Untagged queries are still cacheable; their entries expire by TTL only.
    """

    def get_cache_key(self, query: Query[Any] | None, tags: Iterable[str]) -> str:
        if query is None:
            return ""
        identity = self.query_identity(query)
        if not identity:
            return ""
        context_key = self.context_provider.get_context_key()
        return hash_key(context_key, identity, TAG_SEPARATOR.join(canonical_tags(tags)))

    def query_identity(self, query: Query[Any]) -> str:
        return query.identity()
