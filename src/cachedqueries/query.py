"""Query and tag-supplier capabilities consumed by the cache layer.

A query is an opaque, re-executable operation. The cache never looks
inside it beyond asking for a stable identity string, which key factories
may fold into the cache key.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Generic, Protocol, TypeVar, runtime_checkable

T = TypeVar("T")
T_co = TypeVar("T_co", covariant=True)


@runtime_checkable
class Query(Protocol[T_co]):
    """Re-runnable query returning a list or its first row."""

    def identity(self) -> str:
        """Stable textual representation of the query shape and parameters."""
        ...

    async def fetch_all(self) -> Sequence[T_co]:
        """Execute the query and materialize every result."""
        ...

    async def fetch_first(self) -> T_co | None:
        """Execute the query and return the first result, or None."""
        ...


@runtime_checkable
class TagSupplier(Protocol):
    """Derives invalidation tags for a query when the caller gives none."""

    def derive_tags(self, query: Query[Any]) -> Sequence[str]:
        ...


class CallableQuery(Generic[T]):
    """Adapts async callables to the Query protocol.

    Example:
        query = CallableQuery("orders:open", lambda: repo.list_open_orders())
        orders = await manager.to_list(query, CachingOptions.for_tags("Order"))
    """

    def __init__(
        self,
        identity: str,
        fetch_all: Callable[[], Awaitable[Sequence[T]]],
        fetch_first: Callable[[], Awaitable[T | None]] | None = None,
    ):
        self._identity = identity
        self._fetch_all = fetch_all
        self._fetch_first = fetch_first

    def identity(self) -> str:
        return self._identity

    async def fetch_all(self) -> Sequence[T]:
        return await self._fetch_all()

    async def fetch_first(self) -> T | None:
        if self._fetch_first is not None:
            return await self._fetch_first()
        rows = await self._fetch_all()
        return rows[0] if rows else None

    def __repr__(self) -> str:
        return f"CallableQuery({self._identity!r})"


class StaticTagSupplier:
    """Tag supplier that files every query under the same tags."""

    def __init__(self, *tags: str):
        self.tags = tuple(tags)

    def derive_tags(self, query: Query[Any]) -> Sequence[str]:
        return self.tags
