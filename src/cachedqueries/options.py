"""Per-call caching options."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import timedelta

from cachedqueries.errors import CacheConfigurationError


@dataclass(frozen=True)
class CachingOptions:
    """Options attached to a single cache-aside call.

    Attributes:
        tags: Invalidation tags the result is filed under. Empty means the
            tags are derived by the configured tag supplier, if any.
        cache_duration: Absolute TTL applied when the result is stored.
            None uses the manager's default duration.
    """

    tags: tuple[str, ...] = field(default_factory=tuple)
    cache_duration: timedelta | None = None

    def __post_init__(self) -> None:
        if isinstance(self.tags, str):
            raise CacheConfigurationError("tags must be a collection of strings, not a string")
        object.__setattr__(self, "tags", tuple(self.tags))
        if self.cache_duration is not None and self.cache_duration <= timedelta(0):
            raise CacheConfigurationError(
                f"cache_duration must be positive, got {self.cache_duration}"
            )

    @property
    def retrieve_tags_from_query(self) -> bool:
        """True when tags should come from the tag supplier."""
        return not self.tags

    def with_tags(self, tags: Iterable[str]) -> CachingOptions:
        """Return a copy filed under ``tags``."""
        return replace(self, tags=tuple(tags))

    @classmethod
    def for_tags(cls, *tags: str, cache_duration: timedelta | None = None) -> CachingOptions:
        """Shorthand for ``CachingOptions(tags=(...), cache_duration=...)``."""
        return cls(tags=tags, cache_duration=cache_duration)
