"""Tag-based cache invalidation.

The tag index maps each invalidation tag to the cache keys filed under it.
Entries live in the same store as cached values, under a reserved prefix:

    {tag_prefix}{tag} -> ["3F2A...", "9BC1...", ...]

Linking is a read-modify-write of the whole list with no conflict
detection, so two callers linking different keys to the same tag at the
same moment can lose one update. The lost key then lives until its TTL.

For deployments where each process keeps its own in-memory store, the
InvalidationBroadcaster relays invalidated tags over Redis Pub/Sub so every
instance drops its local copies.

Example:
    invalidator = CacheInvalidator(store)
    await invalidator.link_tags(key, ["app.models.Order"])

    # After orders change
    await invalidator.invalidate_cache(["app.models.Order"])
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, cast

import orjson

from cachedqueries.keys import canonical_tags
from cachedqueries.stores.base import CacheStore

if TYPE_CHECKING:
    from redis.asyncio import Redis
    from redis.asyncio.client import PubSub

logger = logging.getLogger(__name__)

TAG_PREFIX = "cachedqueries:tag:"

# Pub/Sub channel name
INVALIDATION_CHANNEL = "cachedqueries:invalidation"


def _as_key_list(value: Any) -> list[str]:
    if not value:
        return []
    return [key for key in value if isinstance(key, str) and key]


class CacheInvalidator:
    """Maintains the tag index and deletes keys by tag.

    Args:
        store: Cache store holding both values and tag entries
        tag_prefix: Reserved prefix for tag entry keys
    """

    def __init__(self, store: CacheStore, tag_prefix: str = TAG_PREFIX):
        self.store = store
        self.tag_prefix = tag_prefix

    def tag_key(self, tag: str) -> str:
        """Key under which the tag's entry is stored."""
        return f"{self.tag_prefix}{tag.strip()}"

    async def link_tags(self, key: str, tags: Iterable[str]) -> None:
        """File ``key`` under every tag.

        Tags are linked concurrently; a failure on one tag is logged and does
        not affect the others. Empty or whitespace-only keys are ignored.
        """
        if not key or not key.strip():
            return

        distinct = canonical_tags(tags)
        if not distinct:
            return

        results = await asyncio.gather(
            *(self._link_tag(key, tag) for tag in distinct),
            return_exceptions=True,
        )
        for tag, result in zip(distinct, results):
            if isinstance(result, BaseException):
                logger.warning(f"Failed to link {key} to tag {tag}: {result}")
            elif not result:
                logger.warning(f"Failed to link {key} to tag {tag}")

    async def _link_tag(self, key: str, tag: str) -> bool:
        tag_key = self.tag_key(tag)
        current = await self.store.get(tag_key)
        if not current.ok:
            # Writing now would replace the unreadable entry with a single key
            return False

        keys = _as_key_list(current.value)
        if key in keys:
            return True
        keys.append(key)

        result = await self.store.set(tag_key, keys, ttl=None)
        return result.ok

    async def invalidate_cache(self, tags: Iterable[str]) -> list[str]:
        """Delete every key filed under the tags, then the tag entries.

        Each key is deleted once even when several tags reference it.
        Tags without an entry are skipped.

        Returns:
            The keys that were deleted (cache keys and tag entry keys).
        """
        distinct = canonical_tags(tags)
        if not distinct:
            return []

        tag_keys = [self.tag_key(tag) for tag in distinct]
        entries = await asyncio.gather(*(self.store.get(tag_key) for tag_key in tag_keys))

        doomed: dict[str, None] = {}
        for tag_key, entry in zip(tag_keys, entries):
            if not entry.hit:
                continue
            for key in _as_key_list(entry.value):
                doomed[key] = None
            doomed[tag_key] = None

        if not doomed:
            return []

        keys = list(doomed)
        results = await asyncio.gather(*(self.store.delete(key) for key in keys))
        failed = [key for key, result in zip(keys, results) if not result.ok]
        if failed:
            logger.warning(f"Failed to delete {len(failed)} of {len(keys)} invalidated keys")

        logger.debug(f"Invalidated tags {distinct}: {len(keys)} keys deleted")
        return keys

    async def get_tag_keys(self, tag: str) -> list[str]:
        """Return the cache keys currently filed under ``tag``."""
        entry = await self.store.get(self.tag_key(tag))
        return _as_key_list(entry.value) if entry.hit else []


# ---------------------------------------------------------------------------
# Cross-instance broadcast
# ---------------------------------------------------------------------------


@dataclass
class InvalidationMessage:
    """Tags invalidated by one instance."""

    tags: list[str]
    origin: str = ""
    keys: list[str] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        """Serialize to JSON bytes."""
        return orjson.dumps({"tags": self.tags, "origin": self.origin, "keys": self.keys})

    @classmethod
    def from_bytes(cls, data: bytes) -> "InvalidationMessage":
        """Deserialize from JSON bytes."""
        parsed = orjson.loads(data)
        return cls(
            tags=list(parsed["tags"]),
            origin=parsed.get("origin", ""),
            keys=list(parsed.get("keys") or []),
        )


# Handler type for invalidation callbacks
InvalidationHandler = Callable[[InvalidationMessage], Awaitable[None]]


class InvalidationBroadcaster:
    """Broadcasts and receives invalidated tags via Redis Pub/Sub.

    When started, it will:
    1. Subscribe to the invalidation channel
    2. Process incoming messages from other instances
    3. Call registered handlers for each message

    Messages published by this instance are ignored on receipt, since the
    publisher has already invalidated locally.
    """

    def __init__(
        self,
        client: Redis,
        channel: str = INVALIDATION_CHANNEL,
        instance_id: str = "",
    ):
        self.client = client
        self.channel = channel
        self.instance_id = instance_id
        self._handlers: list[InvalidationHandler] = []
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._pubsub: PubSub | None = None

    @property
    def running(self) -> bool:
        return self._running

    def add_handler(self, handler: InvalidationHandler) -> None:
        """Register a handler for invalidation messages."""
        self._handlers.append(handler)
        handler_name = getattr(handler, "__name__", handler.__class__.__name__)
        logger.info(f"Registered invalidation handler: {handler_name}")

    async def start(self) -> None:
        """Start listening for invalidation messages."""
        if self._running:
            return

        self._pubsub = self.client.pubsub()
        await self._pubsub.subscribe(self.channel)

        self._running = True
        self._task = asyncio.create_task(self._listen_loop())
        logger.info(f"Started invalidation broadcaster on channel {self.channel}")

    async def stop(self) -> None:
        """Stop listening for invalidation messages."""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._pubsub:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
            self._pubsub = None

        logger.info("Stopped invalidation broadcaster")

    async def _listen_loop(self) -> None:
        """Main loop for receiving invalidation messages."""
        while self._running and self._pubsub:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=1.0,
                )

                if message is None:
                    continue

                if message["type"] == "message":
                    await self._handle_message(message["data"])

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in invalidation listener: {e}")
                await asyncio.sleep(1)

    async def _handle_message(self, data: bytes) -> None:
        """Handle an incoming invalidation message."""
        try:
            msg = InvalidationMessage.from_bytes(data)
        except Exception as e:
            logger.error(f"Failed to parse invalidation message: {e}")
            return

        if self.instance_id and msg.origin == self.instance_id:
            return

        logger.debug(f"Received invalidation of {msg.tags} from {msg.origin or 'unknown'}")
        for handler in self._handlers:
            try:
                await handler(msg)
            except Exception as e:
                logger.error(f"Invalidation handler failed: {e}")

    async def publish(self, tags: Iterable[str], keys: Iterable[str] = ()) -> int:
        """Publish invalidated tags to all instances.

        Returns the number of subscribers that received the message.
        """
        message = InvalidationMessage(
            tags=canonical_tags(tags),
            origin=self.instance_id,
            keys=list(keys),
        )
        count = cast(int, await self.client.publish(self.channel, message.to_bytes()))
        logger.debug(f"Published invalidation of {message.tags} to {count} subscribers")
        return count
