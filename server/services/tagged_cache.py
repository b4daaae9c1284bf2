"""Tag-based invalidation on top of ``Cache``.

Key schema:
    <key>              -> JSON value (via Cache)
    cache:tags:<tag>   -> SET {keys written with that tag}

A tag set must outlive every entry registered under it, so each tagged
write gives the set a TTL if it has none and otherwise only ever extends
it (EXPIRE NX, then EXPIRE GT). Both are single atomic commands, so two
concurrent writers can't shorten each other's window. Servers older than
Redis 7 lack those flags (checked at startup); there the TTL is read and
extended in two steps. A tag set may still name keys that already
expired; deleting those is a no-op.

Invalidation and a concurrent tagged write to the same tag are unordered:
a key added after ``invalidate_tag`` read the set survives. Cached views
are not safety-critical, so that window is accepted rather than locked.
"""

import asyncio
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Set, Tuple

from constants import tag_key
from core.exceptions import InvalidTTLError
from core.failopen import fail_open
from core.logging import get_logger, log_cache_operation
from services.cache import Cache, require_key, require_ttl

logger = get_logger(__name__)

DELETE_BATCH = 500


class TaggedCache:
    """Cache writes grouped under named tags for bulk invalidation."""

    def __init__(self, cache: Cache):
        self.cache = cache
        self.store = cache.store
        self._background: Set[asyncio.Task] = set()

    async def get(self, key: str) -> Optional[Any]:
        return await self.cache.get(key)

    @staticmethod
    def _validate(key: str, ttl: int, tags: Iterable[str]) -> List[str]:
        require_key(key)
        if ttl is None:
            raise InvalidTTLError(ttl)
        require_ttl(ttl)
        if isinstance(tags, str):
            tags = [tags]
        return [require_key(tag, "tag") for tag in tags]

    @fail_open(False)
    async def set_with_tags(self, key: str, value: Any, ttl: int,
                            tags: Iterable[str] = ()) -> bool:
        """Register ``key`` under every tag, then write the value.

        Memberships go first so a value never exists outside its tag sets:
        if registration fails the value is not written, and a registered
        key whose value write failed is a no-op on invalidation.

        Returns True only once the key is a member of every named tag set
        and the value is stored.
        """
        tags = self._validate(key, ttl, tags)

        for tag in tags:
            tag_set = tag_key(tag)
            await self.store.sadd(tag_set, key)
            await self._extend_ttl(tag_set, ttl)

        if not await self.cache.set(key, value, ttl):
            return False

        log_cache_operation(logger, "set_with_tags", key, ttl=ttl, tags=tags)
        return True

    async def _extend_ttl(self, tag_set: str, ttl: int) -> None:
        if getattr(self.store, "expire_flags_available", True):
            if not await self.store.expire(tag_set, ttl, nx=True):
                await self.store.expire(tag_set, ttl, gt=True)
            return
        # Servers without EXPIRE NX/GT: read then extend. Not atomic, so a
        # concurrent writer may briefly shorten the window it just grew.
        current = await self.store.ttl(tag_set)
        if current == -1 or 0 <= current < ttl:
            await self.store.expire(tag_set, ttl)

    @fail_open(0)
    async def invalidate_tag(self, tag: str) -> int:
        """Delete every key registered under ``tag``, then the tag set itself.

        Returns:
            Number of cached entries actually deleted
        """
        require_key(tag, "tag")
        tag_set = tag_key(tag)
        members = sorted(await self.store.smembers(tag_set))
        if not members:
            return 0

        deleted = 0
        for start in range(0, len(members), DELETE_BATCH):
            deleted += await self.store.delete(*members[start:start + DELETE_BATCH])
        await self.store.delete(tag_set)

        logger.info("Tag invalidated", tag=tag, keys=len(members), deleted=deleted)
        return deleted

    async def invalidate_tags(self, *tags: str) -> int:
        """Invalidate several tags; returns the total deleted."""
        total = 0
        for tag in tags:
            total += await self.invalidate_tag(tag)
        return total

    @fail_open(default_factory=list)
    async def tag_members(self, tag: str) -> List[str]:
        """Keys currently registered under ``tag``."""
        require_key(tag, "tag")
        return sorted(await self.store.smembers(tag_key(tag)))

    async def get_cached_or_fetch(self, key: str, fetch: Callable[[], Awaitable[Any]],
                                  ttl: int = 300, tags: Iterable[str] = ()) -> Tuple[Any, bool]:
        """Read-through helper returning ``(data, from_cache)``.

        On a hit the cached value is returned immediately and a refresh runs
        in the background (failures are logged). On a miss the fetch is
        awaited and its result written through with the given tags; fetch
        errors propagate since the fetch is the caller's primary work.
        """
        tags = self._validate(key, ttl, tags)
        cached = await self.cache.get(key)
        if cached is not None:
            task = asyncio.create_task(self._refresh(key, fetch, ttl, tags))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            return cached, True

        fresh = await fetch()
        await self.set_with_tags(key, fresh, ttl, tags)
        return fresh, False

    async def _refresh(self, key: str, fetch: Callable[[], Awaitable[Any]],
                       ttl: int, tags: List[str]) -> None:
        try:
            fresh = await fetch()
        except Exception as e:
            logger.warning("Background cache refresh failed", cache_key=key, error=str(e))
            return
        await self.set_with_tags(key, fresh, ttl, tags)

    async def drain(self) -> None:
        """Wait for pending background refreshes (used on shutdown)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
