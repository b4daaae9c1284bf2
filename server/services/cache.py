"""JSON cache over the shared key-value store.

Every operation is best-effort: on a transport failure it returns the same
result as a miss (``None`` / ``False`` / ``0`` / ``-1``) and logs, so a
caller can always fall through to the uncached path.
"""

import json
from typing import Any, Optional

from core.exceptions import CacheKeyError, InvalidTTLError
from core.failopen import fail_open
from core.logging import get_logger, log_cache_operation
from core.store import KeyValueStore

logger = get_logger(__name__)

DEFAULT_SCAN_BATCH = 100


def require_key(key: str, what: str = "key") -> str:
    """Reject empty keys before they reach the store."""
    if not isinstance(key, str) or not key.strip():
        raise CacheKeyError(f"Cache {what} must be a non-empty string, got {key!r}")
    return key


def require_ttl(ttl: Optional[int]) -> Optional[int]:
    if ttl is None:
        return None
    if isinstance(ttl, bool) or not isinstance(ttl, int) or ttl <= 0:
        raise InvalidTTLError(ttl)
    return ttl


class Cache:
    """Async JSON cache with per-call TTL.

    Args:
        store: Shared key-value store
        default_ttl: TTL applied when ``set`` gets none (None = no expiry)
        scan_batch_size: Keys requested per SCAN round trip in ``delete_pattern``
    """

    def __init__(self, store: KeyValueStore, default_ttl: Optional[int] = None,
                 scan_batch_size: int = DEFAULT_SCAN_BATCH):
        self.store = store
        self.default_ttl = require_ttl(default_ttl)
        self.scan_batch_size = scan_batch_size

    @fail_open(None)
    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache. Malformed entries read as a miss."""
        require_key(key)
        raw = await self.store.get(key)
        if raw is None:
            log_cache_operation(logger, "get", key, hit=False)
            return None
        try:
            value = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning("Undecodable cache entry treated as miss", cache_key=key, error=str(e))
            return None
        log_cache_operation(logger, "get", key, hit=True)
        return value

    @fail_open(False)
    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set value in cache with optional TTL (seconds)."""
        require_key(key)
        ttl = require_ttl(ttl) or self.default_ttl
        serialized = json.dumps(value, default=str)
        await self.store.set(key, serialized, ttl)
        log_cache_operation(logger, "set", key, ttl=ttl)
        return True

    @fail_open(False)
    async def delete(self, key: str) -> bool:
        """Delete value from cache. Deleting an absent key still succeeds."""
        require_key(key)
        deleted = await self.store.delete(key)
        log_cache_operation(logger, "delete", key, deleted=bool(deleted))
        return True

    @fail_open(0)
    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern.

        Walks the keyspace with SCAN in bounded batches and deletes each
        batch's matches before fetching the next, until the cursor returns
        to 0. Never issues a full-keyspace listing, which would block the
        single-threaded server for every other caller.
        """
        require_key(pattern, "pattern")
        cursor = 0
        deleted = 0
        while True:
            cursor, keys = await self.store.scan(cursor, pattern, self.scan_batch_size)
            if keys:
                deleted += await self.store.delete(*keys)
            if cursor == 0:
                break
        log_cache_operation(logger, "delete_pattern", pattern, deleted=deleted)
        return deleted

    @fail_open(False)
    async def exists(self, key: str) -> bool:
        """Check if key exists in cache."""
        require_key(key)
        return await self.store.exists(key)

    @fail_open(-1)
    async def ttl(self, key: str) -> int:
        """Remaining TTL in seconds (-1 without expiry or on failure, -2 if absent)."""
        require_key(key)
        return await self.store.ttl(key)

    @fail_open(False)
    async def expire(self, key: str, ttl: int) -> bool:
        """Set TTL for existing key."""
        require_key(key)
        return await self.store.expire(key, require_ttl(ttl))
