"""
Unit tests for Cache.
"""

import pytest

from core.exceptions import CacheKeyError, InvalidTTLError
from services.cache import Cache

from conftest import SpyStore


class TestCacheReadWrite:
    """Get/set/delete/exists/ttl over the in-memory store."""

    @pytest.mark.asyncio
    async def test_set_then_get_returns_value(self, cache):
        """Test a fresh write is readable immediately."""
        value = {"userName": "Ada", "muses": ["poet", "curator"], "count": 3}

        assert await cache.set("user:1:profile", value, ttl=60) is True
        assert await cache.get("user:1:profile") == value

    @pytest.mark.asyncio
    async def test_value_absent_after_ttl_elapses(self, cache, clock):
        """Test entries disappear once their TTL has passed."""
        await cache.set("user:1:profile", {"a": 1}, ttl=60)

        clock.advance(59)
        assert await cache.get("user:1:profile") == {"a": 1}

        clock.advance(2)
        assert await cache.get("user:1:profile") is None
        assert await cache.exists("user:1:profile") is False

    @pytest.mark.asyncio
    async def test_last_write_wins(self, cache):
        """Test a later set overwrites the earlier value."""
        await cache.set("k", "first", ttl=60)
        await cache.set("k", "second", ttl=60)

        assert await cache.get("k") == "second"

    @pytest.mark.asyncio
    async def test_default_ttl_applies_when_none_given(self, store):
        """Test the configured default TTL is used for set without ttl."""
        cache = Cache(store, default_ttl=120)
        await cache.set("k", 1)

        assert await cache.ttl("k") == 120

    @pytest.mark.asyncio
    async def test_ttl_reports_missing_and_persistent_keys(self, cache):
        """Test TTL is -2 for absent keys and -1 for keys without expiry."""
        await cache.set("persistent", 1)

        assert await cache.ttl("missing") == -2
        assert await cache.ttl("persistent") == -1

    @pytest.mark.asyncio
    async def test_malformed_entry_reads_as_miss(self, cache, store):
        """Test an undecodable stored value is treated as a miss."""
        await store.set("broken", "{not json")

        assert await cache.get("broken") is None

    @pytest.mark.asyncio
    async def test_delete_absent_key_succeeds(self, cache):
        """Test deleting a key that does not exist is not an error."""
        assert await cache.delete("never-written") is True

    @pytest.mark.asyncio
    async def test_expire_updates_ttl(self, cache):
        await cache.set("k", 1, ttl=60)

        assert await cache.expire("k", 600) is True
        assert await cache.ttl("k") == 600


class TestDeletePattern:
    """Cursor-based pattern deletion."""

    @pytest.mark.asyncio
    async def test_removes_all_and_only_matching_keys(self, store):
        """Test only keys under the prefix are removed, across several batches."""
        spy = SpyStore(store)
        cache = Cache(spy, scan_batch_size=2)
        matching = ["user:42:profile", "user:42:memories:page:1", "user:42:memory:9", "user:42:x"]
        others = ["user:420:profile", "user:43:profile", "chat:42", "ratelimit:user:42"]
        for key in matching + others:
            await store.set(key, "1")

        deleted = await cache.delete_pattern("user:42:*")

        assert deleted == len(matching)
        for key in matching:
            assert await store.exists(key) is False
        for key in others:
            assert await store.exists(key) is True

        assert len(spy.called("scan")) > 1
        assert spy.called("keys") == []
        for _, args, _ in spy.called("scan"):
            assert args[1] == "user:42:*"
            assert args[2] == 2

    @pytest.mark.asyncio
    async def test_no_matches_returns_zero(self, cache, store):
        await store.set("other", "1")

        assert await cache.delete_pattern("user:1:*") == 0
        assert await store.exists("other") is True


class TestCacheMisuse:
    """Programmer errors are raised, not swallowed."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", ["", "   "])
    async def test_empty_key_raises(self, cache, key):
        with pytest.raises(CacheKeyError):
            await cache.get(key)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ttl", [0, -5, 1.5])
    async def test_invalid_ttl_raises(self, cache, ttl):
        with pytest.raises(InvalidTTLError):
            await cache.set("k", 1, ttl=ttl)


class TestCacheOutage:
    """Transport failures fail open."""

    @pytest.mark.asyncio
    async def test_every_operation_returns_its_default(self, failing_store):
        """Test no exception escapes and each operation returns a miss."""
        cache = Cache(failing_store)

        assert await cache.get("k") is None
        assert await cache.set("k", 1, ttl=60) is False
        assert await cache.delete("k") is False
        assert await cache.delete_pattern("user:*") == 0
        assert await cache.exists("k") is False
        assert await cache.ttl("k") == -1
        assert "get" in failing_store.calls

    @pytest.mark.asyncio
    async def test_misuse_still_raises_during_outage(self, failing_store):
        cache = Cache(failing_store)

        with pytest.raises(CacheKeyError):
            await cache.get("")
