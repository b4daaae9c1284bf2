"""
Unit tests for TaggedCache.
"""

import pytest

from core.exceptions import CacheKeyError, InvalidTTLError
from services.cache import Cache
from services.tagged_cache import TaggedCache

from conftest import FlakyStore, PreRedis7Store


class TestTagInvalidation:
    """Writing under tags and invalidating whole families."""

    @pytest.mark.asyncio
    async def test_invalidate_deletes_exactly_tagged_keys(self, tagged, cache):
        """Test N tagged keys are deleted and unrelated keys survive."""
        tagged_keys = [f"user:1:memories:page:{n}" for n in range(1, 6)]
        for key in tagged_keys:
            assert await tagged.set_with_tags(key, {"page": key}, 300, ["memories:1"]) is True
        await cache.set("user:1:profile", {"name": "Ada"}, ttl=300)
        await tagged.set_with_tags("user:2:memories:page:1", [], 300, ["memories:2"])

        deleted = await tagged.invalidate_tag("memories:1")

        assert deleted == len(tagged_keys)
        for key in tagged_keys:
            assert await cache.get(key) is None
        assert await cache.get("user:1:profile") == {"name": "Ada"}
        assert await cache.get("user:2:memories:page:1") == []

    @pytest.mark.asyncio
    async def test_tag_set_is_removed(self, tagged, store):
        await tagged.set_with_tags("k", 1, 60, ["t"])
        assert await store.smembers("cache:tags:t") == {"k"}

        await tagged.invalidate_tag("t")

        assert await store.exists("cache:tags:t") is False

    @pytest.mark.asyncio
    async def test_unknown_tag_is_a_no_op(self, tagged):
        assert await tagged.invalidate_tag("never-used") == 0

    @pytest.mark.asyncio
    async def test_key_under_several_tags(self, tagged, cache):
        """Test one invalidation removes the key; the other tag then deletes nothing."""
        await tagged.set_with_tags("user:1:memory:9", {"id": 9}, 600, ["user:1", "memory:9"])

        assert await tagged.invalidate_tag("memory:9") == 1
        assert await cache.get("user:1:memory:9") is None
        assert await tagged.invalidate_tag("user:1") == 0

    @pytest.mark.asyncio
    async def test_expired_members_are_skipped(self, tagged, clock):
        """Test a tag referencing an already-expired entry only counts live deletions."""
        await tagged.set_with_tags("short", 1, 100, ["t"])
        await tagged.set_with_tags("long", 2, 1000, ["t"])

        clock.advance(200)

        assert await tagged.invalidate_tag("t") == 1

    @pytest.mark.asyncio
    async def test_write_after_invalidation_survives(self, tagged, cache):
        await tagged.set_with_tags("k1", 1, 60, ["t"])
        await tagged.invalidate_tag("t")

        await tagged.set_with_tags("k2", 2, 60, ["t"])

        assert await cache.get("k2") == 2
        assert await tagged.tag_members("t") == ["k2"]

    @pytest.mark.asyncio
    async def test_invalidate_tags_sums_deletions(self, tagged):
        await tagged.set_with_tags("a", 1, 60, ["x"])
        await tagged.set_with_tags("b", 1, 60, ["y"])
        await tagged.set_with_tags("c", 1, 60, ["y"])

        assert await tagged.invalidate_tags("x", "y") == 3


class TestTagExpiry:
    """The tag set must outlive every entry registered under it."""

    @pytest.mark.asyncio
    async def test_tag_ttl_only_grows(self, tagged, store):
        """Test a shorter-lived write never shortens the tag set's TTL."""
        await tagged.set_with_tags("long", 1, 3600, ["t"])
        await tagged.set_with_tags("short", 1, 300, ["t"])
        assert await store.ttl("cache:tags:t") == 3600

        await tagged.set_with_tags("longer", 1, 7200, ["t"])
        assert await store.ttl("cache:tags:t") == 7200

    @pytest.mark.asyncio
    async def test_longest_entry_still_invalidated(self, tagged, cache, clock):
        await tagged.set_with_tags("long", 1, 3600, ["t"])
        await tagged.set_with_tags("short", 1, 300, ["t"])

        clock.advance(1000)

        assert await tagged.invalidate_tag("t") == 1
        assert await cache.get("long") is None


class TestGetCachedOrFetch:
    """Read-through with background refresh."""

    @pytest.mark.asyncio
    async def test_miss_fetches_and_writes_through(self, tagged):
        calls = []

        async def fetch():
            calls.append(1)
            return {"fresh": True}

        data, from_cache = await tagged.get_cached_or_fetch("user:1:conversations", fetch, 300, ["user:1"])

        assert data == {"fresh": True}
        assert from_cache is False
        assert calls == [1]
        assert await tagged.tag_members("user:1") == ["user:1:conversations"]

    @pytest.mark.asyncio
    async def test_hit_returns_cached_and_refreshes_in_background(self, tagged):
        await tagged.set_with_tags("k", {"v": 1}, 300, ["t"])

        async def fetch():
            return {"v": 2}

        data, from_cache = await tagged.get_cached_or_fetch("k", fetch, 300, ["t"])
        assert data == {"v": 1}
        assert from_cache is True

        await tagged.drain()
        assert await tagged.get("k") == {"v": 2}

    @pytest.mark.asyncio
    async def test_background_refresh_failure_is_contained(self, tagged):
        await tagged.set_with_tags("k", {"v": 1}, 300, ["t"])

        async def fetch():
            raise RuntimeError("provider down")

        data, from_cache = await tagged.get_cached_or_fetch("k", fetch, 300, ["t"])
        await tagged.drain()

        assert (data, from_cache) == ({"v": 1}, True)
        assert await tagged.get("k") == {"v": 1}

    @pytest.mark.asyncio
    async def test_fetch_error_on_miss_propagates(self, tagged):
        async def fetch():
            raise RuntimeError("provider down")

        with pytest.raises(RuntimeError):
            await tagged.get_cached_or_fetch("k", fetch, 300)


class TestTaggedCacheFailures:

    @pytest.mark.asyncio
    async def test_outage_fails_open(self, failing_store):
        tagged = TaggedCache(Cache(failing_store))

        assert await tagged.set_with_tags("k", 1, 60, ["t"]) is False
        assert await tagged.invalidate_tag("t") == 0
        assert await tagged.tag_members("t") == []

    @pytest.mark.asyncio
    async def test_empty_tag_raises(self, tagged):
        with pytest.raises(CacheKeyError):
            await tagged.set_with_tags("k", 1, 60, [""])

    @pytest.mark.asyncio
    async def test_missing_ttl_raises(self, tagged):
        with pytest.raises(InvalidTTLError):
            await tagged.set_with_tags("k", 1, None, ["t"])


class TestPartialWriteFailures:
    """A tagged value never outlives a failed tag registration."""

    @pytest.mark.asyncio
    async def test_tag_registration_failure_leaves_no_orphan_value(self, clock):
        """Test a failed SADD means the value is not written at all."""
        store = FlakyStore(clock, "sadd")
        tagged = TaggedCache(Cache(store))

        assert await tagged.set_with_tags("user:1:profile", {"name": "old"}, 3600, ["user:1"]) is False
        await tagged.invalidate_tag("user:1")

        assert await tagged.get("user:1:profile") is None

    @pytest.mark.asyncio
    async def test_tag_expiry_failure_leaves_no_orphan_value(self, clock):
        store = FlakyStore(clock, "expire")
        tagged = TaggedCache(Cache(store))

        assert await tagged.set_with_tags("user:1:profile", {"name": "old"}, 3600, ["user:1"]) is False

        assert await tagged.get("user:1:profile") is None

    @pytest.mark.asyncio
    async def test_value_write_failure_is_removed_by_invalidation(self, clock):
        """Test a registered key whose value write failed is a no-op on invalidation."""
        store = FlakyStore(clock, "set")
        tagged = TaggedCache(Cache(store))

        assert await tagged.set_with_tags("k", 1, 60, ["t"]) is False
        assert await tagged.tag_members("t") == ["k"]
        assert await tagged.invalidate_tag("t") == 0

    @pytest.mark.asyncio
    async def test_retry_after_failure_is_invalidated(self, clock):
        store = FlakyStore(clock, "sadd")
        tagged = TaggedCache(Cache(store))
        await tagged.set_with_tags("k", "v1", 60, ["t"])

        assert await tagged.set_with_tags("k", "v2", 60, ["t"]) is True
        assert await tagged.invalidate_tag("t") == 1
        assert await tagged.get("k") is None


class TestServersWithoutExpireFlags:
    """Tag TTLs still only grow on servers that reject EXPIRE NX/GT."""

    @pytest.mark.asyncio
    async def test_tag_ttl_only_grows(self, clock):
        store = PreRedis7Store(clock=clock)
        tagged = TaggedCache(Cache(store))

        assert await tagged.set_with_tags("long", 1, 3600, ["t"]) is True
        assert await tagged.set_with_tags("short", 1, 300, ["t"]) is True
        assert await store.ttl("cache:tags:t") == 3600

        assert await tagged.set_with_tags("longer", 1, 7200, ["t"]) is True
        assert await store.ttl("cache:tags:t") == 7200

    @pytest.mark.asyncio
    async def test_tag_set_without_ttl_gets_one(self, clock):
        store = PreRedis7Store(clock=clock)
        await store.sadd("cache:tags:t", "stale")
        tagged = TaggedCache(Cache(store))

        await tagged.set_with_tags("k", 1, 600, ["t"])

        assert await store.ttl("cache:tags:t") == 600


class TestReadThroughValidation:
    """Bad arguments fail before any background work starts."""

    @pytest.mark.asyncio
    async def test_empty_tag_on_hit_raises_synchronously(self, tagged):
        await tagged.set_with_tags("k", {"v": 1}, 300, ["t"])

        async def fetch():
            return {"v": 2}

        with pytest.raises(CacheKeyError):
            await tagged.get_cached_or_fetch("k", fetch, 300, ["t", ""])
        assert not tagged._background

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ttl", [None, 0, -1])
    async def test_bad_ttl_on_hit_raises_synchronously(self, tagged, ttl):
        await tagged.set_with_tags("k", {"v": 1}, 300, ["t"])

        async def fetch():
            return {"v": 2}

        with pytest.raises(InvalidTTLError):
            await tagged.get_cached_or_fetch("k", fetch, ttl, ["t"])
        assert not tagged._background
