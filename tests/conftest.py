"""Shared fixtures: in-memory store with a controllable clock, outage store."""

from datetime import datetime, timezone

import pytest
from redis.exceptions import ResponseError

from core.memory_store import MemoryStore
from services.analytics import Analytics
from services.cache import Cache
from services.memoizer import ContentAddressedMemoizer
from services.pubsub import PubSub
from services.rate_limit import RateLimiter
from services.streams import MessageStream
from services.tagged_cache import TaggedCache
from services.user_cache import SessionStore, UserDataCache


class FakeClock:
    """Manually advanced wall clock (Unix seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def as_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.now, tz=timezone.utc)


class FailingStore:
    """Store whose every operation raises a transport error."""

    kind = "failing"
    streams_available = False
    expire_flags_available = True

    def __init__(self):
        self.calls = []

    def __getattr__(self, name):
        async def fail(*args, **kwargs):
            self.calls.append(name)
            raise ConnectionError(f"store unreachable during {name}")
        return fail


class SpyStore:
    """Delegating store that records which operations were called."""

    def __init__(self, inner):
        self.inner = inner
        self.calls = []

    def __getattr__(self, name):
        attr = getattr(self.inner, name)
        if not callable(attr):
            return attr

        async def spy(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return await attr(*args, **kwargs)
        return spy

    def called(self, name):
        return [call for call in self.calls if call[0] == name]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def failing_store():
    return FailingStore()


@pytest.fixture
def cache(store):
    return Cache(store)


@pytest.fixture
def tagged(cache):
    return TaggedCache(cache)


@pytest.fixture
def limiter(store, clock):
    return RateLimiter(store, clock=clock)


@pytest.fixture
def streams(store):
    return MessageStream(store, activity_maxlen=3)


@pytest.fixture
def pubsub(store):
    return PubSub(store)


@pytest.fixture
def analytics(store, clock):
    return Analytics(store, retention_days=7, clock=clock.as_datetime)


@pytest.fixture
def memoizer(cache):
    return ContentAddressedMemoizer(cache, default_ttl=3600)


@pytest.fixture
def user_cache(tagged):
    return UserDataCache(tagged)


@pytest.fixture
def sessions(cache):
    return SessionStore(cache, default_ttl=3600)


class PreRedis7Store(MemoryStore):
    """Memory store that rejects EXPIRE NX/GT like servers before Redis 7."""

    expire_flags_available = False

    async def expire(self, key, seconds, nx=False, gt=False):
        if nx or gt:
            raise ResponseError("ERR wrong number of arguments for 'expire' command")
        return await super().expire(key, seconds)


class FlakyStore(MemoryStore):
    """Memory store whose named operations fail once with a transport error."""

    def __init__(self, clock, *failing):
        super().__init__(clock=clock)
        self.failing = set(failing)

    def __getattribute__(self, name):
        failing = object.__getattribute__(self, "__dict__").get("failing", ())
        if name in failing:
            failing.discard(name)

            async def fail(*args, **kwargs):
                raise ConnectionError(f"store unreachable during {name}")
            return fail
        return object.__getattribute__(self, name)
