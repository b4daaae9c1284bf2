"""Key-value / pub-sub store transports.

``KeyValueStore`` is the narrow interface every service depends on. Two
transports implement it:

- ``RedisStore``: shared Redis server via ``redis.asyncio`` (production)
- ``MemoryStore``: process-local fallback and test double (core.memory_store)

Transports raise on failure. Fail-open handling lives one layer up in the
services (see core.failopen), so a transport never hides an error.
"""

from typing import Any, Dict, List, Mapping, Optional, Protocol, Set, Tuple, TYPE_CHECKING

import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import (
    ConnectionError as RedisConnectionError,
    ResponseError,
    TimeoutError as RedisTimeoutError,
)

from core.logging import get_logger

if TYPE_CHECKING:
    from core.config import Settings

logger = get_logger(__name__)

StreamRecord = Tuple[str, Dict[str, str]]


class Subscription:
    """Handle for a channel subscription.

    Iterating yields raw message payloads in arrival order. The sequence is
    lazy, unbounded and not restartable; it ends only after ``close()``.
    """

    channel: str

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        raise StopAsyncIteration

    async def close(self) -> None:
        return None

    @property
    def closed(self) -> bool:
        return True

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


class KeyValueStore(Protocol):
    """Operations the coordination layer needs from the shared store."""

    async def ping(self) -> bool: ...

    # Strings & counters
    async def get(self, key: str) -> Optional[str]: ...
    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool: ...
    async def delete(self, *keys: str) -> int: ...
    async def exists(self, key: str) -> bool: ...
    async def incr(self, key: str) -> int: ...
    async def expire(self, key: str, seconds: int, nx: bool = False, gt: bool = False) -> bool: ...
    async def ttl(self, key: str) -> int: ...
    async def scan(self, cursor: int, match: str, count: int) -> Tuple[int, List[str]]: ...

    # Sets
    async def sadd(self, key: str, *members: str) -> int: ...
    async def smembers(self, key: str) -> Set[str]: ...

    # Sorted sets
    async def zadd(self, key: str, mapping: Mapping[str, float]) -> int: ...
    async def zincrby(self, key: str, amount: float, member: str) -> float: ...
    async def zrevrange(self, key: str, start: int, stop: int) -> List[Tuple[str, float]]: ...

    # Approximate distinct counting
    async def pfadd(self, key: str, *elements: str) -> int: ...
    async def pfcount(self, *keys: str) -> int: ...
    async def pfmerge(self, dest: str, *sources: str) -> bool: ...

    # Bits
    async def setbit(self, key: str, offset: int, value: int) -> int: ...
    async def getbit(self, key: str, offset: int) -> int: ...
    async def bitcount(self, key: str) -> int: ...

    # Append-only logs
    async def xadd(self, key: str, fields: Mapping[str, str],
                   maxlen: Optional[int] = None, approximate: bool = True) -> str: ...
    async def xrevrange(self, key: str, count: Optional[int] = None) -> List[StreamRecord]: ...
    async def xtrim(self, key: str, maxlen: int, approximate: bool = True) -> int: ...

    # Pub/Sub
    async def publish(self, channel: str, message: str) -> int: ...
    async def subscribe(self, channel: str) -> Subscription: ...


class RedisSubscription(Subscription):
    """Subscription backed by a dedicated Redis pub/sub connection."""

    def __init__(self, pubsub: "redis.client.PubSub", channel: str, poll_interval: float = 1.0):
        self.channel = channel
        self._pubsub = pubsub
        self._poll_interval = poll_interval
        self._closed = False

    async def __anext__(self) -> str:
        while not self._closed:
            message = await self._pubsub.get_message(
                ignore_subscribe_messages=True,
                timeout=self._poll_interval,
            )
            if message and message.get("type") == "message":
                return message["data"]
        raise StopAsyncIteration

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.unsubscribe(self.channel)
        finally:
            await self._pubsub.aclose()
        logger.debug("Subscription closed", channel=self.channel)

    @property
    def closed(self) -> bool:
        return self._closed


class RedisStore:
    """``KeyValueStore`` over a shared Redis server.

    The client queues commands while reconnecting and retries transport
    errors with capped exponential backoff; anything that still fails is
    raised to the caller.
    """

    kind = "redis"

    def __init__(self, client: "redis.Redis"):
        self.redis = client
        self._streams_available = False
        # Assumed until checked at startup; Redis 7+ is the supported baseline
        self._expire_flags_available = True

    @classmethod
    def from_settings(cls, settings: "Settings") -> "RedisStore":
        """Build a client from REDIS_URL or the individual connection fields."""
        retry = Retry(
            ExponentialBackoff(cap=settings.retry_cap_seconds, base=settings.retry_base_seconds),
            settings.redis_max_retries,
        )
        options = dict(
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=settings.redis_socket_timeout,
            socket_connect_timeout=settings.redis_connect_timeout,
            retry=retry,
            retry_on_error=[RedisConnectionError, RedisTimeoutError],
            health_check_interval=settings.redis_health_check_interval,
        )
        if settings.redis_url:
            client = redis.from_url(settings.redis_url, **options)
        else:
            client = redis.Redis(
                host=settings.redis_host,
                port=settings.redis_port,
                password=settings.redis_password,
                db=settings.redis_db,
                **options,
            )
        return cls(client)

    async def startup(self) -> None:
        """Verify connectivity and check Streams and EXPIRE flag support."""
        await self.redis.ping()
        logger.info("Redis store initialized")
        await self._check_streams_support()
        await self._check_expire_flags_support()

    async def _check_streams_support(self) -> None:
        """Check if the server supports Streams (XADD/XREVRANGE).

        Some Redis-compatible services don't. Checked once at startup so a
        missing command shows up in the logs instead of on every append.
        """
        test_stream = "_coordination_streams_test"
        try:
            msg_id = await self.redis.xadd(test_stream, {"test": "1"}, maxlen=1)
            await self.redis.delete(test_stream)
            self._streams_available = bool(msg_id)
        except RedisConnectionError:
            raise
        except Exception as e:
            self._streams_available = False
            logger.warning("Redis Streams not available, message streams will fail open", error=str(e))

    async def _check_expire_flags_support(self) -> None:
        """Check if EXPIRE accepts NX/GT (Redis 7+).

        Tag sets rely on them to only ever extend their TTL. Older servers
        reject the flags, so callers switch to a read-then-extend fallback.
        """
        test_key = "_coordination_expire_test"
        try:
            await self.redis.set(test_key, "1", ex=10)
            await self.redis.expire(test_key, 20, gt=True)
            await self.redis.delete(test_key)
            self._expire_flags_available = True
        except RedisConnectionError:
            raise
        except ResponseError as e:
            self._expire_flags_available = False
            logger.warning("EXPIRE NX/GT not supported (Redis < 7), tag TTLs extend non-atomically",
                           error=str(e))

    async def shutdown(self) -> None:
        await self.redis.aclose()
        logger.info("Redis store connections closed")

    @property
    def streams_available(self) -> bool:
        return self._streams_available

    @property
    def expire_flags_available(self) -> bool:
        return self._expire_flags_available

    async def ping(self) -> bool:
        return bool(await self.redis.ping())

    async def get(self, key: str) -> Optional[str]:
        return await self.redis.get(key)

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        if ttl:
            return bool(await self.redis.setex(key, ttl, value))
        return bool(await self.redis.set(key, value))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self.redis.delete(*keys)

    async def exists(self, key: str) -> bool:
        return bool(await self.redis.exists(key))

    async def incr(self, key: str) -> int:
        return await self.redis.incr(key)

    async def expire(self, key: str, seconds: int, nx: bool = False, gt: bool = False) -> bool:
        return bool(await self.redis.expire(key, seconds, nx=nx, gt=gt))

    async def ttl(self, key: str) -> int:
        return await self.redis.ttl(key)

    async def scan(self, cursor: int, match: str, count: int) -> Tuple[int, List[str]]:
        next_cursor, keys = await self.redis.scan(cursor=cursor, match=match, count=count)
        return int(next_cursor), list(keys)

    async def sadd(self, key: str, *members: str) -> int:
        return await self.redis.sadd(key, *members)

    async def smembers(self, key: str) -> Set[str]:
        return set(await self.redis.smembers(key))

    async def zadd(self, key: str, mapping: Mapping[str, float]) -> int:
        return await self.redis.zadd(key, dict(mapping))

    async def zincrby(self, key: str, amount: float, member: str) -> float:
        return float(await self.redis.zincrby(key, amount, member))

    async def zrevrange(self, key: str, start: int, stop: int) -> List[Tuple[str, float]]:
        rows = await self.redis.zrevrange(key, start, stop, withscores=True)
        return [(member, float(score)) for member, score in rows]

    async def pfadd(self, key: str, *elements: str) -> int:
        return await self.redis.pfadd(key, *elements)

    async def pfcount(self, *keys: str) -> int:
        return await self.redis.pfcount(*keys)

    async def pfmerge(self, dest: str, *sources: str) -> bool:
        return bool(await self.redis.pfmerge(dest, *sources))

    async def setbit(self, key: str, offset: int, value: int) -> int:
        return await self.redis.setbit(key, offset, value)

    async def getbit(self, key: str, offset: int) -> int:
        return await self.redis.getbit(key, offset)

    async def bitcount(self, key: str) -> int:
        return await self.redis.bitcount(key)

    async def xadd(self, key: str, fields: Mapping[str, str],
                   maxlen: Optional[int] = None, approximate: bool = True) -> str:
        return await self.redis.xadd(key, dict(fields), maxlen=maxlen, approximate=approximate)

    async def xrevrange(self, key: str, count: Optional[int] = None) -> List[StreamRecord]:
        rows = await self.redis.xrevrange(key, max="+", min="-", count=count)
        return [(entry_id, dict(fields)) for entry_id, fields in rows]

    async def xtrim(self, key: str, maxlen: int, approximate: bool = True) -> int:
        return await self.redis.xtrim(key, maxlen=maxlen, approximate=approximate)

    async def publish(self, channel: str, message: str) -> int:
        return await self.redis.publish(channel, message)

    async def subscribe(self, channel: str) -> Subscription:
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(channel)
        logger.debug("Subscribed", channel=channel)
        return RedisSubscription(pubsub, channel)


def create_store(settings: "Settings"):
    """Select the store transport for the given settings.

    - Redis: when REDIS_ENABLED=true (production, shared across processes)
    - Memory: when Redis is disabled (single-process development and tests)
    """
    if settings.redis_enabled:
        return RedisStore.from_settings(settings)

    from core.memory_store import MemoryStore
    logger.info("Using in-memory store", redis_enabled=settings.redis_enabled)
    return MemoryStore()
