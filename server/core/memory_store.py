"""Process-local ``KeyValueStore``.

Used when Redis is disabled (single-process development) and as the store
double in tests. Mirrors the Redis semantics the services rely on:

- TTLs expire lazily against an injectable clock
- SCAN walks keys by creation order, so deleting matched keys mid-scan
  never skips the rest
- Streams assign ``<ms>-<seq>`` ids that are monotonic per stream
- HyperLogLog is an exact set (a valid zero-error estimate)

Nothing here is shared across processes.
"""

import asyncio
import math
import time
from collections import defaultdict
from fnmatch import fnmatchcase
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from redis.exceptions import ResponseError

from core.logging import get_logger
from core.store import StreamRecord, Subscription

logger = get_logger(__name__)

_WRONGTYPE = "WRONGTYPE Operation against a key holding the wrong kind of value"
_CLOSED = object()


class _Sketch(set):
    """HyperLogLog stand-in: keeps the exact members."""


class _Stream:
    def __init__(self):
        self.entries: List[StreamRecord] = []
        self.last_ms = 0
        self.last_seq = -1

    def next_id(self, now_ms: int) -> str:
        if now_ms > self.last_ms:
            self.last_ms, self.last_seq = now_ms, 0
        else:
            self.last_seq += 1
        return f"{self.last_ms}-{self.last_seq}"


class MemorySubscription(Subscription):
    """Subscription fed by ``MemoryStore.publish``."""

    def __init__(self, store: "MemoryStore", channel: str):
        self.channel = channel
        self._store = store
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def _deliver(self, message: str) -> None:
        self._queue.put_nowait(message)

    async def __anext__(self) -> str:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        message = await self._queue.get()
        if message is _CLOSED:
            raise StopAsyncIteration
        return message

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._store._unsubscribe(self)
        self._queue.put_nowait(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed


class MemoryStore:
    """In-process implementation of ``core.store.KeyValueStore``."""

    kind = "memory"
    streams_available = True
    expire_flags_available = True

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Any] = {}
        self._expiry: Dict[str, float] = {}
        self._order: Dict[str, int] = {}
        self._next_order = 1
        self._channels: Dict[str, Set[MemorySubscription]] = defaultdict(set)

    async def startup(self) -> None:
        logger.info("In-memory store initialized")

    async def shutdown(self) -> None:
        for subscribers in list(self._channels.values()):
            for subscription in list(subscribers):
                await subscription.close()
        self._data.clear()
        self._expiry.clear()
        self._order.clear()

    # ------------------------------------------------------------------
    # Keyspace bookkeeping
    # ------------------------------------------------------------------

    def _alive(self, key: str) -> bool:
        expires_at = self._expiry.get(key)
        if expires_at is not None and expires_at <= self._clock():
            self._drop(key)
        return key in self._data

    def _drop(self, key: str) -> bool:
        self._expiry.pop(key, None)
        self._order.pop(key, None)
        return self._data.pop(key, None) is not None

    def _lookup(self, key: str, kind: type) -> Any:
        if not self._alive(key):
            return None
        value = self._data[key]
        if type(value) is not kind:
            raise ResponseError(_WRONGTYPE)
        return value

    def _create(self, key: str, value: Any) -> Any:
        self._data[key] = value
        if key not in self._order:
            self._order[key] = self._next_order
            self._next_order += 1
        return value

    # ------------------------------------------------------------------
    # Strings & counters
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        return self._lookup(key, str)

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        self._alive(key)
        self._create(key, str(value))
        self._expiry.pop(key, None)
        if ttl:
            self._expiry[key] = self._clock() + ttl
        return True

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self._alive(key) and self._drop(key))

    async def exists(self, key: str) -> bool:
        return self._alive(key)

    async def incr(self, key: str) -> int:
        current = self._lookup(key, str)
        try:
            value = int(current or 0) + 1
        except ValueError:
            raise ResponseError("ERR value is not an integer or out of range")
        self._create(key, str(value))
        return value

    async def expire(self, key: str, seconds: int, nx: bool = False, gt: bool = False) -> bool:
        if not self._alive(key):
            return False
        current = self._expiry.get(key)
        if nx and current is not None:
            return False
        new_expiry = self._clock() + seconds
        # Keys without a TTL count as infinite for GT
        if gt and (current is None or new_expiry <= current):
            return False
        if seconds <= 0:
            self._drop(key)
            return True
        self._expiry[key] = new_expiry
        return True

    async def ttl(self, key: str) -> int:
        if not self._alive(key):
            return -2
        expires_at = self._expiry.get(key)
        if expires_at is None:
            return -1
        return max(0, math.ceil(expires_at - self._clock()))

    async def scan(self, cursor: int, match: str, count: int) -> Tuple[int, List[str]]:
        candidates = sorted(
            (order, key) for key, order in self._order.items() if order >= cursor
        )
        batch = candidates[:count]
        keys = [key for _, key in batch if self._alive(key) and fnmatchcase(key, match)]
        if len(candidates) <= count:
            return 0, keys
        return batch[-1][0] + 1, keys

    # ------------------------------------------------------------------
    # Sets
    # ------------------------------------------------------------------

    async def sadd(self, key: str, *members: str) -> int:
        members_set = self._lookup(key, set)
        if members_set is None:
            members_set = self._create(key, set())
        before = len(members_set)
        members_set.update(members)
        return len(members_set) - before

    async def smembers(self, key: str) -> Set[str]:
        return set(self._lookup(key, set) or ())

    # ------------------------------------------------------------------
    # Sorted sets
    # ------------------------------------------------------------------

    async def zadd(self, key: str, mapping: Mapping[str, float]) -> int:
        scores = self._lookup(key, dict)
        if scores is None:
            scores = self._create(key, {})
        added = sum(1 for member in mapping if member not in scores)
        scores.update({member: float(score) for member, score in mapping.items()})
        return added

    async def zincrby(self, key: str, amount: float, member: str) -> float:
        scores = self._lookup(key, dict)
        if scores is None:
            scores = self._create(key, {})
        scores[member] = scores.get(member, 0.0) + amount
        return scores[member]

    async def zrevrange(self, key: str, start: int, stop: int) -> List[Tuple[str, float]]:
        scores = self._lookup(key, dict) or {}
        ranked = sorted(scores.items(), key=lambda item: (item[1], item[0]), reverse=True)
        end = None if stop == -1 else stop + 1
        return ranked[start:end]

    # ------------------------------------------------------------------
    # Approximate distinct counting
    # ------------------------------------------------------------------

    async def pfadd(self, key: str, *elements: str) -> int:
        sketch = self._lookup(key, _Sketch)
        if sketch is None:
            sketch = self._create(key, _Sketch())
            if not elements:
                return 1
        before = len(sketch)
        sketch.update(elements)
        return int(len(sketch) != before)

    async def pfcount(self, *keys: str) -> int:
        union: Set[str] = set()
        for key in keys:
            union |= self._lookup(key, _Sketch) or set()
        return len(union)

    async def pfmerge(self, dest: str, *sources: str) -> bool:
        merged = _Sketch(self._lookup(dest, _Sketch) or ())
        for key in sources:
            merged |= self._lookup(key, _Sketch) or set()
        self._create(dest, merged)
        return True

    # ------------------------------------------------------------------
    # Bits
    # ------------------------------------------------------------------

    async def setbit(self, key: str, offset: int, value: int) -> int:
        if offset < 0:
            raise ResponseError("ERR bit offset is not an integer or out of range")
        bits = self._lookup(key, bytearray)
        if bits is None:
            bits = self._create(key, bytearray())
        index, mask = offset // 8, 1 << (7 - offset % 8)
        if index >= len(bits):
            bits.extend(b"\x00" * (index + 1 - len(bits)))
        previous = int(bool(bits[index] & mask))
        if value:
            bits[index] |= mask
        else:
            bits[index] &= ~mask & 0xFF
        return previous

    async def getbit(self, key: str, offset: int) -> int:
        bits = self._lookup(key, bytearray) or bytearray()
        index = offset // 8
        if index >= len(bits):
            return 0
        return int(bool(bits[index] & (1 << (7 - offset % 8))))

    async def bitcount(self, key: str) -> int:
        bits = self._lookup(key, bytearray) or bytearray()
        return sum(bin(byte).count("1") for byte in bits)

    # ------------------------------------------------------------------
    # Append-only logs
    # ------------------------------------------------------------------

    async def xadd(self, key: str, fields: Mapping[str, str],
                   maxlen: Optional[int] = None, approximate: bool = True) -> str:
        stream = self._lookup(key, _Stream)
        if stream is None:
            stream = self._create(key, _Stream())
        entry_id = stream.next_id(int(self._clock() * 1000))
        stream.entries.append((entry_id, {k: str(v) for k, v in fields.items()}))
        if maxlen is not None:
            await self.xtrim(key, maxlen, approximate)
        return entry_id

    async def xrevrange(self, key: str, count: Optional[int] = None) -> List[StreamRecord]:
        stream = self._lookup(key, _Stream)
        if stream is None:
            return []
        newest_first = list(reversed(stream.entries))
        return newest_first[:count] if count is not None else newest_first

    async def xtrim(self, key: str, maxlen: int, approximate: bool = True) -> int:
        stream = self._lookup(key, _Stream)
        if stream is None:
            return 0
        excess = max(0, len(stream.entries) - maxlen)
        del stream.entries[:excess]
        return excess

    # ------------------------------------------------------------------
    # Pub/Sub
    # ------------------------------------------------------------------

    async def publish(self, channel: str, message: str) -> int:
        subscribers = list(self._channels.get(channel, ()))
        for subscription in subscribers:
            subscription._deliver(message)
        return len(subscribers)

    async def subscribe(self, channel: str) -> Subscription:
        subscription = MemorySubscription(self, channel)
        self._channels[channel].add(subscription)
        return subscription

    def _unsubscribe(self, subscription: MemorySubscription) -> None:
        subscribers = self._channels.get(subscription.channel)
        if subscribers is not None:
            subscribers.discard(subscription)
            if not subscribers:
                del self._channels[subscription.channel]
