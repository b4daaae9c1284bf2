"""Analytics primitives: counters, unique-user sketches, bitmaps, rankings.

Key schema:
    analytics:events:<name>              -> counter (all time)
    analytics:user:<userId>:events       -> ZSET {event JSON -> epoch ms}
    analytics:unique:<name>              -> HyperLogLog of user ids
    analytics:daily:<yyyy-mm-dd>:<name>  -> counter, expires after retention
    trending:<dimension>                 -> ZSET {member -> score}

Counts are monotonic and approximate where the structure is (HyperLogLog).
Nothing here is a system of record; reads fail open to zero / empty.
"""

import json
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from constants import (
    ANALYTICS_DAILY_PREFIX,
    ANALYTICS_EVENTS_PREFIX,
    ANALYTICS_UNIQUE_PREFIX,
    ANALYTICS_USER_PREFIX,
    SECONDS_PER_DAY,
    TRENDING_EMOTIONS_KEY,
    TRENDING_THEMES_KEY,
)
from core.failopen import fail_open
from core.logging import get_logger
from core.store import KeyValueStore
from services.cache import require_key

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SortedSets:
    """Rankings, trending lists and leaderboards."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    @fail_open(False)
    async def add(self, key: str, member: str, score: float) -> bool:
        require_key(key)
        await self.store.zadd(key, {member: score})
        return True

    @fail_open(0.0)
    async def increment(self, key: str, member: str, by: float = 1) -> float:
        """Increment a member's score; returns the new score."""
        require_key(key)
        return await self.store.zincrby(key, by, member)

    @fail_open(default_factory=list)
    async def top(self, key: str, count: int = 10) -> List[Dict[str, Any]]:
        """Highest-scored members first, as ``[{member, score}]``."""
        require_key(key)
        if count <= 0:
            return []
        rows = await self.store.zrevrange(key, 0, count - 1)
        return [{"member": member, "score": score} for member, score in rows]


class HyperLogLog:
    """Approximate distinct counting."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    @fail_open(False)
    async def add(self, key: str, *elements: str) -> bool:
        require_key(key)
        await self.store.pfadd(key, *elements)
        return True

    @fail_open(0)
    async def count(self, *keys: str) -> int:
        for key in keys:
            require_key(key)
        if not keys:
            return 0
        return await self.store.pfcount(*keys)

    @fail_open(False)
    async def merge(self, dest_key: str, *source_keys: str) -> bool:
        require_key(dest_key)
        return await self.store.pfmerge(dest_key, *source_keys)


class Bitmaps:
    """Boolean flags over an integer domain (e.g. day-of-year activity)."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    @staticmethod
    def _offset(offset: int) -> int:
        if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
            raise ValueError(f"Bit offset must be a non-negative integer, got {offset!r}")
        return offset

    @fail_open(0)
    async def set_bit(self, key: str, offset: int, value: int) -> int:
        """Set a bit; returns its previous value."""
        require_key(key)
        if value not in (0, 1):
            raise ValueError(f"Bit value must be 0 or 1, got {value!r}")
        return await self.store.setbit(key, self._offset(offset), value)

    @fail_open(0)
    async def get_bit(self, key: str, offset: int) -> int:
        require_key(key)
        return await self.store.getbit(key, self._offset(offset))

    @fail_open(0)
    async def bit_count(self, key: str) -> int:
        require_key(key)
        return await self.store.bitcount(key)


class Analytics:
    """Event tracking built from counters, sorted sets and HyperLogLogs."""

    def __init__(self, store: KeyValueStore, retention_days: int = 7,
                 clock: Callable[[], datetime] = _utc_now):
        self.store = store
        self.retention_days = retention_days
        self.clock = clock
        self.sorted_sets = SortedSets(store)
        self.hyperloglog = HyperLogLog(store)
        self.bitmaps = Bitmaps(store)

    @staticmethod
    def daily_key(event_name: str, day: date) -> str:
        return f"{ANALYTICS_DAILY_PREFIX}:{day.isoformat()}:{event_name}"

    @fail_open(False)
    async def track_event(self, event_name: str, user_id: str,
                          metadata: Optional[Dict[str, Any]] = None) -> bool:
        """Record one occurrence of ``event_name`` by ``user_id``.

        Increments the all-time counter, logs the event in the user's
        timeline, adds the user to the event's unique sketch and bumps the
        daily bucket (kept for ``retention_days``).
        """
        require_key(event_name, "event name")
        require_key(user_id, "user id")
        now = self.clock()
        timestamp = int(now.timestamp() * 1000)

        await self.store.incr(f"{ANALYTICS_EVENTS_PREFIX}:{event_name}")

        entry = json.dumps({"event": event_name, "metadata": metadata or {}, "timestamp": timestamp},
                           default=str, sort_keys=True)
        await self.store.zadd(f"{ANALYTICS_USER_PREFIX}:{user_id}:events", {entry: timestamp})

        await self.store.pfadd(f"{ANALYTICS_UNIQUE_PREFIX}:{event_name}", user_id)

        daily = self.daily_key(event_name, now.date())
        await self.store.incr(daily)
        await self.store.expire(daily, SECONDS_PER_DAY * self.retention_days)

        logger.debug("Event tracked", event_name=event_name, user_id=user_id)
        return True

    @fail_open(0)
    async def event_count(self, event_name: str) -> int:
        require_key(event_name, "event name")
        value = await self.store.get(f"{ANALYTICS_EVENTS_PREFIX}:{event_name}")
        return int(value) if value else 0

    async def unique_users(self, event_name: str) -> int:
        require_key(event_name, "event name")
        return await self.hyperloglog.count(f"{ANALYTICS_UNIQUE_PREFIX}:{event_name}")

    @fail_open(0)
    async def daily_count(self, event_name: str, day: Optional[date] = None) -> int:
        require_key(event_name, "event name")
        value = await self.store.get(self.daily_key(event_name, day or self.clock().date()))
        return int(value) if value else 0

    @fail_open(default_factory=list)
    async def user_events(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent events of a user, newest first."""
        require_key(user_id, "user id")
        if limit <= 0:
            return []
        rows = await self.store.zrevrange(f"{ANALYTICS_USER_PREFIX}:{user_id}:events", 0, limit - 1)
        events = []
        for member, _ in rows:
            try:
                events.append(json.loads(member))
            except json.JSONDecodeError:
                logger.warning("Skipping undecodable analytics entry", user_id=user_id)
        return events

    async def summary(self, event_names: Iterable[str], trending_count: int = 10) -> Dict[str, Any]:
        """Counts, unique users and trending rankings for a dashboard."""
        names = list(event_names)
        events = {name: await self.event_count(name) for name in names}
        unique = {name: await self.unique_users(name) for name in names}
        return {
            "events": events,
            "unique_users": unique,
            "trending": {
                "themes": await self.sorted_sets.top(TRENDING_THEMES_KEY, trending_count),
                "emotions": await self.sorted_sets.top(TRENDING_EMOTIONS_KEY, trending_count),
            },
        }
