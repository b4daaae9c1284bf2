"""Fixed-window rate limiting over the shared store.

Algorithm per ``check``:

1. INCR ``ratelimit:<key>`` (atomic in the store, safe across processes)
2. If the new count is 1 this call opened the window: EXPIRE it
3. Read the remaining TTL to report when the window resets

Because windows reset at fixed boundaries, up to ``2 * limit`` requests can
pass around a boundary. That is the contract of a fixed window, not a bug.
If the store is unreachable the check fails open (``allowed=True``).
"""

import time
from typing import Callable, Optional

from constants import rate_limit_key
from core.exceptions import InvalidRateLimitError
from core.failopen import fail_open
from core.logging import get_logger
from core.store import KeyValueStore
from models.cache import RateLimitResult
from services.cache import require_key

logger = get_logger(__name__)


def _allow_on_failure(self: "RateLimiter", key: str, limit: int, window_seconds: int) -> RateLimitResult:
    return RateLimitResult(
        allowed=True,
        remaining=limit,
        reset_at=self.clock() + window_seconds,
        limit=limit,
        degraded=True,
    )


class RateLimiter:
    """Per-key request counter with fixed windows."""

    def __init__(self, store: KeyValueStore, default_limit: int = 100,
                 default_window: int = 60, clock: Callable[[], float] = time.time):
        self.store = store
        self.default_limit = default_limit
        self.default_window = default_window
        self.clock = clock

    async def check(self, key: str, limit: Optional[int] = None,
                    window_seconds: Optional[int] = None) -> RateLimitResult:
        """Count one request against ``key`` and report whether it is allowed.

        Args:
            key: Logical key, e.g. a user id or client IP
            limit: Maximum requests per window
            window_seconds: Window length in seconds

        Returns:
            RateLimitResult with allowed, remaining and reset_at
        """
        require_key(key)
        limit = self.default_limit if limit is None else limit
        window_seconds = self.default_window if window_seconds is None else window_seconds
        if limit <= 0 or window_seconds <= 0:
            raise InvalidRateLimitError(
                f"limit and window must be positive (limit={limit}, window={window_seconds})"
            )
        return await self._check(key, limit, window_seconds)

    @fail_open(fallback=_allow_on_failure)
    async def _check(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        counter_key = rate_limit_key(key)
        count = await self.store.incr(counter_key)
        if count == 1:
            await self.store.expire(counter_key, window_seconds)

        ttl = await self.store.ttl(counter_key)
        if ttl == -1:
            # INCR landed but the EXPIRE that opens the window never did;
            # without this the counter would never reset.
            if getattr(self.store, "expire_flags_available", True):
                await self.store.expire(counter_key, window_seconds, nx=True)
            else:
                await self.store.expire(counter_key, window_seconds)
            ttl = window_seconds
        elif ttl < 0:
            ttl = window_seconds

        allowed = count <= limit
        if not allowed:
            logger.info("Rate limit exceeded", rate_limit_key=key, count=count, limit=limit)

        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, limit - count),
            reset_at=self.clock() + ttl,
            limit=limit,
        )

    @fail_open(False)
    async def reset(self, key: str) -> bool:
        """Drop the counter for ``key`` so its next request opens a new window."""
        require_key(key)
        await self.store.delete(rate_limit_key(key))
        return True
