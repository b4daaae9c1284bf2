"""Health check utilities for the shared store.

Provides uptime tracking and the payload for a store status endpoint.
"""
import time
from typing import Dict, Any, TYPE_CHECKING

from core.failopen import TRANSPORT_ERRORS

if TYPE_CHECKING:
    from core.config import Settings
    from services.cache import Cache

# Module-level startup time tracking
_startup_time: float = 0.0

HEALTH_CHECK_KEY = "_health_check"


def set_startup_time() -> None:
    """Record the startup time. Called once from container startup."""
    global _startup_time
    _startup_time = time.time()


def get_uptime() -> float:
    """Get uptime in seconds since startup."""
    return time.time() - _startup_time if _startup_time else 0.0


async def check_store(store) -> bool:
    """Check store connectivity."""
    try:
        return await store.ping()
    except TRANSPORT_ERRORS:
        return False


async def check_cache(cache: "Cache") -> bool:
    """Round-trip a value through the cache."""
    await cache.set(HEALTH_CHECK_KEY, "ok", ttl=10)
    result = await cache.get(HEALTH_CHECK_KEY)
    await cache.delete(HEALTH_CHECK_KEY)
    return result == "ok"


async def get_store_status(
    store,
    cache: "Cache",
    settings: "Settings"
) -> Dict[str, Any]:
    """Get store status for a status endpoint.

    Returns:
        Dict containing status, backend, uptime and per-check results.
    """
    store_healthy = await check_store(store)
    cache_healthy = await check_cache(cache) if store_healthy else False

    return {
        "status": "healthy" if (store_healthy and cache_healthy) else "degraded",
        "backend": getattr(store, "kind", "unknown"),
        "uptime_seconds": round(get_uptime(), 1),
        "checks": {
            "store": store_healthy,
            "cache": cache_healthy,
            "streams": bool(getattr(store, "streams_available", False)),
            "expire_flags": bool(getattr(store, "expire_flags_available", False)),
        },
        "features": {
            "redis": settings.redis_enabled,
            "url_configured": settings.redis_url is not None,
        },
    }
