"""Fail-open wrapper for store-backed operations.

Every public operation that touches the shared store is decorated with
``fail_open``. Transport errors resolve to the operation's declared default
and are logged; misuse errors (``ValueError`` subclasses raised before the
store is touched) propagate to the caller.
"""

import asyncio
import functools
from typing import Any, Callable, Optional

from redis.exceptions import RedisError

from core.exceptions import StoreUnavailableError
from core.logging import get_logger, log_store_failure

logger = get_logger(__name__)

TRANSPORT_ERRORS = (
    RedisError,
    StoreUnavailableError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    OSError,
)


def fail_open(
    default: Any = None,
    *,
    default_factory: Optional[Callable[[], Any]] = None,
    fallback: Optional[Callable[..., Any]] = None,
):
    """Resolve transport failures of an async operation to a default.

    Args:
        default: Value returned on failure (use for immutables only)
        default_factory: Zero-argument callable producing a fresh default
        fallback: Callable receiving the wrapped call's arguments, for
            defaults that depend on the request (e.g. rate-limit windows)
    """

    def decorator(func):
        operation = func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except TRANSPORT_ERRORS as e:
                log_store_failure(logger, operation, e)
                if fallback is not None:
                    return fallback(*args, **kwargs)
                if default_factory is not None:
                    return default_factory()
                return default

        return wrapper

    return decorator
