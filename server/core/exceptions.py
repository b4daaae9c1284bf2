"""Coordination layer exception hierarchy."""


class CoordinationError(Exception):
    """Base exception for all coordination-layer errors."""


class StoreUnavailableError(CoordinationError):
    """Backing store could not be reached or returned a transport error."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"[{operation}] {message}")


class CacheKeyError(CoordinationError, ValueError):
    """Empty or otherwise unusable cache key, tag, or channel name."""


class InvalidTTLError(CoordinationError, ValueError):
    """TTL must be a positive number of seconds."""

    def __init__(self, ttl):
        self.ttl = ttl
        super().__init__(f"TTL must be a positive integer, got {ttl!r}")


class InvalidRateLimitError(CoordinationError, ValueError):
    """Rate limit and window must both be positive."""


class CacheWarmError(CoordinationError):
    """Every loader of a cache warm job failed."""

    def __init__(self, user_id: str, failures: dict):
        self.user_id = user_id
        self.failures = failures
        super().__init__(f"Cache warm failed for user {user_id}: {', '.join(sorted(failures))}")


class InvalidMemoResultError(CoordinationError, ValueError):
    """Backend result lacks the fields a memoized result needs.

    The rejected payload is kept on ``payload`` so a finished backend call
    is never lost to a shape error.
    """

    def __init__(self, payload, reason: str):
        self.payload = payload
        super().__init__(f"Invalid memoized result: {reason}")
