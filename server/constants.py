"""Centralized key namespaces, TTLs and memoization key fields.

Keys are flat strings namespaced with colon-separated segments. Components
sharing the store must stay inside their own prefix.
"""

from typing import Dict, FrozenSet

# =============================================================================
# KEY NAMESPACES
# =============================================================================

RATE_LIMIT_PREFIX = "ratelimit"
TAG_PREFIX = "cache:tags"
CHAT_STREAM_PREFIX = "chat"
ACTIVITY_STREAM_PREFIX = "activity"
SESSION_PREFIX = "session"
USER_PREFIX = "user"
LLM_RESPONSE_PREFIX = "llm:response"
MEMORY_ANALYSIS_PREFIX = "memory:analysis"
CONTEXT_PREFIX = "context"

ANALYTICS_EVENTS_PREFIX = "analytics:events"
ANALYTICS_USER_PREFIX = "analytics:user"
ANALYTICS_UNIQUE_PREFIX = "analytics:unique"
ANALYTICS_DAILY_PREFIX = "analytics:daily"

TRENDING_THEMES_KEY = "trending:themes"
TRENDING_EMOTIONS_KEY = "trending:emotions"


def rate_limit_key(key: str) -> str:
    return f"{RATE_LIMIT_PREFIX}:{key}"


def tag_key(tag: str) -> str:
    return f"{TAG_PREFIX}:{tag}"


def chat_stream_key(conversation_id: str) -> str:
    return f"{CHAT_STREAM_PREFIX}:{conversation_id}"


def activity_stream_key(user_id: str) -> str:
    return f"{ACTIVITY_STREAM_PREFIX}:{user_id}"


def session_key(session_id: str) -> str:
    return f"{SESSION_PREFIX}:{session_id}"


def user_key(user_id: str, *parts: str) -> str:
    """Build ``user:<id>:<part>:<part>...``."""
    return ":".join((USER_PREFIX, user_id) + tuple(str(p) for p in parts))


def user_channel(user_id: str) -> str:
    """Default real-time channel for a user."""
    return f"{USER_PREFIX}:{user_id}"


# =============================================================================
# APPLICATION VIEW TTLs (seconds)
# =============================================================================

VIEW_TTLS: Dict[str, int] = {
    "user_profile": 3600,       # 1 hour
    "user_init_status": 1800,   # 30 minutes
    "muse_config": 7200,        # 2 hours
    "memories_list": 300,       # 5 minutes
    "memory_detail": 600,       # 10 minutes
    "first_scan": 1800,         # 30 minutes
    "artefacts": 900,           # 15 minutes
    "data_sources": 1800,       # 30 minutes
    "conversations": 300,       # 5 minutes
}

SECONDS_PER_DAY = 86400

# =============================================================================
# MEMOIZATION KEY FIELDS
# =============================================================================

# Generation options that change model output. Every one of these is folded
# into the memoization key; unknown extra options are folded in as well.
MEMO_KEY_OPTIONS: FrozenSet[str] = frozenset([
    'provider',
    'model',
    'model_type',
    'temperature',
    'max_tokens',
    'use_thinking',
    'cached_context',
    'system_prompt',
])

# Options that only affect delivery, never content.
MEMO_TRANSPORT_OPTIONS: FrozenSet[str] = frozenset([
    'stream',
])
