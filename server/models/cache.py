"""Pydantic and dataclass models for the coordination layer.

Inputs arriving from request handlers (chat turns, LLM calls, activity
events) are Pydantic models so camelCase payloads validate the same as
snake_case ones. Results handed back to callers are plain dataclasses with
``to_dict`` for JSON responses.
"""

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.exceptions import InvalidMemoResultError


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# INPUT MODELS
# =============================================================================

class ChatMessage(BaseModel):
    """One conversation turn as appended to a chat stream."""
    role: str
    content: str
    timestamp: str = Field(default_factory=_utc_now_iso)


class ActivityEvent(BaseModel):
    """User activity appended to ``activity:<user>``."""
    type: str
    data: Any = None
    timestamp: str = Field(default_factory=_utc_now_iso)


class LLMMessage(BaseModel):
    """Message sent to a generative model. Extra fields are kept."""
    model_config = ConfigDict(extra="allow")

    role: Literal["user", "assistant", "system"]
    content: str


class GenerationOptions(BaseModel):
    """Generation parameters for an LLM call.

    Every declared field except ``stream`` changes model output and is part
    of the memoization key. Extra provider options are accepted and folded
    into the key as well.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True, protected_namespaces=())

    provider: Optional[str] = None
    model: Optional[str] = None
    model_type: Optional[Literal["thinking", "chat", "auto"]] = Field(default=None, alias="modelType")
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, ge=1, alias="maxTokens")
    use_thinking: Optional[bool] = Field(default=None, alias="useThinking")
    cached_context: Optional[str] = Field(default=None, alias="cachedContext")
    system_prompt: Optional[str] = Field(default=None, alias="systemPrompt")
    stream: Optional[bool] = None


# =============================================================================
# RESULT MODELS
# =============================================================================

@dataclass
class RateLimitResult:
    """Outcome of a fixed-window rate-limit check.

    ``reset_at`` is a Unix timestamp (seconds) at which the current window
    ends. ``degraded`` is True when the limiter could not reach the store
    and failed open.
    """
    allowed: bool
    remaining: int
    reset_at: float
    limit: int
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "reset_at": self.reset_at,
            "limit": self.limit,
        }

    def headers(self) -> Dict[str, str]:
        """Standard rate-limit response headers."""
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }


@dataclass
class StreamEntry:
    """Entry read back from an append-only stream."""
    stream: str
    entry_id: str
    fields: Dict[str, Any] = field(default_factory=dict)

    @property
    def role(self) -> Optional[str]:
        return self.fields.get("role")

    @property
    def content(self) -> Optional[str]:
        return self.fields.get("content")

    @property
    def timestamp(self) -> Optional[str]:
        return self.fields.get("timestamp")

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.entry_id, **self.fields}


@dataclass
class MemoizedResult:
    """Full response payload of a memoized LLM call.

    ``cached`` is never persisted; it is set on the way out to tell the
    caller whether the backend was skipped.
    """
    content: str
    model: Optional[str] = None
    provider: Optional[str] = None
    thinking: Optional[str] = None
    usage: Dict[str, int] = field(default_factory=dict)
    cached: bool = False
    cached_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """Payload stored in the cache (no ``cached`` flag)."""
        return {
            "content": self.content,
            "model": self.model,
            "provider": self.provider,
            "thinking": self.thinking,
            "usage": dict(self.usage),
            "cached_at": self.cached_at if self.cached_at is not None else time.time(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], cached: bool = False) -> "MemoizedResult":
        """Build from a stored or backend payload.

        Raises:
            InvalidMemoResultError: payload is not a mapping with string ``content``
        """
        if not isinstance(data, Mapping):
            raise InvalidMemoResultError(data, f"expected a mapping, got {type(data).__name__}")
        if not isinstance(data.get("content"), str):
            raise InvalidMemoResultError(data, "missing string 'content'")
        usage = data.get("usage") or {}
        if not isinstance(usage, Mapping):
            raise InvalidMemoResultError(data, "'usage' must be a mapping")
        return cls(
            content=data["content"],
            model=data.get("model"),
            provider=data.get("provider"),
            thinking=data.get("thinking"),
            usage=dict(usage),
            cached=cached,
            cached_at=data.get("cached_at"),
        )


@dataclass
class WarmReport:
    """Per-loader outcome of a cache warm job."""
    user_id: str
    cached: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "cached": list(self.cached),
            "failed": dict(self.failed),
            "success": self.success,
        }


def decode_field(value: str) -> Any:
    """Decode a stream field value written by ``encode_field``."""
    if value and value[0] in "{[":
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


def encode_field(value: Any) -> str:
    """Encode a stream field value; containers become JSON."""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if value is None:
        return ""
    return str(value)
