"""Content-addressed memoization of expensive generative calls.

The cache key is a SHA-256 digest of a canonical serialization of the full
input: the ordered message list plus every generation option that can
change the output (constants.MEMO_KEY_OPTIONS, plus any unknown extra
option). Identical inputs therefore always land on the same entry, and any
option difference lands on a different one.

Entries are never invalidated: the key already encodes the whole input, so
an entry can only go stale by expiring. Digest collisions are not handled.
"""

import hashlib
import json
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from constants import CONTEXT_PREFIX, LLM_RESPONSE_PREFIX, MEMO_TRANSPORT_OPTIONS, MEMORY_ANALYSIS_PREFIX
from core.exceptions import InvalidMemoResultError
from core.logging import get_logger
from models.cache import GenerationOptions, LLMMessage, MemoizedResult
from services.cache import Cache, require_key, require_ttl

logger = get_logger(__name__)

# Bump when the normalization changes so old entries stop matching.
KEY_VERSION = 1

MessageInput = Union[LLMMessage, Mapping[str, Any]]
OptionsInput = Union[GenerationOptions, Mapping[str, Any], None]


def canonical_json(value: Any) -> str:
    """Canonical JSON (sorted keys, no extra whitespace)."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def hash_inputs(inputs: Any) -> str:
    """Deterministic SHA-256 hex digest of canonicalized inputs."""
    return hashlib.sha256(canonical_json(inputs).encode("utf-8")).hexdigest()


def normalize_messages(messages: Sequence[MessageInput]) -> List[Dict[str, Any]]:
    """Validate messages and reduce them to plain, order-preserving dicts."""
    if isinstance(messages, (str, bytes)) or not isinstance(messages, Sequence):
        raise ValueError("messages must be an ordered sequence")
    normalized = []
    for message in messages:
        if not isinstance(message, LLMMessage):
            message = LLMMessage.model_validate(message)
        normalized.append(message.model_dump())
    return normalized


def normalize_options(options: OptionsInput) -> Dict[str, Any]:
    """Reduce generation options to the fields that affect output.

    Aliases (``maxTokens``) and field names (``max_tokens``) normalize to
    the same entry, numbers are coerced to their declared types, unset and
    ``None`` are equivalent, and transport-only options are dropped.
    """
    if not isinstance(options, GenerationOptions):
        options = GenerationOptions.model_validate(dict(options or {}))
    return options.model_dump(exclude_none=True, exclude=set(MEMO_TRANSPORT_OPTIONS))


def memo_key(messages: Sequence[MessageInput], options: OptionsInput = None) -> str:
    """Cache key for an LLM call: ``llm:response:<sha256>``."""
    payload = {
        "v": KEY_VERSION,
        "messages": normalize_messages(messages),
        "options": normalize_options(options),
    }
    return f"{LLM_RESPONSE_PREFIX}:{hash_inputs(payload)}"


class ContentAddressedMemoizer:
    """Skip repeat invocations of an expensive backend for identical input."""

    def __init__(self, cache: Cache, default_ttl: int = 3600):
        self.cache = cache
        self.default_ttl = require_ttl(default_ttl)

    async def lookup(self, messages: Sequence[MessageInput],
                     options: OptionsInput = None) -> Optional[MemoizedResult]:
        """Return the stored result flagged ``cached=True``, or None on a miss."""
        key = memo_key(messages, options)
        data = await self.cache.get(key)
        if data is None:
            return None
        try:
            result = MemoizedResult.from_dict(data, cached=True)
        except InvalidMemoResultError as e:
            logger.warning("Malformed memoized result treated as miss", cache_key=key, error=str(e))
            return None
        logger.debug("Memoization hit", cache_key=key[-16:])
        return result

    async def store(self, messages: Sequence[MessageInput], options: OptionsInput,
                    result: Union[MemoizedResult, Mapping[str, Any]],
                    ttl: Optional[int] = None) -> bool:
        """Store a backend result under its content address.

        Raises:
            InvalidMemoResultError: result has no string ``content``
        """
        key = memo_key(messages, options)
        if not isinstance(result, MemoizedResult):
            result = MemoizedResult.from_dict(result)
        payload = result.to_dict()
        payload["cached_at"] = time.time()
        return await self.cache.set(key, payload, require_ttl(ttl) or self.default_ttl)

    async def memoize(self, messages: Sequence[MessageInput], options: OptionsInput,
                      compute: Callable[[], Awaitable[Union[MemoizedResult, Mapping[str, Any]]]],
                      ttl: Optional[int] = None) -> MemoizedResult:
        """Return the memoized result, invoking ``compute`` only on a miss.

        Errors raised by ``compute`` propagate; the backend call is the
        caller's primary work. A failed write after a successful compute is
        logged and the fresh result still returned.

        Raises:
            InvalidMemoResultError: ``compute`` returned something without
                string ``content``. Nothing is cached and the raw result is
                on the exception's ``payload``.
        """
        cached = await self.lookup(messages, options)
        if cached is not None:
            return cached

        fresh = await compute()
        if not isinstance(fresh, MemoizedResult):
            fresh = MemoizedResult.from_dict(fresh)
        fresh.cached = False
        if not await self.store(messages, options, fresh, ttl):
            logger.warning("Memoized result not stored", model=fresh.model)
        return fresh

    # =========================================================================
    # Derived-data caches keyed by content
    # =========================================================================

    @staticmethod
    def memory_analysis_key(memory_ids: Iterable[str]) -> str:
        ids = sorted({require_key(str(memory_id), "memory id") for memory_id in memory_ids})
        if not ids:
            raise ValueError("memory_ids must not be empty")
        return f"{MEMORY_ANALYSIS_PREFIX}:{hash_inputs(ids)}"

    async def lookup_memory_analysis(self, memory_ids: Iterable[str]) -> Optional[Any]:
        """Analysis of a set of memories; order of ids does not matter."""
        return await self.cache.get(self.memory_analysis_key(memory_ids))

    async def store_memory_analysis(self, memory_ids: Iterable[str], analysis: Any,
                                    ttl: Optional[int] = None) -> bool:
        return await self.cache.set(self.memory_analysis_key(memory_ids), analysis,
                                    require_ttl(ttl) or self.default_ttl)

    @staticmethod
    def context_key(user_id: str, conversation_id: str, message: str) -> str:
        require_key(user_id, "user id")
        require_key(conversation_id, "conversation id")
        return f"{CONTEXT_PREFIX}:{user_id}:{conversation_id}:{hash_inputs(message)}"

    async def lookup_context(self, user_id: str, conversation_id: str, message: str) -> Optional[Any]:
        """Retrieved context for a message in a conversation."""
        return await self.cache.get(self.context_key(user_id, conversation_id, message))

    async def store_context(self, user_id: str, conversation_id: str, message: str,
                            context: Any, ttl: Optional[int] = None) -> bool:
        return await self.cache.set(self.context_key(user_id, conversation_id, message), context,
                                    require_ttl(ttl) or self.default_ttl)
