"""Per-user derived views cached through ``TaggedCache``.

Key schema (all under ``user:<id>:``):
    profile, init_status, first_scan, pending_artefacts, data_sources,
    conversations, memories:page:<n>, memory:<memoryId>,
    conversation:<conversationId>:messages, artefact:<artefactId>

Every view carries the ``user:<id>`` tag plus a family tag, so a settings
change can drop everything for one user and a new memory can drop just the
memory pages. Sessions live under ``session:<id>``.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from constants import VIEW_TTLS, session_key, user_key
from core.exceptions import CacheWarmError
from core.logging import get_logger
from models.cache import WarmReport
from services.cache import Cache, require_key
from services.tagged_cache import TaggedCache

logger = get_logger(__name__)

Loader = Callable[[], Awaitable[Any]]


def user_tag(user_id: str) -> str:
    return f"user:{user_id}"


class UserDataCache:
    """Read/write helpers for the cached views of one user's data."""

    def __init__(self, tagged: TaggedCache, ttls: Optional[Mapping[str, int]] = None):
        self.tagged = tagged
        self.cache: Cache = tagged.cache
        self.ttls = {**VIEW_TTLS, **(ttls or {})}

    async def _put(self, user_id: str, view: str, key: str, value: Any, *family_tags: str) -> bool:
        return await self.tagged.set_with_tags(
            key, value, self.ttls[view], [user_tag(user_id), *family_tags]
        )

    # =========================================================================
    # Profile & initialization
    # =========================================================================

    async def cache_profile(self, user_id: str, profile: Dict[str, Any]) -> bool:
        require_key(user_id, "user id")
        return await self._put(user_id, "user_profile", user_key(user_id, "profile"), profile, "profiles")

    async def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self.cache.get(user_key(require_key(user_id, "user id"), "profile"))

    async def cache_init_status(self, user_id: str, status: Dict[str, Any]) -> bool:
        """Call whenever the user completes an initialization step."""
        require_key(user_id, "user id")
        return await self._put(user_id, "user_init_status", user_key(user_id, "init_status"),
                               status, "init_status")

    async def get_init_status(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self.cache.get(user_key(require_key(user_id, "user id"), "init_status"))

    async def invalidate_user(self, user_id: str) -> int:
        """Drop every tagged view of a user (e.g. after a settings change)."""
        return await self.tagged.invalidate_tag(user_tag(require_key(user_id, "user id")))

    # =========================================================================
    # Muse output
    # =========================================================================

    async def cache_first_scan(self, user_id: str, scan: Any) -> bool:
        require_key(user_id, "user id")
        return await self._put(user_id, "first_scan", user_key(user_id, "first_scan"), scan, "scans")

    async def get_first_scan(self, user_id: str) -> Optional[Any]:
        return await self.cache.get(user_key(require_key(user_id, "user id"), "first_scan"))

    async def cache_pending_artefacts(self, user_id: str, artefacts: Dict[str, Any]) -> bool:
        require_key(user_id, "user id")
        return await self._put(user_id, "artefacts", user_key(user_id, "pending_artefacts"),
                               artefacts, "artefacts")

    async def get_pending_artefacts(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self.cache.get(user_key(require_key(user_id, "user id"), "pending_artefacts"))

    async def cache_artefact(self, user_id: str, artefact: Dict[str, Any]) -> bool:
        """Cache one artefact by its ``id`` (untagged, expires with TTL)."""
        require_key(user_id, "user id")
        artefact_id = require_key(str(artefact.get("id") or ""), "artefact id")
        return await self.cache.set(user_key(user_id, "artefact", artefact_id), artefact,
                                    self.ttls["artefacts"])

    # =========================================================================
    # Memories
    # =========================================================================

    async def cache_memories_list(self, user_id: str, page: int, memories: List[Any]) -> bool:
        require_key(user_id, "user id")
        return await self._put(user_id, "memories_list", user_key(user_id, "memories", "page", page),
                               memories, f"memories:{user_id}", "memories_list")

    async def get_memories_list(self, user_id: str, page: int) -> Optional[List[Any]]:
        return await self.cache.get(user_key(require_key(user_id, "user id"), "memories", "page", page))

    async def cache_memory(self, user_id: str, memory_id: str, memory: Dict[str, Any]) -> bool:
        require_key(user_id, "user id")
        require_key(memory_id, "memory id")
        return await self._put(user_id, "memory_detail", user_key(user_id, "memory", memory_id),
                               memory, f"memories:{user_id}", f"memory:{memory_id}")

    async def get_memory(self, user_id: str, memory_id: str) -> Optional[Dict[str, Any]]:
        require_key(memory_id, "memory id")
        return await self.cache.get(user_key(require_key(user_id, "user id"), "memory", memory_id))

    async def invalidate_memories(self, user_id: str) -> int:
        """Drop memory pages and details, e.g. when a memory is added."""
        return await self.tagged.invalidate_tag(f"memories:{require_key(user_id, 'user id')}")

    # =========================================================================
    # Data sources & conversations
    # =========================================================================

    async def cache_data_sources(self, user_id: str, sources: List[Any]) -> bool:
        require_key(user_id, "user id")
        return await self._put(user_id, "data_sources", user_key(user_id, "data_sources"),
                               sources, f"data_sources:{user_id}")

    async def get_data_sources(self, user_id: str) -> Optional[List[Any]]:
        return await self.cache.get(user_key(require_key(user_id, "user id"), "data_sources"))

    async def invalidate_data_sources(self, user_id: str) -> int:
        return await self.tagged.invalidate_tag(f"data_sources:{require_key(user_id, 'user id')}")

    async def cache_conversations(self, user_id: str, conversations: List[Any]) -> bool:
        require_key(user_id, "user id")
        return await self._put(user_id, "conversations", user_key(user_id, "conversations"),
                               conversations, "conversations")

    async def get_conversations(self, user_id: str) -> Optional[List[Any]]:
        return await self.cache.get(user_key(require_key(user_id, "user id"), "conversations"))

    async def cache_conversation_messages(self, user_id: str, conversation_id: str,
                                          messages: List[Any]) -> bool:
        require_key(user_id, "user id")
        require_key(conversation_id, "conversation id")
        return await self._put(user_id, "conversations",
                               user_key(user_id, "conversation", conversation_id, "messages"),
                               messages, f"conversation:{conversation_id}")

    async def get_conversation_messages(self, user_id: str, conversation_id: str) -> Optional[List[Any]]:
        require_key(conversation_id, "conversation id")
        return await self.cache.get(
            user_key(require_key(user_id, "user id"), "conversation", conversation_id, "messages")
        )

    async def invalidate_conversation(self, conversation_id: str) -> int:
        return await self.tagged.invalidate_tag(f"conversation:{require_key(conversation_id, 'conversation id')}")

    # =========================================================================
    # Clearing & warming
    # =========================================================================

    async def clear_user(self, user_id: str) -> int:
        """Delete every ``user:<id>:*`` key, tagged or not, plus the user tag set."""
        require_key(user_id, "user id")
        deleted = await self.invalidate_user(user_id)
        deleted += await self.cache.delete_pattern(user_key(user_id, "*"))
        logger.info("User cache cleared", user_id=user_id, deleted=deleted)
        return deleted

    async def warm_user_data(self, user_id: str, loaders: Mapping[str, Loader]) -> WarmReport:
        """Fetch views concurrently and cache every one that succeeds.

        Args:
            user_id: User whose views are warmed
            loaders: Async callables keyed by view name: ``profile``,
                ``init_status``, ``data_sources``, ``memories`` (page 1),
                ``conversations``

        Returns:
            WarmReport listing cached and failed views

        Raises:
            CacheWarmError: every loader (or every write) failed
        """
        require_key(user_id, "user id")
        writers = {
            "profile": lambda data: self.cache_profile(user_id, data),
            "init_status": lambda data: self.cache_init_status(user_id, data),
            "data_sources": lambda data: self.cache_data_sources(user_id, data),
            "memories": lambda data: self.cache_memories_list(user_id, 1, data),
            "conversations": lambda data: self.cache_conversations(user_id, data),
        }
        unknown = set(loaders) - set(writers)
        if unknown:
            raise ValueError(f"Unknown warm targets: {', '.join(sorted(unknown))}")
        return await self._warm(user_id, loaders, writers)

    async def warm_muse_data(self, user_id: str, first_scan: Loader,
                             artefacts: Loader) -> WarmReport:
        """Warm the first scan and cache recent artefacts individually."""
        require_key(user_id, "user id")

        async def write_artefacts(items: List[Dict[str, Any]]) -> bool:
            results = [await self.cache_artefact(user_id, item) for item in items or []]
            return all(results)

        writers = {
            "first_scan": lambda data: self.cache_first_scan(user_id, data),
            "artefacts": write_artefacts,
        }
        return await self._warm(user_id, {"first_scan": first_scan, "artefacts": artefacts}, writers)

    async def _warm(self, user_id: str, loaders: Mapping[str, Loader],
                    writers: Mapping[str, Callable[[Any], Awaitable[bool]]]) -> WarmReport:
        report = WarmReport(user_id=user_id)
        if not loaders:
            return report

        names = list(loaders)
        results = await asyncio.gather(*(loaders[name]() for name in names), return_exceptions=True)

        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                report.failed[name] = f"{type(result).__name__}: {result}"
            elif await writers[name](result):
                report.cached.append(name)
            else:
                report.failed[name] = "cache write failed"

        if not report.cached:
            logger.error("Cache warm failed", user_id=user_id, failed=report.failed)
            raise CacheWarmError(user_id, report.failed)

        logger.info("Cache warmed", user_id=user_id, cached=report.cached, failed=list(report.failed))
        return report


class SessionStore:
    """Session payloads under ``session:<id>``."""

    def __init__(self, cache: Cache, default_ttl: int = 3600):
        self.cache = cache
        self.default_ttl = default_ttl

    async def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        return await self.cache.get(session_key(require_key(session_id, "session id")))

    async def set(self, session_id: str, data: Dict[str, Any], ttl: Optional[int] = None) -> bool:
        return await self.cache.set(session_key(require_key(session_id, "session id")), data,
                                    ttl or self.default_ttl)

    async def delete(self, session_id: str) -> bool:
        return await self.cache.delete(session_key(require_key(session_id, "session id")))
