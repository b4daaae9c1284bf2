"""Append-only message streams for conversations and activity feeds.

Key schema:
    chat:<conversationId>   -> STREAM {role, content, timestamp}
    activity:<userId>       -> STREAM {type, data, timestamp}, ~1000 newest

Entry ids are assigned by the store and increase monotonically per stream,
so append order is read order. Trimming is approximate (``MAXLEN ~``): the
store may keep somewhat more than ``max_len`` entries, which keeps appends
cheap under concurrent writers. Chat streams are never trimmed implicitly.
"""

from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel

from constants import activity_stream_key, chat_stream_key
from core.failopen import fail_open
from core.logging import get_logger
from core.store import KeyValueStore
from models.cache import ActivityEvent, ChatMessage, StreamEntry, decode_field, encode_field
from services.cache import require_key

logger = get_logger(__name__)

# Fields holding JSON-encoded containers; everything else is read back verbatim.
JSON_FIELDS = frozenset(["data", "metadata"])

DEFAULT_ACTIVITY_MAXLEN = 1000


class MessageStream:
    """Bounded append-only log per stream key with most-recent-N reads."""

    def __init__(self, store: KeyValueStore, activity_maxlen: int = DEFAULT_ACTIVITY_MAXLEN,
                 default_count: int = 50):
        self.store = store
        self.activity_maxlen = activity_maxlen
        self.default_count = default_count

    @fail_open(None)
    async def append(self, stream_key: str, entry: Union[Mapping[str, Any], BaseModel],
                     max_len: Optional[int] = None) -> Optional[str]:
        """Append an entry and return its store-assigned id (None on failure).

        Args:
            stream_key: Stream name (e.g. 'chat:<conversationId>')
            entry: Field mapping or Pydantic model; dicts/lists become JSON
            max_len: Approximate cap applied as part of the append
        """
        require_key(stream_key, "stream")
        if isinstance(entry, BaseModel):
            entry = entry.model_dump()
        fields = {name: encode_field(value) for name, value in entry.items()}
        if not fields:
            raise ValueError("Stream entries need at least one field")

        entry_id = await self.store.xadd(stream_key, fields, maxlen=max_len, approximate=True)
        logger.debug("Stream append", stream=stream_key, entry_id=entry_id)
        return entry_id

    @fail_open(default_factory=list)
    async def recent(self, stream_key: str, count: Optional[int] = None) -> List[StreamEntry]:
        """Most recent ``count`` entries, newest first. Empty on failure."""
        require_key(stream_key, "stream")
        count = self.default_count if count is None else count
        if count <= 0:
            return []
        rows = await self.store.xrevrange(stream_key, count=count)
        return [
            StreamEntry(stream=stream_key, entry_id=entry_id, fields=self._decode(fields))
            for entry_id, fields in rows
        ]

    @fail_open(0)
    async def trim_approx(self, stream_key: str, max_len: int) -> int:
        """Advisory trim to roughly ``max_len`` entries; returns entries removed."""
        require_key(stream_key, "stream")
        if max_len < 0:
            raise ValueError(f"max_len must be >= 0, got {max_len}")
        return await self.store.xtrim(stream_key, max_len, approximate=True)

    @staticmethod
    def _decode(fields: Dict[str, str]) -> Dict[str, Any]:
        return {
            name: decode_field(value) if name in JSON_FIELDS else value
            for name, value in fields.items()
        }

    # =========================================================================
    # Conversation & activity streams
    # =========================================================================

    async def add_chat_message(self, conversation_id: str,
                               message: Union[ChatMessage, Mapping[str, Any]]) -> Optional[str]:
        """Append a conversation turn to ``chat:<conversationId>``."""
        if not isinstance(message, ChatMessage):
            message = ChatMessage.model_validate(message)
        return await self.append(chat_stream_key(require_key(conversation_id, "conversation id")), message)

    async def get_chat_messages(self, conversation_id: str,
                                count: Optional[int] = None) -> List[Dict[str, Any]]:
        """Recent turns of a conversation, newest first, as JSON-ready dicts."""
        entries = await self.recent(chat_stream_key(require_key(conversation_id, "conversation id")), count)
        return [
            {"id": e.entry_id, "role": e.role, "content": e.content, "timestamp": e.timestamp}
            for e in entries
        ]

    async def add_activity(self, user_id: str,
                           activity: Union[ActivityEvent, Mapping[str, Any]]) -> Optional[str]:
        """Append to ``activity:<userId>``, keeping roughly the newest entries."""
        if not isinstance(activity, ActivityEvent):
            activity = ActivityEvent.model_validate(activity)
        return await self.append(
            activity_stream_key(require_key(user_id, "user id")),
            activity,
            max_len=self.activity_maxlen,
        )

    async def get_activity(self, user_id: str, count: Optional[int] = None) -> List[StreamEntry]:
        return await self.recent(activity_stream_key(require_key(user_id, "user id")), count)
