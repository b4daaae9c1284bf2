"""Fire-and-forget publish/subscribe for real-time UI nudges.

Delivery is at most once, to whoever is subscribed at the moment of
``publish``. Nothing is persisted; late subscribers miss earlier messages.
Durable history belongs in ``MessageStream``.
"""

import json
from typing import Any, Optional

from constants import user_channel
from core.failopen import TRANSPORT_ERRORS, fail_open
from core.logging import get_logger, log_store_failure
from core.store import KeyValueStore, Subscription
from services.cache import require_key

logger = get_logger(__name__)


class ChannelSubscription:
    """Decoded view over a store subscription.

    ``async for message in subscription`` yields JSON-decoded payloads until
    ``close()`` is called. Undecodable payloads are skipped. A transport
    failure mid-stream ends the iteration instead of raising.
    """

    def __init__(self, channel: str, subscription: Optional[Subscription]):
        self.channel = channel
        self._subscription = subscription

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        while self._subscription is not None:
            try:
                raw = await self._subscription.__anext__()
            except TRANSPORT_ERRORS as e:
                log_store_failure(logger, "subscription.next", e, channel=self.channel)
                await self.close()
                break
            try:
                return json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                logger.warning("Dropping undecodable pub/sub message", channel=self.channel)
        raise StopAsyncIteration

    async def close(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return
        try:
            await subscription.close()
        except TRANSPORT_ERRORS as e:
            log_store_failure(logger, "subscription.close", e, channel=self.channel)

    @property
    def closed(self) -> bool:
        return self._subscription is None or self._subscription.closed

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


class PubSub:
    """Channel publisher / subscriber over the shared store."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    @fail_open(0)
    async def publish(self, channel: str, message: Any) -> int:
        """Publish a JSON message; returns how many subscribers received it."""
        require_key(channel, "channel")
        receivers = await self.store.publish(channel, json.dumps(message, default=str))
        logger.debug("Published", channel=channel, receivers=receivers)
        return receivers

    async def publish_to_user(self, user_id: str, message: Any) -> int:
        return await self.publish(user_channel(require_key(user_id, "user id")), message)

    async def subscribe(self, channel: str) -> ChannelSubscription:
        """Subscribe to ``channel``.

        If the store is unreachable the returned subscription is already
        closed and yields nothing, so a real-time handler degrades to a
        quiet connection instead of an error.
        """
        require_key(channel, "channel")
        try:
            subscription = await self.store.subscribe(channel)
        except TRANSPORT_ERRORS as e:
            log_store_failure(logger, "PubSub.subscribe", e, channel=channel)
            subscription = None
        return ChannelSubscription(channel, subscription)
