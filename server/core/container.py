"""Dependency injection container for the coordination layer."""

from dependency_injector import containers, providers

from core.config import Settings
from core.failopen import TRANSPORT_ERRORS
from core.health import set_startup_time
from core.logging import configure_logging, get_logger, log_store_failure
from core.store import create_store
from services.analytics import Analytics
from services.cache import Cache
from services.memoizer import ContentAddressedMemoizer
from services.pubsub import PubSub
from services.rate_limit import RateLimiter
from services.streams import MessageStream
from services.tagged_cache import TaggedCache
from services.user_cache import SessionStore, UserDataCache

logger = get_logger(__name__)


class Container(containers.DeclarativeContainer):
    """Coordination layer dependency injection container.

    The store is the only shared resource; every service receives it (or the
    Cache built on it) by injection, so tests override ``store`` with an
    in-memory one.
    """

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Shared store (Redis when enabled, in-memory otherwise)
    store = providers.Singleton(
        create_store,
        settings=settings
    )

    cache = providers.Singleton(
        Cache,
        store=store,
        default_ttl=settings.provided.cache_ttl,
        scan_batch_size=settings.provided.scan_batch_size
    )

    tagged_cache = providers.Singleton(
        TaggedCache,
        cache=cache
    )

    rate_limiter = providers.Singleton(
        RateLimiter,
        store=store,
        default_limit=settings.provided.rate_limit_requests,
        default_window=settings.provided.rate_limit_window
    )

    streams = providers.Singleton(
        MessageStream,
        store=store,
        activity_maxlen=settings.provided.activity_stream_maxlen,
        default_count=settings.provided.chat_history_count
    )

    pubsub = providers.Singleton(
        PubSub,
        store=store
    )

    analytics = providers.Singleton(
        Analytics,
        store=store,
        retention_days=settings.provided.analytics_retention_days
    )

    memoizer = providers.Singleton(
        ContentAddressedMemoizer,
        cache=cache,
        default_ttl=settings.provided.memo_ttl
    )

    user_cache = providers.Singleton(
        UserDataCache,
        tagged=tagged_cache
    )

    sessions = providers.Singleton(
        SessionStore,
        cache=cache,
        default_ttl=settings.provided.session_ttl
    )


async def startup(container: Container) -> None:
    """Configure logging and connect the store.

    An unreachable store is logged, not raised: every service fails open
    per call, and the client reconnects on its own once the server is back.
    """
    configure_logging(container.settings())
    set_startup_time()
    store = container.store()
    try:
        await store.startup()
    except TRANSPORT_ERRORS as e:
        log_store_failure(logger, "startup", e, backend=getattr(store, "kind", "unknown"))


async def shutdown(container: Container) -> None:
    """Let background refreshes finish, then close store connections."""
    await container.tagged_cache().drain()
    await container.store().shutdown()


# Global container instance
container = Container()
