"""
Unit tests for container wiring, lifecycle and store status.
"""

import pytest
from dependency_injector import providers

from core.config import Settings
from core.container import Container, shutdown, startup
from core.health import get_store_status
from core.memory_store import MemoryStore
from services.user_cache import UserDataCache


@pytest.fixture
def container():
    container = Container()
    container.settings.override(providers.Object(
        Settings(_env_file=None, redis_enabled=False, cache_ttl=120, log_format="console")
    ))
    yield container
    container.reset_singletons()


class TestContainer:

    def test_services_share_one_store(self, container):
        store = container.store()

        assert isinstance(store, MemoryStore)
        assert container.cache().store is store
        assert container.rate_limiter().store is store
        assert container.tagged_cache().cache is container.cache()
        assert isinstance(container.user_cache(), UserDataCache)

    def test_settings_flow_into_services(self, container):
        assert container.cache().default_ttl == 120
        assert container.streams().activity_maxlen == 1000
        assert container.sessions().default_ttl == 3600

    @pytest.mark.asyncio
    async def test_startup_status_shutdown(self, container):
        await startup(container)

        status = await get_store_status(container.store(), container.cache(), container.settings())
        assert status["status"] == "healthy"
        assert status["backend"] == "memory"
        assert status["checks"] == {"store": True, "cache": True, "streams": True, "expire_flags": True}
        assert status["features"]["redis"] is False

        await shutdown(container)

    @pytest.mark.asyncio
    async def test_status_degraded_when_store_down(self, container, failing_store):
        container.store.override(providers.Object(failing_store))

        status = await get_store_status(container.store(), container.cache(), container.settings())

        assert status["status"] == "degraded"
        assert status["checks"]["store"] is False
