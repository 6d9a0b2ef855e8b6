import pytest

from devradar.core.config import Settings
from devradar.stores.base import StoreUnavailableError
from devradar.stores.factory import open_stores

UNREACHABLE = "redis://127.0.0.1:1/0"


def _settings(**values):
    return Settings(ENV="test", JWT_SECRET="test-secret", **values)


@pytest.mark.asyncio
async def test_memory_backend():
    bundle = await open_stores(_settings(STORE_BACKEND="memory", REDIS_URL=None))
    try:
        assert bundle.backend_name == "memory"
        assert await bundle.presence.ping() is True
    finally:
        await bundle.close()


@pytest.mark.asyncio
async def test_auto_without_url_uses_memory():
    bundle = await open_stores(_settings(STORE_BACKEND="auto", REDIS_URL=None))
    assert bundle.backend_name == "memory"
    await bundle.close()


@pytest.mark.asyncio
async def test_auto_falls_back_when_redis_is_down():
    bundle = await open_stores(_settings(STORE_BACKEND="auto", REDIS_URL=UNREACHABLE))
    assert bundle.backend_name == "memory"
    await bundle.close()


@pytest.mark.asyncio
async def test_explicit_redis_fails_fast():
    with pytest.raises(StoreUnavailableError):
        await open_stores(_settings(STORE_BACKEND="redis", REDIS_URL=UNREACHABLE))
