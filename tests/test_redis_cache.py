from unittest.mock import AsyncMock, MagicMock

from otpgate.storage.redis_cache import RedisCache, SyncRedisCache


def _async_cache():
    cache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://unused"
    cache.client = MagicMock()
    cache.client.get = AsyncMock(return_value="payload")
    cache.client.set = AsyncMock()
    cache.client.delete = AsyncMock()
    return cache


class TestRedisCache:
    async def test_set_uses_expiry(self):
        cache = _async_cache()
        await cache.set("otp_context:abc", "payload", 0)

        cache.client.set.assert_awaited_once_with("otp_context:abc", "payload", ex=1)

    async def test_get_and_remove(self):
        cache = _async_cache()

        assert await cache.get("otp_context:abc") == "payload"
        await cache.remove("otp_context:abc")
        cache.client.delete.assert_awaited_once_with("otp_context:abc")


class TestSyncRedisCache:
    async def test_async_api_over_sync_client(self):
        cache = SyncRedisCache.__new__(SyncRedisCache)
        cache.redis_url = "redis://unused"
        cache._sync_client = MagicMock()
        cache._sync_client.get.return_value = "v"

        await cache.set("k", "v", 30)
        assert await cache.get("k") == "v"
        await cache.remove("k")

        cache._sync_client.set.assert_called_once_with("k", "v", ex=30)
        cache._sync_client.delete.assert_called_once_with("k")
