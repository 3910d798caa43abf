"""Tests for the Redis-backed token store and rate limiter using mocked clients."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from pimify_identity.service.errors import ErrorKind
from pimify_identity.service.rate_limit import RateLimitConfig, RateLimiter
from pimify_identity.storage.redis_cache import RedisRateLimiter, RedisTokenStore
from pimify_identity.storage.token_store import MemoryTokenStore


def _client(script_result=None):
    client = MagicMock()
    client.set = AsyncMock()
    client.get = AsyncMock(return_value=None)
    client.delete = AsyncMock(return_value=1)
    client.close = AsyncMock()
    client.connection_pool.disconnect = AsyncMock()
    script = AsyncMock(return_value=script_result)
    client.register_script.return_value = script
    return client, script


class TestRedisTokenStore:
    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            RedisTokenStore()

    async def test_put_prefixes_key_and_sets_ttl(self):
        client, _ = _client()
        tokens = RedisTokenStore(client=client)

        await tokens.put("reset:abc", "user-1", ttl_seconds=3600)
        await tokens.put("forever", "v")

        client.set.assert_any_await("pimify:tok:reset:abc", "user-1", ex=3600)
        client.set.assert_any_await("pimify:tok:forever", "v")

    async def test_ttl_is_at_least_one_second(self):
        client, _ = _client()
        await RedisTokenStore(client=client).put("k", "v", ttl_seconds=0)
        client.set.assert_awaited_once_with("pimify:tok:k", "v", ex=1)

    async def test_get_and_delete(self):
        client, _ = _client()
        client.get.return_value = "user-1"
        tokens = RedisTokenStore(client=client)

        assert await tokens.get("k") == "user-1"
        assert await tokens.delete("k") is True
        client.get.assert_awaited_once_with("pimify:tok:k")
        client.delete.assert_awaited_once_with("pimify:tok:k")

    @pytest.mark.parametrize("reply,expected", [(1, True), (0, False), (None, False)])
    async def test_compare_and_delete_uses_script(self, reply, expected):
        client, script = _client(script_result=reply)
        tokens = RedisTokenStore(client=client)

        assert await tokens.compare_and_delete("refresh:s1", "jti-1") is expected
        script.assert_awaited_once_with(keys=["pimify:tok:refresh:s1"], args=["jti-1"])
        assert "GET" in client.register_script.call_args.args[0]

    async def test_close(self):
        client, _ = _client()
        await RedisTokenStore(client=client).close()
        client.close.assert_awaited_once()
        client.connection_pool.disconnect.assert_awaited_once()


class TestRedisRateLimiter:
    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            RedisRateLimiter()

    async def test_hit_passes_window_arguments(self):
        client, script = _client(script_result=[1, 3, 0])
        limiter = RedisRateLimiter(client=client, clock=lambda: 5_000.7)

        assert await limiter.hit("10.0.0.1:auth:login", 5, 60_000) == (True, 3, 0)

        kwargs = script.await_args.kwargs
        assert kwargs["keys"][0].startswith("pimify:rate:")
        assert "10.0.0.1" not in kwargs["keys"][0]
        assert kwargs["args"][:3] == [5000, 60_000, 5]
        assert kwargs["args"][3].startswith("5000-")

    async def test_blocked_hit(self):
        client, _ = _client(script_result=["0", "5", "1234"])
        limiter = RedisRateLimiter(client=client, clock=lambda: 0)

        assert await limiter.hit("k", 5, 60_000) == (False, 5, 1234)

    async def test_same_identity_maps_to_same_key(self):
        assert RedisRateLimiter._normalize_rate_key("a:b") == RedisRateLimiter._normalize_rate_key("a:b")
        assert RedisRateLimiter._normalize_rate_key("a:b") != RedisRateLimiter._normalize_rate_key("a:c")

    async def test_reset_deletes_bucket(self):
        client, _ = _client()
        limiter = RedisRateLimiter(client=client)

        await limiter.reset("k")
        client.delete.assert_awaited_once_with(RedisRateLimiter._normalize_rate_key("k"))

    async def test_rate_limiter_over_redis_backend(self):
        client, _ = _client(script_result=[0, 2, 900])
        limiter = RateLimiter(
            default=RateLimitConfig(2, 1000), backend=RedisRateLimiter(client=client)
        )

        result = await limiter.check("10.0.0.1")

        assert result.error == ErrorKind.RATE_LIMIT_EXCEEDED
        assert result.detail == {"retry_after_ms": 900, "limit": 2, "window_ms": 1000}


class TestMemoryTokenStore:
    async def test_ttl_expiry(self, monotonic):
        tokens = MemoryTokenStore(clock=monotonic)
        await tokens.put("k", "v", ttl_seconds=10)

        monotonic.advance(9.9)
        assert await tokens.get("k") == "v"
        monotonic.advance(0.1)
        assert await tokens.get("k") is None

    async def test_compare_and_delete_is_exactly_once(self):
        tokens = MemoryTokenStore()
        await tokens.put("k", "v")

        assert await tokens.compare_and_delete("k", "other") is False
        assert await tokens.compare_and_delete("k", "v") is True
        assert await tokens.compare_and_delete("k", "v") is False

    async def test_purge_expired(self, monotonic):
        tokens = MemoryTokenStore(clock=monotonic)
        await tokens.put("a", "1", ttl_seconds=5)
        await tokens.put("b", "2")
        monotonic.advance(6)

        assert tokens.purge_expired() == 1
        assert len(tokens) == 1
