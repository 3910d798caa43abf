from __future__ import annotations

import hashlib
import time
import uuid
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisTokenStore:
    """TokenStore backed by Redis so single-use tokens survive restarts and
    are shared between instances."""

    # Delete only while the key still holds the expected value
    _COMPARE_AND_DELETE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client=None,
        socket_timeout: float = 5.0,
        prefix: str = "pimify:tok:",
    ):
        if client is None and not redis_url:
            raise ValueError("redis_url or client is required")
        self.redis_url = redis_url
        self.prefix = prefix
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._compare_and_delete = self.client.register_script(
            self._COMPARE_AND_DELETE_SCRIPT
        )

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity with a short-lived synchronous client."""
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds is None:
            await self.client.set(self._key(key), value)
        else:
            await self.client.set(self._key(key), value, ex=max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(self._key(key))

    async def delete(self, key: str) -> bool:
        return bool(await self.client.delete(self._key(key)))

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        deleted = await self._compare_and_delete(keys=[self._key(key)], args=[expected])
        return bool(int(deleted or 0))

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()


class RedisRateLimiter:
    """Sliding-window request log kept in a Redis sorted set per key."""

    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)

if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local retry_after = window
  if oldest[2] then
    retry_after = tonumber(oldest[2]) + window - now
  end
  if retry_after < 1 then
    retry_after = 1
  end
  return {0, count, retry_after}
end

redis.call('ZADD', key, now, member)
redis.call('PEXPIRE', key, window)
return {1, count + 1, 0}
"""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client=None,
        socket_timeout: float = 5.0,
        clock=None,
    ):
        if client is None and not redis_url:
            raise ValueError("redis_url or client is required")
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._clock = clock or (lambda: time.time() * 1000)
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash the bucket key so identities cannot inject delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"pimify:rate:{digest}"

    async def hit(self, key: str, max_requests: int, window_ms: int) -> Tuple[bool, int, int]:
        """Record one request; returns (allowed, count_in_window, retry_after_ms)."""
        now_ms = int(self._clock())
        allowed, count, retry_after = await self._sliding_window(
            keys=[self._normalize_rate_key(key)],
            args=[now_ms, int(window_ms), int(max_requests), f"{now_ms}-{uuid.uuid4().hex}"],
        )
        return bool(int(allowed)), int(count), int(retry_after)

    async def reset(self, key: str) -> None:
        await self.client.delete(self._normalize_rate_key(key))

    def evict_idle(self) -> int:
        # Idle buckets expire through PEXPIRE
        return 0


__all__ = ["RedisRateLimiter", "RedisTokenStore"]
