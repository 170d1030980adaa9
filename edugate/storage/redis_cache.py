from __future__ import annotations

import time
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis

from edugate.config import RateLimitConfig
from edugate.storage.models import RateLimitEntry


class RedisRateLimitStore:
    """Rate-limit registry shared by every instance through Redis."""

    # Lua fixed window with escalating block: atomic increment + compare + block
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local max_attempts = tonumber(ARGV[3])
local block = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'count', 'reset_at', 'blocked_until')
local count = tonumber(data[1])
local reset_at = tonumber(data[2])
local blocked_until = tonumber(data[3])

if blocked_until ~= nil and blocked_until > now then
  return {0, count, tostring(reset_at), tostring(blocked_until)}
end

if count == nil or reset_at == nil or reset_at <= now then
  reset_at = now + window
  redis.call('DEL', key)
  redis.call('HSET', key, 'count', 1, 'reset_at', tostring(reset_at))
  redis.call('EXPIRE', key, math.max(math.ceil(window), 1))
  return {1, 1, tostring(reset_at), ''}
end

count = redis.call('HINCRBY', key, 'count', 1)
if count > max_attempts then
  blocked_until = now + block
  redis.call('HSET', key, 'blocked_until', tostring(blocked_until))
  redis.call('EXPIRE', key, math.max(math.ceil(math.max(reset_at, blocked_until) - now), 1))
  return {0, count, tostring(reset_at), tostring(blocked_until)}
end
return {1, count, tostring(reset_at), ''}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def hit(
        self, key: str, config: RateLimitConfig, now: float
    ) -> Tuple[bool, RateLimitEntry]:
        allowed, count, reset_at, blocked_until = await self._fixed_window(
            keys=[key],
            args=[now, config.window_seconds, config.max_attempts, config.effective_block_seconds],
        )
        entry = RateLimitEntry(
            key=key,
            count=int(count or 0),
            reset_at=float(reset_at) if reset_at else now,
            blocked_until=float(blocked_until) if blocked_until else None,
        )
        return bool(int(allowed)), entry

    async def reset(self, key: str) -> None:
        await self.client.delete(key)

    async def sweep(self, now: float, batch_size: int) -> int:
        # Keys carry a TTL covering both window and block
        return 0

    async def close(self) -> None:
        await self.client.aclose()


class RedisTokenLedger:
    """Consumed refresh-token ids, expiring with the token itself."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _key(jti: str) -> str:
        return f"auth:refresh:consumed:{jti}"

    async def consume(self, jti: str, expires_at: float) -> bool:
        ttl = max(1, int(expires_at - time.time()))
        # SET NX makes the first consumer win
        return bool(await self.client.set(self._key(jti), "1", ex=ttl, nx=True))

    async def is_consumed(self, jti: str) -> bool:
        return bool(await self.client.exists(self._key(jti)))

    async def close(self) -> None:
        await self.client.aclose()


__all__ = ["RedisRateLimitStore", "RedisTokenLedger"]
