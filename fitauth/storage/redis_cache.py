from __future__ import annotations

import hashlib
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for rate limit windows and refresh revocation marks."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window counter with an optional block key set once the window overflows.
    _FIXED_WINDOW_SCRIPT = """
local counter_key = KEYS[1]
local block_key = KEYS[2]
local points = tonumber(ARGV[1])
local duration = tonumber(ARGV[2])
local block_duration = tonumber(ARGV[3])

local blocked_ttl = redis.call('TTL', block_key)
if blocked_ttl and blocked_ttl > 0 then
  return {0, 0, blocked_ttl}
end

local consumed = redis.call('INCR', counter_key)
if consumed == 1 then
  redis.call('EXPIRE', counter_key, duration)
end

if consumed > points then
  if block_duration > 0 then
    redis.call('SET', block_key, '1', 'EX', block_duration)
    redis.call('DEL', counter_key)
    return {0, 0, block_duration}
  end
  local window_ttl = redis.call('TTL', counter_key)
  return {0, 0, math.max(window_ttl, 1)}
end

return {1, points - consumed, 0}
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
        # A short-lived sync client keeps the async pool off the startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(action: str, identifier: str) -> Tuple[str, str]:
        """Hash the identifier so client-supplied values cannot collide across actions."""

        digest = hashlib.sha256(f"{action}\x00{identifier}".encode()).hexdigest()
        return f"rate:{action}:{digest}", f"rate:block:{action}:{digest}"

    async def fixed_window_hit(
        self,
        action: str,
        identifier: str,
        *,
        points: int,
        duration: int,
        block_duration: int = 0,
    ) -> Tuple[bool, int, int]:
        """Consume one point; returns (allowed, remaining, retry_after_seconds)."""

        counter_key, block_key = self._normalize_rate_key(action, identifier)
        allowed, remaining, retry_after = await self._fixed_window(
            keys=[counter_key, block_key],
            args=[points, duration, block_duration],
        )
        return bool(int(allowed)), max(0, int(remaining)), int(retry_after or 0)

    async def reset_rate_limit(self, action: str, identifier: str) -> None:
        counter_key, block_key = self._normalize_rate_key(action, identifier)
        await self.client.delete(counter_key, block_key)

    async def mark_refresh_revoked(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(f"auth:refresh:revoked:{jti}", "1", ex=ttl_seconds)

    async def is_refresh_revoked(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:refresh:revoked:{jti}"))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down the runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid binding connections to the
    per-test event loops pytest creates, while exposing the same awaitable
    surface as ``RedisCache``.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self._sync_client.register_script(
            RedisCache._FIXED_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def fixed_window_hit(
        self,
        action: str,
        identifier: str,
        *,
        points: int,
        duration: int,
        block_duration: int = 0,
    ) -> Tuple[bool, int, int]:
        counter_key, block_key = RedisCache._normalize_rate_key(action, identifier)
        allowed, remaining, retry_after = self._fixed_window(
            keys=[counter_key, block_key], args=[points, duration, block_duration]
        )
        return bool(int(allowed)), max(0, int(remaining)), int(retry_after or 0)

    async def reset_rate_limit(self, action: str, identifier: str) -> None:
        counter_key, block_key = RedisCache._normalize_rate_key(action, identifier)
        self._sync_client.delete(counter_key, block_key)

    async def mark_refresh_revoked(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self._sync_client.set(f"auth:refresh:revoked:{jti}", "1", ex=ttl_seconds)

    async def is_refresh_revoked(self, jti: str) -> bool:
        return bool(self._sync_client.exists(f"auth:refresh:revoked:{jti}"))

    async def close(self) -> None:
        self._sync_client.close()


CacheBackend = Optional[RedisCache | SyncRedisCache]
