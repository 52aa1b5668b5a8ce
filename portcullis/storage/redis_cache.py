from __future__ import annotations

import hashlib
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper holding fixed-window rate-limit counters."""

    # Increment and arm the window expiry in one atomic step. A key that lost
    # its TTL (e.g. after a manual restore) gets a fresh window instead of
    # counting forever.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window_ms = tonumber(ARGV[1])

local count = redis.call('INCR', key)
if count == 1 then
  redis.call('PEXPIRE', key, window_ms)
end

local ttl = redis.call('PTTL', key)
if ttl < 0 then
  redis.call('PEXPIRE', key, window_ms)
  ttl = window_ms
end
return {count, ttl}
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

    @staticmethod
    def _normalize_rate_key(tier: str, client_key: str) -> str:
        """Hash the client key so addresses and ids cannot inject delimiters."""

        digest = hashlib.sha256(client_key.encode()).hexdigest()
        return f"rate:{tier}:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def hit_fixed_window(
        self, tier: str, client_key: str, window_seconds: int
    ) -> Tuple[int, int]:
        """Count one request; return ``(count_in_window, ms_until_reset)``."""

        safe_key = self._normalize_rate_key(tier, client_key)
        count, ttl_ms = await self._fixed_window(
            keys=[safe_key], args=[int(window_seconds * 1000)]
        )
        return int(count), int(ttl_ms)

    async def close(self) -> None:
        """Close Redis connection pool."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest, but exposes the same awaitable interface as RedisCache.
    """

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

    async def hit_fixed_window(
        self, tier: str, client_key: str, window_seconds: int
    ) -> Tuple[int, int]:
        safe_key = RedisCache._normalize_rate_key(tier, client_key)
        count, ttl_ms = self._fixed_window(
            keys=[safe_key], args=[int(window_seconds * 1000)]
        )
        return int(count), int(ttl_ms)

    async def close(self) -> None:
        self._sync_client.close()
