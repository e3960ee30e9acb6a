from __future__ import annotations

import hashlib
import math
import time
from datetime import datetime, timezone
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for the shared access-token revocation set."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # atomic refill + consume; one hash per rate-limit subject
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    @staticmethod
    def _key(jti: str) -> str:
        return f"auth:access:denylist:{jti}"

    @staticmethod
    def ttl_seconds(expires_at: datetime) -> int:
        """Whole seconds until ``expires_at``, rounded up and never below 0.

        Older records may carry naive timestamps; those are read as UTC.
        """
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(0, math.ceil((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # throwaway event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def revoke_access_token(self, jti: str, ttl_seconds: int) -> None:
        """Add an access token id to the denylist until its natural expiry."""
        if ttl_seconds > 0:
            await self.client.set(self._key(jti), "1", ex=ttl_seconds)

    async def is_access_token_revoked(self, jti: str) -> bool:
        return bool(await self.client.exists(self._key(jti)))

    @staticmethod
    def _rate_key(key: str) -> str:
        """Hash the subject so emails and addresses cannot collide on delimiters."""
        return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        """Consume ``cost`` tokens from the bucket for ``key``.

        Returns ``(allowed, remaining, retry_after_seconds)``.
        """
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[self._rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return bool(int(allowed)), max(0, int(float(tokens))), int(reset_after or 0)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Avoids event loop binding issues under pytest while exposing the same
    awaitable surface as :class:`RedisCache`.
    """

    def __init__(
        self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT
    ):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )

    ttl_seconds = staticmethod(RedisCache.ttl_seconds)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def revoke_access_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self._sync_client.set(RedisCache._key(jti), "1", ex=ttl_seconds)

    async def is_access_token_revoked(self, jti: str) -> bool:
        return bool(self._sync_client.exists(RedisCache._key(jti)))

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[RedisCache._rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return bool(int(allowed)), max(0, int(float(tokens))), int(reset_after or 0)

    async def close(self) -> None:
        self._sync_client.close()
