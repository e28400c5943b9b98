from __future__ import annotations

import hashlib
import time
from typing import Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

# Atomic refill + consume so concurrent requests cannot overspend a bucket
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


def _normalize_rate_key(key: str) -> str:
    """Hash rate subjects so emails and IPs cannot collide on delimiters."""
    return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"


def _bucket_result(
    raw: Tuple[int, float, int], return_remaining: bool
) -> Union[bool, Tuple[bool, int, int]]:
    allowed, tokens, reset_after = raw
    allowed_bool = bool(int(allowed))
    if return_remaining:
        return (allowed_bool, max(0, int(float(tokens))), int(reset_after or 0))
    return allowed_bool


class RedisCache:
    """Redis wrapper for rate limit buckets and auth event fan-out."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(_TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # A short-lived sync client avoids binding the async pool to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        refill_rate = float(limit) / float(window_seconds)
        raw = await self._token_bucket(
            keys=[_normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return _bucket_result(raw, return_remaining)

    async def publish(self, channel: str, message: str) -> int:
        return await self.client.publish(channel, message)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Exposes the same awaitable surface as ``RedisCache`` while talking to
    Redis through a blocking client, so pytest event loops never own a pool.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(_TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        refill_rate = float(limit) / float(window_seconds)
        raw = self._token_bucket(
            keys=[_normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return _bucket_result(raw, return_remaining)

    async def publish(self, channel: str, message: str) -> int:
        return self._sync_client.publish(channel, message)

    async def close(self) -> None:
        self._sync_client.close()
