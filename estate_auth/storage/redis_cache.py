from __future__ import annotations

import hashlib
from datetime import datetime

import redis.asyncio as aioredis
from redis import Redis

from estate_auth.config import RateLimitPolicy
from estate_auth.service.rate_limit import RateLimitDecision


class RedisRateLimitStore:
    """Rate-limit counters shared between instances through Redis."""

    # Fixed window plus block, evaluated atomically per attempt.
    # Times are milliseconds since the epoch.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local max_attempts = tonumber(ARGV[3])
local block = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'count', 'reset_at', 'block_until')
local count = tonumber(data[1])
local reset_at = tonumber(data[2])
local block_until = tonumber(data[3])

if block_until then
  if block_until > now then
    return {0, math.ceil((block_until - now) / 1000)}
  end
  count = nil
end

if count == nil or reset_at == nil or reset_at <= now then
  redis.call('DEL', key)
  redis.call('HSET', key, 'count', 1, 'reset_at', now + window)
  redis.call('PEXPIRE', key, window)
  return {1, 0}
end

count = count + 1
if count > max_attempts then
  redis.call('HSET', key, 'count', count, 'block_until', now + block)
  redis.call('PEXPIRE', key, math.max(block, reset_at - now))
  return {0, math.ceil(block / 1000)}
end

redis.call('HSET', key, 'count', count)
return {1, 0}
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
        """Assert Redis connectivity before enabling shared rate limits."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_key(key: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def hit(self, key: str, policy: RateLimitPolicy, now: datetime) -> RateLimitDecision:
        allowed, retry_after = await self._fixed_window(
            keys=[self._normalize_key(key)],
            args=[
                int(now.timestamp() * 1000),
                int(policy.window.total_seconds() * 1000),
                policy.max_attempts,
                int(policy.block.total_seconds() * 1000),
            ],
        )
        if int(allowed):
            return RateLimitDecision(True)
        return RateLimitDecision(False, max(1, int(retry_after)))

    async def reset(self, key: str) -> None:
        await self.client.delete(self._normalize_key(key))

    async def sweep(self, now: datetime) -> int:
        # Keys carry a PEXPIRE covering window and block
        return 0

    async def close(self) -> None:
        await self.client.aclose()
