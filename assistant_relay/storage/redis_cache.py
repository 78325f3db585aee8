from __future__ import annotations

import hashlib
import time
import uuid
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper holding the per-user request logs."""

    # Sliding-window log: purge, count and record in one atomic step.
    # Returns {allowed, remaining, reset_after_seconds}.
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)

if count >= limit then
  local reset_after = window
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  if oldest[2] then
    reset_after = tonumber(oldest[2]) + window - now
  end
  return {0, 0, math.max(1, math.ceil(reset_after))}
end

redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, math.max(1, math.ceil(window)))
return {1, limit - count - 1, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(user_id: str, endpoint: str) -> str:
        """Hash the subject so user ids cannot collide through delimiters."""
        digest = hashlib.sha256(f"{endpoint}\x00{user_id}".encode()).hexdigest()
        return f"rate:{endpoint}:{digest}"

    async def check_rate_limit(
        self, user_id: str, endpoint: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Admit or deny one request; returns (allowed, remaining, reset_after)."""
        now = time.time()
        allowed, remaining, reset_after = await self._sliding_window(
            keys=[self._normalize_rate_key(user_id, endpoint)],
            args=[now, window_seconds, limit, f"{now}:{uuid.uuid4().hex}"],
        )
        return bool(int(allowed)), max(0, int(remaining)), int(reset_after or 0)

    async def close(self) -> None:
        """Close the Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
