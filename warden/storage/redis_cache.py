from __future__ import annotations

import hashlib
import uuid
from datetime import datetime
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for sliding-window attempt counters."""

    # Prune, count and conditional add run as one server-side step so two
    # callers racing at the boundary cannot both be admitted.
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count >= limit then
  return {0, count}
end

redis.call('ZADD', key, now, member)
redis.call('PEXPIRE', key, window)
return {1, count + 1}
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
        # Short-lived sync client keeps the async pool off a throwaway event loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash the logical key so caller-supplied parts cannot collide on delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def record_attempt(
        self, key: str, limit: int, window_seconds: float, now: datetime
    ) -> Tuple[bool, int]:
        """Admit and record one attempt if fewer than ``limit`` fall in the window.

        Returns ``(allowed, count)`` where ``count`` is the number of attempts
        in the window after this call.
        """
        now_ms = int(now.timestamp() * 1000)
        window_ms = max(1, int(window_seconds * 1000))
        allowed, count = await self._sliding_window(
            keys=[self._normalize_rate_key(key)],
            args=[now_ms, window_ms, limit, f"{now_ms}:{uuid.uuid4().hex}"],
        )
        return bool(int(allowed)), int(count)

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
