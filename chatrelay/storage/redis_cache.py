from __future__ import annotations

import hashlib
import time
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

from chatrelay.service.rate_limit import WindowState


class RedisCache:
    """Redis wrapper for shared rate-limit windows and short-lived auth tokens."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic fixed window: a denied hit neither increments nor extends the key
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local now_ms = tonumber(ARGV[3])

local count = tonumber(redis.call('GET', key))
local ttl = redis.call('PTTL', key)

if count == nil or ttl <= 0 then
  redis.call('SET', key, 1, 'PX', window_ms)
  return {1, 1, now_ms + window_ms}
end

local reset_at = now_ms + ttl
if count >= limit then
  return {0, count, reset_at}
end

count = redis.call('INCR', key)
return {1, count, reset_at}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
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
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so caller-controlled identities cannot collide on delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    # CounterStore
    async def hit(self, key: str, limit: int, window_seconds: int) -> WindowState:
        allowed, count, reset_ms = await self._fixed_window(
            keys=[self._normalize_rate_key(key)],
            args=[limit, int(window_seconds * 1000), int(time.time() * 1000)],
        )
        return WindowState(
            allowed=bool(int(allowed)),
            count=int(count),
            reset_at=int(reset_ms) / 1000.0,
        )

    async def reset(self, key: str) -> None:
        await self.client.delete(self._normalize_rate_key(key))

    # single-use tokens (password reset, email verification)
    async def put_token(self, namespace: str, token: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(f"{namespace}:{token}", value, ex=max(1, ttl_seconds))

    async def pop_token(self, namespace: str, token: str) -> Optional[str]:
        key = f"{namespace}:{token}"
        pipe = self.client.pipeline()
        pipe.get(key)
        pipe.delete(key)
        value, _ = await pipe.execute()
        return value
