from __future__ import annotations

import hashlib
from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from hardyauth.storage.errors import StorageError
from hardyauth.storage.models import RateLimitCounter


class RedisCache:
    """Redis-backed fixed-window counters shared across workers."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic increment-or-reset of a fixed window. Times are epoch milliseconds.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

local data = redis.call('HMGET', key, 'count', 'reset_at')
local count = tonumber(data[1])
local reset_at = tonumber(data[2])

if count == nil or reset_at == nil or now >= reset_at then
  count = 1
  reset_at = now + window
else
  count = count + 1
end

redis.call('HSET', key, 'count', count, 'reset_at', reset_at)
redis.call('PEXPIRE', key, math.max(reset_at - now, 1))
return {count, reset_at}
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
        # short-lived sync client so the async client is not bound to a
        # temporary event loop during startup
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _counter_key(key: str) -> str:
        """Hash the logical key so delimiters in it cannot collide."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def increment_counter(
        self, key: str, window_seconds: float, now: datetime
    ) -> RateLimitCounter:
        now_ms = int(now.timestamp() * 1000)
        window_ms = max(1, int(window_seconds * 1000))
        try:
            count, reset_ms = await self._fixed_window(
                keys=[self._counter_key(key)], args=[now_ms, window_ms]
            )
        except RedisError as exc:
            raise StorageError("rate limit counter unavailable", {"key": key}) from exc
        reset_at = datetime.fromtimestamp(int(reset_ms) / 1000, tz=timezone.utc)
        return RateLimitCounter(key=key, count=int(count), reset_at=reset_at)

    async def close(self) -> None:
        await self.client.aclose()
