from __future__ import annotations

import hashlib
import uuid
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

from medguard.service.clock import ClockSource, SystemClock

# Sliding-window log: one sorted-set member per accepted request, scored by
# its timestamp. A request is accepted while fewer than ``limit`` members fall
# inside (now - window, now].
_SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local member = ARGV[5]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local used = redis.call('ZCARD', key)

if used + cost > limit then
  local reset_after = window
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  if oldest[2] then
    reset_after = math.ceil(tonumber(oldest[2]) + window - now)
  end
  return {0, limit - used, math.max(reset_after, 1)}
end

for i = 1, cost do
  redis.call('ZADD', key, now, member .. ':' .. i)
end
redis.call('EXPIRE', key, math.ceil(window))
return {1, limit - used - cost, 0}
"""


def _rate_key(key: str) -> str:
    """Hash rate-limit subjects so emails and user ids never appear as raw keys."""
    digest = hashlib.sha256(key.encode()).hexdigest()
    return f"medguard:rate:{digest}"


def _script_args(clock: ClockSource, limit: int, window_seconds: int, cost: int) -> list:
    return [clock.now().timestamp(), window_seconds, limit, max(1, cost), uuid.uuid4().hex]


class RedisCache:
    """Redis-backed request limits shared by every API worker."""

    def __init__(
        self,
        redis_url: str,
        *,
        clock: Optional[ClockSource] = None,
        socket_timeout: float = 5.0,
    ):
        self.redis_url = redis_url
        self.clock = clock or SystemClock()
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(_SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        return _rate_key(key)

    @staticmethod
    def _unpack(result, return_remaining: bool) -> Union[bool, Tuple[bool, int, int]]:
        allowed, remaining, reset_after = result
        allowed_bool = bool(int(allowed))
        if not return_remaining:
            return allowed_bool
        return (allowed_bool, max(0, int(remaining)), int(reset_after) if reset_after else 0)

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Record ``cost`` requests for ``key`` unless the window is already full."""
        result = await self._sliding_window(
            keys=[_rate_key(key)],
            args=_script_args(self.clock, limit, window_seconds, cost),
        )
        return self._unpack(result, return_remaining)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Same limits as ``RedisCache`` over a synchronous client.

    Used under TEST_MODE so no connection is bound to pytest's event loops.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        clock: Optional[ClockSource] = None,
        socket_timeout: float = 5.0,
    ):
        self.redis_url = redis_url
        self.clock = clock or SystemClock()
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self._sync_client.register_script(_SLIDING_WINDOW_SCRIPT)

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
        result = self._sliding_window(
            keys=[_rate_key(key)],
            args=_script_args(self.clock, limit, window_seconds, cost),
        )
        return RedisCache._unpack(result, return_remaining)

    async def close(self) -> None:
        self._sync_client.close()


__all__ = ["RedisCache", "SyncRedisCache"]
