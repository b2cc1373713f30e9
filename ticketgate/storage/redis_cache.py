from __future__ import annotations

import hashlib
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from ticketgate.storage.errors import StoreUnavailable


class RedisCounterStore:
    """Shared rate-limit counters kept in Redis.

    Both windows run as Lua scripts so the read, the increment and the TTL
    land in one atomic step; concurrent callers on one key each add exactly one.
    """

    # Bound every Redis call
    DEFAULT_OPERATION_TIMEOUT = 5.0

    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window = tonumber(ARGV[1])
local current = redis.call('INCR', key)
if current == 1 then
  redis.call('PEXPIRE', key, window)
end
return current
"""

    # Weighted count of the previous bucket plus the current one; rejected
    # calls do not increment.
    _SLIDING_WINDOW_SCRIPT = """
local current_key = KEYS[1]
local previous_key = KEYS[2]
local limit = tonumber(ARGV[1])
local now = tonumber(ARGV[2])
local window = tonumber(ARGV[3])

local requested = tonumber(redis.call('GET', current_key) or '0')
local previous = tonumber(redis.call('GET', previous_key) or '0')
local percentage = 1 - ((now % window) / window)
local weighted = math.floor(previous * percentage) + requested

if weighted >= limit then
  return -1
end

local updated = redis.call('INCR', current_key)
if updated == 1 then
  redis.call('PEXPIRE', current_key, window * 2 + 1000)
end
return limit - (weighted + 1)
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
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash the logical key so delimiters inside identities cannot collide."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # A short-lived sync client keeps the async one off the startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def fixed_window(
        self, key: str, limit: int, window_ms: int, now_ms: int
    ) -> Tuple[bool, int, int]:
        bucket = now_ms // window_ms
        redis_key = f"{self._normalize_rate_key(key)}:{bucket}"
        try:
            used = int(await self._fixed_window(keys=[redis_key], args=[window_ms]))
        except RedisError as exc:
            raise StoreUnavailable(str(exc)) from exc
        reset_ms = (bucket + 1) * window_ms
        return used <= limit, max(0, limit - used), reset_ms

    async def sliding_window(
        self, key: str, limit: int, window_ms: int, now_ms: int
    ) -> Tuple[bool, int, int]:
        bucket = now_ms // window_ms
        base = self._normalize_rate_key(key)
        try:
            remaining = int(
                await self._sliding_window(
                    keys=[f"{base}:{bucket}", f"{base}:{bucket - 1}"],
                    args=[limit, now_ms, window_ms],
                )
            )
        except RedisError as exc:
            raise StoreUnavailable(str(exc)) from exc
        reset_ms = (bucket + 1) * window_ms
        if remaining < 0:
            return False, 0, reset_ms
        return True, remaining, reset_ms

    async def close(self) -> None:
        """Close the connection pool on shutdown."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
