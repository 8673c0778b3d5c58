from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

# Atomically record one failed login and trigger a lockout at the threshold.
# KEYS[1] lockout flag, KEYS[2] attempt counter
# ARGV[1] max attempts, ARGV[2] lockout seconds, ARGV[3] attempt window seconds
# Returns {locked, attempts, retry_after}; attempts is -1 when already locked.
_LOGIN_FAILURE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1, redis.call('TTL', KEYS[1])}
end

local attempts = redis.call('INCR', KEYS[2])
if attempts == 1 then
    redis.call('EXPIRE', KEYS[2], ARGV[3])
end

if attempts >= tonumber(ARGV[1]) then
    redis.call('SET', KEYS[1], attempts, 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts, tonumber(ARGV[2])}
end

return {0, attempts, 0}
"""

# Atomically reserve one login attempt before the password is checked.
# KEYS[1] lockout flag, KEYS[2] attempt counter
# ARGV[1] max attempts, ARGV[2] lockout seconds, ARGV[3] attempt window seconds
# Returns {allowed, attempts, retry_after}. A refused attempt is not counted;
# the attempt that reaches the threshold is allowed and sets the lock.
_ACQUIRE_ATTEMPT_SCRIPT = """
local ttl = redis.call('TTL', KEYS[1])
if ttl > 0 then
    return {0, -1, ttl}
end

local attempts = redis.call('INCR', KEYS[2])
if attempts == 1 then
    redis.call('EXPIRE', KEYS[2], ARGV[3])
end

if attempts >= tonumber(ARGV[1]) then
    redis.call('SET', KEYS[1], attempts, 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
end

return {1, attempts, 0}
"""


def _lockout_keys(key: str) -> tuple[str, str]:
    return f"auth:lockout:{key}", f"auth:login_failures:{key}"


class RedisCache:
    """Redis-backed login lockout state shared across workers."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._login_failure = self.client.register_script(_LOGIN_FAILURE_SCRIPT)
        self._acquire_attempt = self.client.register_script(_ACQUIRE_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get_login_lockout(self, key: str) -> tuple[int, int]:
        """Return ``(retry_after_seconds, failed_attempts)`` for a lockout key."""
        lockout_key, attempts_key = _lockout_keys(key)
        ttl = await self.client.ttl(lockout_key)
        if ttl and ttl > 0:
            return int(ttl), 0
        attempts = await self.client.get(attempts_key)
        return 0, int(attempts or 0)

    async def record_login_failure(
        self, key: str, *, max_attempts: int, lockout_seconds: int, window_seconds: int
    ) -> tuple[bool, int, int]:
        lockout_key, attempts_key = _lockout_keys(key)
        result = await self._login_failure(
            keys=[lockout_key, attempts_key],
            args=[max_attempts, lockout_seconds, window_seconds],
        )
        return bool(result[0]), int(result[1]), int(result[2])

    async def acquire_login_attempt(
        self, key: str, *, max_attempts: int, lockout_seconds: int, window_seconds: int
    ) -> tuple[bool, int, int]:
        lockout_key, attempts_key = _lockout_keys(key)
        result = await self._acquire_attempt(
            keys=[lockout_key, attempts_key],
            args=[max_attempts, lockout_seconds, window_seconds],
        )
        return bool(result[0]), int(result[1]), int(result[2])

    async def clear_login_failures(self, key: str) -> None:
        await self.client.delete(*_lockout_keys(key))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis client exposing the same awaitable API.

    Used in test mode so the client is never bound to a pytest event loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._login_failure = self.client.register_script(_LOGIN_FAILURE_SCRIPT)
        self._acquire_attempt = self.client.register_script(_ACQUIRE_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def get_login_lockout(self, key: str) -> tuple[int, int]:
        lockout_key, attempts_key = _lockout_keys(key)
        ttl = self.client.ttl(lockout_key)
        if ttl and ttl > 0:
            return int(ttl), 0
        attempts: Optional[str] = self.client.get(attempts_key)
        return 0, int(attempts or 0)

    async def record_login_failure(
        self, key: str, *, max_attempts: int, lockout_seconds: int, window_seconds: int
    ) -> tuple[bool, int, int]:
        lockout_key, attempts_key = _lockout_keys(key)
        result = self._login_failure(
            keys=[lockout_key, attempts_key],
            args=[max_attempts, lockout_seconds, window_seconds],
        )
        return bool(result[0]), int(result[1]), int(result[2])

    async def acquire_login_attempt(
        self, key: str, *, max_attempts: int, lockout_seconds: int, window_seconds: int
    ) -> tuple[bool, int, int]:
        lockout_key, attempts_key = _lockout_keys(key)
        result = self._acquire_attempt(
            keys=[lockout_key, attempts_key],
            args=[max_attempts, lockout_seconds, window_seconds],
        )
        return bool(result[0]), int(result[1]), int(result[2])

    async def clear_login_failures(self, key: str) -> None:
        self.client.delete(*_lockout_keys(key))

    async def close(self) -> None:
        self.client.close()
