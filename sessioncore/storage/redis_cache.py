from __future__ import annotations

from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

_ACCESS_REVOKED_KEY = "auth:access:revoked:{jti}"
_USER_REVOKED_BEFORE_KEY = "auth:user:revoked_before:{user_id}"

# Monotonic marker: only ever moves forward; the retention window is refreshed either way
_MAX_MARKER_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]))
local candidate = tonumber(ARGV[1])
if current == nil or candidate > current then
  redis.call('SET', KEYS[1], ARGV[1], 'EX', tonumber(ARGV[2]))
  return ARGV[1]
end
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[2]))
return tostring(current)
"""


def _parse_marker(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


class RedisCache:
    """Thin async Redis wrapper holding revocation state."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._max_marker = self.client.register_script(_MAX_MARKER_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def revoke_access_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(_ACCESS_REVOKED_KEY.format(jti=jti), "1", ex=ttl_seconds)

    async def is_access_token_revoked(self, jti: str) -> bool:
        return bool(await self.client.exists(_ACCESS_REVOKED_KEY.format(jti=jti)))

    async def set_user_revoked_before(
        self, user_id: str, epoch_seconds: int, ttl_seconds: int
    ) -> int:
        result = await self._max_marker(
            keys=[_USER_REVOKED_BEFORE_KEY.format(user_id=user_id)],
            args=[epoch_seconds, max(1, ttl_seconds)],
        )
        return _parse_marker(result) or epoch_seconds

    async def get_user_revoked_before(self, user_id: str) -> Optional[int]:
        return _parse_marker(
            await self.client.get(_USER_REVOKED_BEFORE_KEY.format(user_id=user_id))
        )

    async def revocation_state(self, jti: str, user_id: str) -> Tuple[bool, Optional[int]]:
        """Point flag and revoked-before marker in one round trip."""
        pipe = self.client.pipeline(transaction=False)
        pipe.exists(_ACCESS_REVOKED_KEY.format(jti=jti))
        pipe.get(_USER_REVOKED_BEFORE_KEY.format(user_id=user_id))
        exists, marker = await pipe.execute()
        return bool(exists), _parse_marker(marker)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes the same awaitable methods as RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._max_marker = self.client.register_script(_MAX_MARKER_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def revoke_access_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self.client.set(_ACCESS_REVOKED_KEY.format(jti=jti), "1", ex=ttl_seconds)

    async def is_access_token_revoked(self, jti: str) -> bool:
        return bool(self.client.exists(_ACCESS_REVOKED_KEY.format(jti=jti)))

    async def set_user_revoked_before(
        self, user_id: str, epoch_seconds: int, ttl_seconds: int
    ) -> int:
        result = self._max_marker(
            keys=[_USER_REVOKED_BEFORE_KEY.format(user_id=user_id)],
            args=[epoch_seconds, max(1, ttl_seconds)],
        )
        return _parse_marker(result) or epoch_seconds

    async def get_user_revoked_before(self, user_id: str) -> Optional[int]:
        return _parse_marker(self.client.get(_USER_REVOKED_BEFORE_KEY.format(user_id=user_id)))

    async def revocation_state(self, jti: str, user_id: str) -> Tuple[bool, Optional[int]]:
        pipe = self.client.pipeline(transaction=False)
        pipe.exists(_ACCESS_REVOKED_KEY.format(jti=jti))
        pipe.get(_USER_REVOKED_BEFORE_KEY.format(user_id=user_id))
        exists, marker = pipe.execute()
        return bool(exists), _parse_marker(marker)

    async def close(self) -> None:
        self.client.close()
