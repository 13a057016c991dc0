"""Revocation registry for access tokens.

Two kinds of entries answer "is this access token revoked":

- point revocations keyed by ``jti``, kept until the token's ``exp`` plus
  the clock-skew leeway (after that the token fails verification anyway);
- a per-user ``revoked_before`` marker. Any token whose ``iat`` is at or
  before the marker is revoked. Markers are whole seconds, so a token minted
  in the same second as a revoke-all is also treated as revoked.

All implementations share one async contract; callers never branch on the
backend. Reads never write.
"""

from __future__ import annotations

import math
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Protocol

from redis.exceptions import RedisError

from sessioncore.logging import get_logger
from sessioncore.service.clock import Clock, epoch_seconds, from_epoch, utcnow
from sessioncore.storage.errors import StoreUnavailable
from sessioncore.storage.models import RevokedAccessToken

logger = get_logger(__name__)


class RevocationRegistry(Protocol):
    async def is_revoked(self, jti: str) -> bool:
        ...

    async def revoked_before(self, user_id: str) -> Optional[datetime]:
        ...

    async def is_token_revoked(self, jti: str, user_id: str, issued_at: int) -> bool:
        ...

    async def revoke(
        self,
        jti: str,
        user_id: str,
        expires_at: datetime,
        reason: str,
        revoked_by: Optional[str] = None,
    ) -> None:
        ...

    async def revoke_all(self, user_id: str, reason: str) -> datetime:
        ...

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        ...


def _marker_covers(marker: Optional[datetime], issued_at: int) -> bool:
    return marker is not None and issued_at <= epoch_seconds(marker)


class MemoryRevocationRegistry:
    """Process-local registry with expiry-based cleanup.

    Suitable for a single instance; entries vanish on restart, which only
    matters until the longest outstanding access token expires.
    """

    def __init__(
        self,
        *,
        clock: Clock = utcnow,
        marker_retention: timedelta = timedelta(minutes=15),
        cleanup_interval: timedelta = timedelta(minutes=5),
        leeway: timedelta = timedelta(0),
    ) -> None:
        self._clock = clock
        self._marker_retention = marker_retention
        self._cleanup_interval = cleanup_interval
        self._leeway = leeway
        self._lock = threading.RLock()
        self._entries: Dict[str, RevokedAccessToken] = {}
        self._markers: Dict[str, datetime] = {}
        self._last_cleanup = clock()

    async def is_revoked(self, jti: str) -> bool:
        entry = self._entries.get(jti)
        return entry is not None and entry.expires_at > self._clock() - self._leeway

    async def revoked_before(self, user_id: str) -> Optional[datetime]:
        return self._markers.get(user_id)

    async def is_token_revoked(self, jti: str, user_id: str, issued_at: int) -> bool:
        if await self.is_revoked(jti):
            return True
        return _marker_covers(self._markers.get(user_id), issued_at)

    async def revoke(
        self,
        jti: str,
        user_id: str,
        expires_at: datetime,
        reason: str,
        revoked_by: Optional[str] = None,
    ) -> None:
        now = self._clock()
        with self._lock:
            self._entries.setdefault(
                jti,
                RevokedAccessToken(
                    jti=jti,
                    user_id=user_id,
                    expires_at=expires_at,
                    revoked_at=now,
                    reason=reason,
                    revoked_by=revoked_by,
                ),
            )
            self._maybe_cleanup(now)

    async def revoke_all(self, user_id: str, reason: str) -> datetime:
        now = self._clock()
        with self._lock:
            current = self._markers.get(user_id)
            if current is None or now > current:
                self._markers[user_id] = now
            self._maybe_cleanup(now)
            return self._markers[user_id]

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        with self._lock:
            return self._purge(now)

    def _maybe_cleanup(self, now: datetime) -> None:
        if now - self._last_cleanup >= self._cleanup_interval:
            self._purge(now)

    def _purge(self, now: datetime) -> int:
        cutoff = now - self._leeway
        stale = [jti for jti, entry in self._entries.items() if entry.expires_at <= cutoff]
        for jti in stale:
            del self._entries[jti]
        # A marker older than the longest access-token lifetime covers nothing still valid
        horizon = now - self._marker_retention
        for user_id in [u for u, ts in self._markers.items() if ts <= horizon]:
            del self._markers[user_id]
        self._last_cleanup = now
        return len(stale)


class StoreRevocationRegistry:
    """Durable registry backed by the relational (or memory) store."""

    def __init__(
        self, store, *, clock: Clock = utcnow, leeway: timedelta = timedelta(0)
    ) -> None:
        self.store = store
        self._clock = clock
        self._leeway = leeway

    async def is_revoked(self, jti: str) -> bool:
        return self.store.is_access_token_revoked(jti)

    async def revoked_before(self, user_id: str) -> Optional[datetime]:
        return self.store.get_user_revoked_before(user_id)

    async def is_token_revoked(self, jti: str, user_id: str, issued_at: int) -> bool:
        point, marker = self.store.is_token_revoked(jti, user_id)
        return point or _marker_covers(marker, issued_at)

    async def revoke(
        self,
        jti: str,
        user_id: str,
        expires_at: datetime,
        reason: str,
        revoked_by: Optional[str] = None,
    ) -> None:
        self.store.add_revoked_access_token(
            RevokedAccessToken(
                jti=jti,
                user_id=user_id,
                expires_at=expires_at,
                revoked_at=self._clock(),
                reason=reason,
                revoked_by=revoked_by,
            )
        )

    async def revoke_all(self, user_id: str, reason: str) -> datetime:
        return self.store.set_user_revoked_before(user_id, self._clock())

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        return self.store.delete_expired_revoked_access_tokens(now - self._leeway)


class RedisRevocationRegistry:
    """Shared registry for multi-instance deployments.

    Point entries expire once the token they revoke stops verifying; ``revoked_before``
    markers expire after one access-token lifetime plus leeway.
    """

    def __init__(
        self,
        cache,
        *,
        marker_retention: timedelta,
        clock: Clock = utcnow,
        leeway: timedelta = timedelta(0),
    ) -> None:
        self.cache = cache
        self._marker_retention = marker_retention
        self._clock = clock
        self._leeway = leeway

    async def is_revoked(self, jti: str) -> bool:
        try:
            return await self.cache.is_access_token_revoked(jti)
        except RedisError as exc:
            raise self._unavailable("is_revoked", exc) from exc

    async def revoked_before(self, user_id: str) -> Optional[datetime]:
        try:
            marker = await self.cache.get_user_revoked_before(user_id)
        except RedisError as exc:
            raise self._unavailable("revoked_before", exc) from exc
        return from_epoch(marker) if marker is not None else None

    async def is_token_revoked(self, jti: str, user_id: str, issued_at: int) -> bool:
        try:
            point, marker = await self.cache.revocation_state(jti, user_id)
        except RedisError as exc:
            raise self._unavailable("is_token_revoked", exc) from exc
        return point or (marker is not None and issued_at <= marker)

    async def revoke(
        self,
        jti: str,
        user_id: str,
        expires_at: datetime,
        reason: str,
        revoked_by: Optional[str] = None,
    ) -> None:
        now = self._clock()
        verifiable_until = expires_at + self._leeway
        if verifiable_until <= now:
            return
        try:
            await self.cache.revoke_access_token(jti, self.cache_ttl(verifiable_until, now))
        except RedisError as exc:
            raise self._unavailable("revoke", exc) from exc
        logger.info("access_token_revoked", user_id=user_id, reason=reason, backend="redis")

    async def revoke_all(self, user_id: str, reason: str) -> datetime:
        now = self._clock()
        try:
            marker = await self.cache.set_user_revoked_before(
                user_id,
                epoch_seconds(now),
                int(self._marker_retention.total_seconds()),
            )
        except RedisError as exc:
            raise self._unavailable("revoke_all", exc) from exc
        return from_epoch(marker)

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        # Redis expires keys on its own
        return 0

    @staticmethod
    def cache_ttl(expires_at: datetime, now: datetime) -> int:
        return max(1, math.ceil((expires_at - now).total_seconds()))

    @staticmethod
    def _unavailable(operation: str, exc: Exception) -> StoreUnavailable:
        logger.error("revocation_cache_unavailable", operation=operation, error=str(exc))
        return StoreUnavailable("revocation cache unavailable", {"operation": operation})
