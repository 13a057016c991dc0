from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sessioncore.logging import get_logger
from sessioncore.service.clock import Clock, utcnow
from sessioncore.service.errors import (
    RefreshTokenExpired,
    RefreshTokenNotFound,
    RefreshTokenRevoked,
)
from sessioncore.storage.models import RefreshToken, RequestMeta

logger = get_logger(__name__)

_RAW_TOKEN_BYTES = 48


def hash_refresh_token(raw: str) -> str:
    """One-way lookup key for a refresh credential (SHA-256, hex)."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class IssuedRefreshToken:
    raw: str
    record: RefreshToken


class RefreshTokenStore:
    """Issue, validate, rotate and revoke opaque refresh credentials.

    Only the hash of a credential is persisted. Validation order is
    not-found, then revoked, then expired, so a revoked credential always
    reports as revoked even after it has also expired.
    """

    def __init__(self, store, *, default_ttl: timedelta, clock: Clock = utcnow) -> None:
        self.store = store
        self.default_ttl = default_ttl
        self._clock = clock

    def _new_record(
        self, user_id: str, ttl: Optional[timedelta], meta: Optional[RequestMeta]
    ) -> IssuedRefreshToken:
        raw = secrets.token_urlsafe(_RAW_TOKEN_BYTES)
        record = RefreshToken.new(
            user_id,
            hash_refresh_token(raw),
            issued_at=self._clock(),
            ttl=ttl or self.default_ttl,
            ip_address=meta.ip_address if meta else None,
            user_agent=meta.user_agent if meta else None,
        )
        return IssuedRefreshToken(raw, record)

    def issue(
        self,
        user_id: str,
        ttl: Optional[timedelta] = None,
        meta: Optional[RequestMeta] = None,
    ) -> IssuedRefreshToken:
        issued = self._new_record(user_id, ttl, meta)
        record = self.store.create_refresh_token(issued.record)
        logger.info("refresh_token_issued", user_id=user_id, refresh_token_id=record.id)
        return IssuedRefreshToken(issued.raw, record)

    def find(self, raw: str) -> Optional[RefreshToken]:
        if not raw:
            return None
        return self.store.get_refresh_token_by_hash(hash_refresh_token(raw))

    def lookup(self, raw: str) -> RefreshToken:
        """Validate without mutating anything."""
        record = self.find(raw)
        if record is None:
            raise RefreshTokenNotFound()
        if record.revoked:
            raise RefreshTokenRevoked()
        if record.is_expired(self._clock()):
            raise RefreshTokenExpired()
        return record

    def consume(self, raw: str) -> RefreshToken:
        """Reusable mode: validate and stamp last use; the record stays valid."""
        record = self.lookup(raw)
        now = self._clock()
        if not self.store.touch_refresh_token(record.id, now):
            # Revoked between the lookup and the stamp
            raise RefreshTokenRevoked()
        record.last_used_at = now
        return record

    def rotate(
        self,
        raw: str,
        meta: Optional[RequestMeta] = None,
        ttl: Optional[timedelta] = None,
    ) -> IssuedRefreshToken:
        """Rotate-on-use: revoke the presented credential and issue its successor.

        The store flips ``revoked`` with a compare-and-swap; only one of any
        number of concurrent callers gets the successor, the rest see
        RefreshTokenRevoked.
        """
        record = self.lookup(raw)
        successor = self._new_record(record.user_id, ttl, meta)
        if not self.store.rotate_refresh_token(
            record.id, successor.record, revoked_at=self._clock()
        ):
            logger.info(
                "refresh_rotation_race_lost",
                user_id=record.user_id,
                refresh_token_id=record.id,
            )
            raise RefreshTokenRevoked()
        logger.info(
            "refresh_token_rotated",
            user_id=record.user_id,
            refresh_token_id=record.id,
            replaced_by=successor.record.id,
        )
        return successor

    def revoke(self, record_id: str, reason: str) -> bool:
        revoked = self.store.revoke_refresh_token(
            record_id, reason=reason, revoked_at=self._clock()
        )
        if revoked:
            logger.info("refresh_token_revoked", refresh_token_id=record_id, reason=reason)
        return revoked

    def revoke_all_for_user(self, user_id: str, reason: str) -> int:
        count = self.store.revoke_user_refresh_tokens(
            user_id, reason=reason, revoked_at=self._clock()
        )
        logger.info("refresh_tokens_revoked_for_user", user_id=user_id, count=count, reason=reason)
        return count

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        return self.store.delete_expired_refresh_tokens(now or self._clock())
