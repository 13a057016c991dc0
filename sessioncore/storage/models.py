from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Seeded reference roles
ROLE_USER = "USER"
ROLE_MANAGER = "MANAGER"
ROLE_ADMIN = "ADMIN"

SYSTEM_ACTOR = "SYSTEM"


class RevocationReason:
    LOGOUT = "LOGOUT"
    ROTATED = "ROTATED"
    ADMIN_REVOKE = "ADMIN_REVOKE"
    DEACTIVATED = "DEACTIVATED"
    ROLE_CHANGED = "ROLE_CHANGED"
    SECURITY_BREACH = "SECURITY_BREACH"


@dataclass
class Role:
    name: str
    description: Optional[str] = None


DEFAULT_ROLES: List[Role] = [
    Role(ROLE_USER, "Standard user"),
    Role(ROLE_MANAGER, "Manager with elevated permissions"),
    Role(ROLE_ADMIN, "Administrator with full access"),
]


@dataclass
class User:
    id: str
    subject: str
    email: str
    display_name: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    last_login_at: Optional[datetime] = None


@dataclass
class UserRole:
    user_id: str
    role: str
    granted_at: datetime = field(default_factory=_utcnow)
    granted_by: Optional[str] = None


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime] = None
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    replaced_by: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        *,
        issued_at: datetime,
        ttl: timedelta,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "RefreshToken":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            issued_at=issued_at,
            expires_at=issued_at + ttl,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class RevokedAccessToken:
    jti: str
    user_id: str
    expires_at: datetime
    revoked_at: datetime = field(default_factory=_utcnow)
    reason: Optional[str] = None
    revoked_by: Optional[str] = None


@dataclass
class ExternalIdentity:
    """Verified identity handed over by the OIDC client after code exchange."""

    subject: str
    email: str
    display_name: Optional[str] = None
    claims: Dict | None = None


@dataclass
class RequestMeta:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
