from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Stable error codes clients may branch on
_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "reauth_required",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or "." not in domain or domain.startswith("."):
        raise ValueError("invalid email address")
    return normalized


class SessionCreateRequest(BaseModel):
    """Identity asserted by the OIDC client after a successful code exchange."""

    subject: str = Field(..., min_length=1, max_length=255)
    email: str
    display_name: Optional[str] = Field(default=None, max_length=255)

    @field_validator("subject")
    @classmethod
    def _strip_subject(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("subject must not be blank")
        return stripped

    @field_validator("email")
    @classmethod
    def _validate_session_email(cls, value: str) -> str:
        return _validate_email(value)


class UserSummary(BaseModel):
    id: str
    email: str
    display_name: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    is_active: bool = True
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None


class SessionResponse(BaseModel):
    user: UserSummary
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class RefreshResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_at: datetime


class RevokeRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class PrincipalResponse(BaseModel):
    user_id: str
    email: str
    roles: List[str]
    expires_at: datetime


class SessionCheckResponse(BaseModel):
    authenticated: bool
    refresh_valid: bool
    requires_reauth: bool
    access_expires_at: Optional[datetime] = None
    user_id: Optional[str] = None


class UserListResponse(BaseModel):
    items: List[UserSummary]


class RevokeUserResponse(BaseModel):
    user_id: str
    refresh_tokens_revoked: int


class RoleChangeResponse(BaseModel):
    user_id: str
    role: str
    changed: bool
    roles: List[str]
