from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """A session-layer failure with a fixed HTTP rendering.

    ``status_code`` and ``error_code`` travel with the exception so the API
    layer can render it without knowing the concrete type.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed identity claims or admin input."""


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Caller is authenticated but lacks the role, or acts on another user's session."""

    status_code = 403
    error_code = "forbidden"


class AccountDisabled(ForbiddenError):
    """The local user exists but has been deactivated."""


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Subject or email already bound to another local user."""

    status_code = 409
    error_code = "conflict"


# Access token failures. The HTTP layer renders every kind identically;
# ``kind`` only reaches server-side logs.


class TokenError(AuthenticationError):
    kind = "invalid"

    def __init__(self, message: Optional[str] = None, **kwargs) -> None:
        super().__init__(message or f"access token {self.kind}", **kwargs)


class MalformedToken(TokenError):
    kind = "malformed"


class SignatureInvalid(TokenError):
    kind = "signature_invalid"


class TokenExpired(TokenError):
    kind = "expired"


class TokenRevoked(TokenError):
    kind = "revoked"


# Refresh credential failures: the session is gone, not merely due for
# re-authentication.


class RefreshRejected(AuthenticationError):
    kind = "rejected"

    def __init__(self, message: Optional[str] = None, **kwargs) -> None:
        super().__init__(message or f"refresh credential {self.kind}", **kwargs)


class RefreshTokenNotFound(RefreshRejected):
    kind = "not_found"


class RefreshTokenExpired(RefreshRejected):
    kind = "expired"


class RefreshTokenRevoked(RefreshRejected):
    """Credential already revoked, including a lost rotation race."""

    kind = "already_revoked"


class RefreshUserInactive(RefreshRejected):
    kind = "user_inactive"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "AccountDisabled",
    "NotFoundError",
    "ConflictError",
    "TokenError",
    "MalformedToken",
    "SignatureInvalid",
    "TokenExpired",
    "TokenRevoked",
    "RefreshRejected",
    "RefreshTokenNotFound",
    "RefreshTokenExpired",
    "RefreshTokenRevoked",
    "RefreshUserInactive",
]
