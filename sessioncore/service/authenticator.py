from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from sessioncore.service.claims import AccessClaims, ClaimsCodec
from sessioncore.service.errors import ForbiddenError, MalformedToken, TokenRevoked
from sessioncore.service.revocation import RevocationRegistry
from sessioncore.storage.models import ROLE_ADMIN


@dataclass
class UserPrincipal:
    user_id: str
    email: str
    roles: List[str] = field(default_factory=list)
    jti: str = ""
    issued_at: int = 0
    expires_at: int = 0

    @classmethod
    def from_claims(cls, claims: AccessClaims) -> "UserPrincipal":
        return cls(
            user_id=claims.subject,
            email=claims.email,
            roles=list(claims.roles),
            jti=claims.jti,
            issued_at=claims.issued_at,
            expires_at=claims.expires_at,
        )

    def has_role(self, role: str) -> bool:
        wanted = role.upper()
        return wanted in self.roles or ROLE_ADMIN in self.roles


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


class RequestAuthenticator:
    """Admits a request from its access token alone.

    One signature check plus one registry read; never consults refresh
    credentials and never writes.
    """

    def __init__(self, codec: ClaimsCodec, registry: RevocationRegistry) -> None:
        self.codec = codec
        self.registry = registry

    async def authenticate(self, token: Optional[str]) -> UserPrincipal:
        if not token:
            raise MalformedToken("missing access token")
        claims = self.codec.verify(token)
        if await self.registry.is_token_revoked(claims.jti, claims.subject, claims.issued_at):
            raise TokenRevoked()
        return UserPrincipal.from_claims(claims)

    async def authenticate_request(
        self, authorization: Optional[str], cookie_token: Optional[str] = None
    ) -> UserPrincipal:
        """Prefer the Authorization header; fall back to the access cookie."""
        return await self.authenticate(extract_bearer(authorization) or cookie_token)

    @staticmethod
    def require_role(principal: UserPrincipal, role: str) -> UserPrincipal:
        if not principal.has_role(role):
            raise ForbiddenError(f"{role.lower()} role required", detail={"role": role.upper()})
        return principal
