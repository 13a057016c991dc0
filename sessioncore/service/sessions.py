from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple

from sessioncore.config import RefreshPolicy, Settings
from sessioncore.logging import get_logger
from sessioncore.service.claims import ClaimsCodec, MintedToken
from sessioncore.service.errors import (
    AccountDisabled,
    RefreshRejected,
    RefreshTokenRevoked,
    RefreshUserInactive,
)
from sessioncore.service.provisioning import IdentityProvisioner
from sessioncore.service.refresh_tokens import IssuedRefreshToken, RefreshTokenStore
from sessioncore.storage.models import (
    ExternalIdentity,
    RefreshToken,
    RequestMeta,
    RevocationReason,
    User,
)

logger = get_logger(__name__)


@dataclass
class IssuedSession:
    user: User
    roles: List[str]
    access: MintedToken
    refresh: IssuedRefreshToken


@dataclass
class RefreshResult:
    access: Optional[MintedToken] = None
    refresh: Optional[IssuedRefreshToken] = None
    requires_reauth: bool = False

    @classmethod
    def reauth(cls) -> "RefreshResult":
        return cls(requires_reauth=True)


@dataclass
class SessionStatus:
    authenticated: bool
    refresh_valid: bool
    requires_reauth: bool
    access_expires_at: Optional[int] = None
    user_id: Optional[str] = None


class SessionIssuer:
    """Turns a verified external identity into an access/refresh pair."""

    def __init__(
        self,
        provisioner: IdentityProvisioner,
        codec: ClaimsCodec,
        refresh_tokens: RefreshTokenStore,
    ) -> None:
        self.provisioner = provisioner
        self.codec = codec
        self.refresh_tokens = refresh_tokens

    def issue_session(
        self, identity: ExternalIdentity, meta: Optional[RequestMeta] = None
    ) -> IssuedSession:
        user = self.provisioner.resolve_user(
            identity.subject, identity.email, identity.display_name
        )
        if not user.is_active:
            logger.warning("session_refused_inactive_user", user_id=user.id)
            raise AccountDisabled("account disabled")
        roles = self.provisioner.roles_for(user.id)
        access = self.codec.mint(user.id, user.email, roles)
        refresh = self.refresh_tokens.issue(user.id, meta=meta)
        logger.info(
            "session_issued",
            user_id=user.id,
            jti=access.claims.jti,
            refresh_token_id=refresh.record.id,
        )
        return IssuedSession(user=user, roles=roles, access=access, refresh=refresh)


class RefreshStrategy(Protocol):
    policy: RefreshPolicy

    def apply(
        self,
        refresh_tokens: RefreshTokenStore,
        raw: str,
        meta: Optional[RequestMeta],
    ) -> Optional[Tuple[RefreshToken, Optional[IssuedRefreshToken]]]:
        """Return the consumed record (and successor), or None for re-authentication."""
        ...


class ForcedReauthStrategy:
    """A live credential only earns a trip back to the identity provider."""

    policy = RefreshPolicy.FORCED_REAUTH

    def apply(self, refresh_tokens, raw, meta):
        # Dead credentials are still a hard reject
        refresh_tokens.lookup(raw)
        return None


class SilentRefreshStrategy:
    policy = RefreshPolicy.SILENT_REFRESH

    def __init__(self, *, rotate: bool = True) -> None:
        self.rotate = rotate

    def apply(self, refresh_tokens, raw, meta):
        if self.rotate:
            successor = refresh_tokens.rotate(raw, meta)
            return successor.record, successor
        return refresh_tokens.consume(raw), None


def build_refresh_strategy(settings: Settings) -> RefreshStrategy:
    if settings.refresh_policy == RefreshPolicy.SILENT_REFRESH:
        return SilentRefreshStrategy(rotate=settings.refresh_rotate_on_use)
    return ForcedReauthStrategy()


class SessionRefresher:
    """Renews access tokens from refresh credentials under the configured policy."""

    def __init__(
        self,
        provisioner: IdentityProvisioner,
        codec: ClaimsCodec,
        refresh_tokens: RefreshTokenStore,
        strategy: RefreshStrategy,
    ) -> None:
        self.provisioner = provisioner
        self.codec = codec
        self.refresh_tokens = refresh_tokens
        self.strategy = strategy

    def refresh(self, raw: str, meta: Optional[RequestMeta] = None) -> RefreshResult:
        try:
            outcome = self.strategy.apply(self.refresh_tokens, raw, meta)
        except RefreshTokenRevoked:
            # Duplicate or raced requests land here routinely
            logger.info("refresh_rejected", kind=RefreshTokenRevoked.kind)
            raise
        except RefreshRejected as exc:
            logger.warning("refresh_rejected", kind=exc.kind)
            raise
        if outcome is None:
            logger.info("refresh_requires_reauth", policy=self.strategy.policy.value)
            return RefreshResult.reauth()

        record, successor = outcome
        user = self.provisioner.find_user(record.user_id)
        if not user or not user.is_active:
            self.refresh_tokens.revoke(
                successor.record.id if successor else record.id,
                RevocationReason.DEACTIVATED,
            )
            logger.warning("refresh_rejected", kind=RefreshUserInactive.kind, user_id=record.user_id)
            raise RefreshUserInactive()

        roles = self.provisioner.roles_for(user.id)
        access = self.codec.mint(user.id, user.email, roles)
        logger.info(
            "access_token_refreshed",
            user_id=user.id,
            jti=access.claims.jti,
            rotated=successor is not None,
        )
        return RefreshResult(access=access, refresh=successor)

    def credential_usable(self, raw: Optional[str]) -> bool:
        if not raw:
            return False
        try:
            self.refresh_tokens.lookup(raw)
        except RefreshRejected:
            return False
        return True

    def check(self, principal, raw_refresh: Optional[str]) -> SessionStatus:
        """Summarise session state for clients deciding whether to refresh.

        ``principal`` is the authenticated caller, or None when the access
        token was missing or rejected.
        """
        refresh_valid = self.credential_usable(raw_refresh)
        authenticated = principal is not None
        silent = self.strategy.policy == RefreshPolicy.SILENT_REFRESH
        return SessionStatus(
            authenticated=authenticated,
            refresh_valid=refresh_valid,
            requires_reauth=not authenticated and not (refresh_valid and silent),
            access_expires_at=principal.expires_at if principal else None,
            user_id=principal.user_id if principal else None,
        )
