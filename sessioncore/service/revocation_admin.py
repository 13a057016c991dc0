from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from sessioncore.logging import get_logger
from sessioncore.service.clock import Clock, utcnow
from sessioncore.service.errors import ForbiddenError
from sessioncore.service.provisioning import IdentityProvisioner
from sessioncore.service.refresh_tokens import RefreshTokenStore
from sessioncore.service.revocation import RevocationRegistry
from sessioncore.storage.models import RevocationReason, User

logger = get_logger(__name__)


class RevocationAdministrator:
    """Explicit revocation: logout, breach response, account and role changes."""

    def __init__(
        self,
        registry: RevocationRegistry,
        refresh_tokens: RefreshTokenStore,
        provisioner: IdentityProvisioner,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.registry = registry
        self.refresh_tokens = refresh_tokens
        self.provisioner = provisioner
        self._clock = clock

    async def logout(
        self,
        user_id: str,
        access_jti: str,
        access_expires_at: datetime,
        refresh_record_id: Optional[str] = None,
    ) -> None:
        """Revoke the caller's access token and, if given, their refresh record."""
        if refresh_record_id:
            record = self.refresh_tokens.store.get_refresh_token(refresh_record_id)
            if record and record.user_id != user_id:
                logger.warning(
                    "logout_foreign_refresh_token",
                    user_id=user_id,
                    refresh_token_id=refresh_record_id,
                )
                raise ForbiddenError("cannot revoke another user's session")
        await self.registry.revoke(
            access_jti,
            user_id,
            access_expires_at,
            RevocationReason.LOGOUT,
            revoked_by=user_id,
        )
        if refresh_record_id:
            self.refresh_tokens.revoke(refresh_record_id, RevocationReason.LOGOUT)
        logger.info("session_logged_out", user_id=user_id, jti=access_jti)

    async def admin_revoke_user(
        self,
        user_id: str,
        reason: str = RevocationReason.ADMIN_REVOKE,
        actor: Optional[str] = None,
    ) -> int:
        """Kill every outstanding access token and refresh credential of a user."""
        marker = await self.registry.revoke_all(user_id, reason)
        count = self.refresh_tokens.revoke_all_for_user(user_id, reason)
        logger.info(
            "user_sessions_revoked",
            user_id=user_id,
            reason=reason,
            actor=actor,
            revoked_before=marker.isoformat(),
            refresh_tokens=count,
        )
        return count

    async def deactivate_user(self, user_id: str, actor: Optional[str] = None) -> User:
        user = self.provisioner.set_active(user_id, False)
        await self.admin_revoke_user(user_id, RevocationReason.DEACTIVATED, actor=actor)
        return user

    async def activate_user(self, user_id: str, actor: Optional[str] = None) -> User:
        user = self.provisioner.set_active(user_id, True)
        logger.info("user_activated", user_id=user_id, actor=actor)
        return user

    async def grant_role(self, user_id: str, role: str, actor: Optional[str] = None) -> bool:
        changed = self.provisioner.grant_role(user_id, role, granted_by=actor)
        if changed:
            await self._expire_role_claims(user_id, actor)
        return changed

    async def revoke_role(self, user_id: str, role: str, actor: Optional[str] = None) -> bool:
        changed = self.provisioner.revoke_role(user_id, role)
        if changed:
            await self._expire_role_claims(user_id, actor)
        return changed

    async def _expire_role_claims(self, user_id: str, actor: Optional[str]) -> None:
        # Access tokens embed roles; refresh credentials stay valid so the
        # next refresh picks up the new set
        await self.registry.revoke_all(user_id, RevocationReason.ROLE_CHANGED)
        logger.info("user_roles_changed", user_id=user_id, actor=actor)

    async def cleanup_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or self._clock()
        result = {
            "revoked_access_tokens": await self.registry.purge_expired(now),
            "refresh_tokens": self.refresh_tokens.purge_expired(now),
        }
        logger.info("expired_tokens_cleaned", **result)
        return result
