from __future__ import annotations

from typing import List, Optional

from sessioncore.logging import get_logger
from sessioncore.service.clock import Clock, utcnow
from sessioncore.service.errors import ConflictError, NotFoundError, ValidationError
from sessioncore.storage.errors import ConstraintViolation
from sessioncore.storage.models import SYSTEM_ACTOR, User

logger = get_logger(__name__)

_CREATE_ATTEMPTS = 3


def _normalize_email(email: str) -> str:
    return email.strip().lower()


class IdentityProvisioner:
    """Maps external identities onto local users and their roles."""

    def __init__(self, store, *, default_role: str = "USER", clock: Clock = utcnow) -> None:
        self.store = store
        self.default_role = default_role
        self._clock = clock

    def resolve_user(
        self, subject: str, email: str, display_name: Optional[str] = None
    ) -> User:
        """Return the user for ``subject``, creating it on first sight.

        Concurrent first logins race on the subject's unique constraint; the
        loser re-reads the winner's row instead of failing.
        """
        if not subject:
            raise ValidationError("subject is required", detail={"field": "subject"})
        if not email or "@" not in email:
            raise ValidationError("a valid email is required", detail={"field": "email"})
        email = _normalize_email(email)
        name = (display_name or "").strip() or None

        for attempt in range(_CREATE_ATTEMPTS):
            user = self.store.get_user_by_subject(subject)
            if user:
                # A login without a name keeps the stored one
                return self._record_login(user, email, name or user.display_name)
            try:
                user = self.store.create_user(
                    subject,
                    email,
                    name or email,
                    roles=[self.default_role],
                    granted_by=SYSTEM_ACTOR,
                    now=self._clock(),
                )
            except ConstraintViolation as exc:
                logger.info(
                    "provisioning_create_conflict",
                    subject=subject,
                    field=exc.detail.get("field"),
                    attempt=attempt + 1,
                )
                if exc.detail.get("field") == "email" and not self.store.get_user_by_subject(subject):
                    raise ConflictError(
                        "email is already linked to another identity",
                        detail={"field": "email"},
                    ) from exc
                continue
            logger.info("user_provisioned", user_id=user.id, subject=subject)
            return user
        raise ConflictError("could not provision user", detail={"subject": subject})

    def _record_login(self, user: User, email: str, display_name: Optional[str]) -> User:
        try:
            updated = self.store.update_user_login(
                user.id,
                email=email,
                display_name=display_name,
                last_login_at=self._clock(),
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "email is already linked to another identity", detail={"field": "email"}
            ) from exc
        if updated is None:
            raise NotFoundError("user not found", detail={"user_id": user.id})
        if updated.email != user.email or updated.display_name != user.display_name:
            logger.info("user_profile_synced", user_id=user.id)
        return updated

    def find_user(self, user_id: str) -> Optional[User]:
        return self.store.get_user(user_id)

    def get_user(self, user_id: str) -> User:
        user = self.find_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def list_users(self, limit: int = 100, *, active_only: bool = False) -> List[User]:
        return self.store.list_users(limit, active_only=active_only)

    def roles_for(self, user_id: str) -> List[str]:
        return [grant.role for grant in self.store.list_user_roles(user_id)]

    def _require_role(self, role: str) -> str:
        name = role.strip().upper()
        if not self.store.get_role(name):
            raise ValidationError("unknown role", detail={"role": role})
        return name

    def grant_role(self, user_id: str, role: str, *, granted_by: Optional[str]) -> bool:
        name = self._require_role(role)
        self.get_user(user_id)
        return self.store.grant_role(user_id, name, granted_by=granted_by, now=self._clock())

    def revoke_role(self, user_id: str, role: str) -> bool:
        name = self._require_role(role)
        self.get_user(user_id)
        return self.store.revoke_role(user_id, name)

    def set_active(self, user_id: str, active: bool) -> User:
        user = self.store.set_user_active(user_id, active, now=self._clock())
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user
