from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict, fields, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from sessioncore.logging import get_logger
from sessioncore.storage.errors import ConstraintViolation, StoreUnavailable
from sessioncore.storage.models import (
    DEFAULT_ROLES,
    SYSTEM_ACTOR,
    RefreshToken,
    RevocationReason,
    RevokedAccessToken,
    Role,
    User,
    UserRole,
)

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """In-process store used for tests and single-node development.

    Every operation runs under one re-entrant lock, so compound operations
    (user + default role, revoke + reissue) are atomic with respect to each
    other. With ``fs_root`` set, state is written to
    ``<fs_root>/state/memory_store.json`` after each mutation.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.fs_root = Path(fs_root) if fs_root else None
        self._data_lock = threading.RLock()
        self.users: Dict[str, User] = {}
        self.roles: Dict[str, Role] = {role.name: replace(role) for role in DEFAULT_ROLES}
        self.user_roles: Dict[str, Dict[str, UserRole]] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._refresh_by_hash: Dict[str, str] = {}
        self.revoked_access_tokens: Dict[str, RevokedAccessToken] = {}
        self.user_revoked_before: Dict[str, datetime] = {}
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if self._load_state():
                logger.info("memory_store_state_loaded", users=len(self.users))
            self._persisted = self._snapshot()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        with self._data_lock:
            self._persist_state()

    # ------------------------------------------------------------------ users

    def create_user(
        self,
        subject: str,
        email: str,
        display_name: Optional[str] = None,
        *,
        roles: Iterable[str] = (),
        granted_by: str = SYSTEM_ACTOR,
        now: Optional[datetime] = None,
    ) -> User:
        now = now or _utcnow()
        role_names = list(roles)
        with self._data_lock:
            if any(u.subject == subject for u in self.users.values()):
                raise ConstraintViolation("subject already exists", {"field": "subject"})
            if self._find_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            for role in role_names:
                if role not in self.roles:
                    raise ConstraintViolation("unknown role", {"role": role})
            user = User(
                id=str(uuid.uuid4()),
                subject=subject,
                email=email,
                display_name=display_name,
                created_at=now,
                updated_at=now,
                last_login_at=now,
            )
            self.users[user.id] = user
            self.user_roles[user.id] = {
                role: UserRole(user.id, role, granted_at=now, granted_by=granted_by)
                for role in role_names
            }
            self._persist_state()
            return replace(user)

    def _find_by_email(self, email: str) -> Optional[User]:
        lowered = email.lower()
        return next((u for u in self.users.values() if u.email.lower() == lowered), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_subject(self, subject: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.subject == subject), None)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_by_email(email)
            return replace(user) if user else None

    def update_user_login(
        self,
        user_id: str,
        *,
        email: str,
        display_name: Optional[str],
        last_login_at: datetime,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            holder = self._find_by_email(email)
            if holder and holder.id != user_id:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if user.email != email or user.display_name != display_name:
                user.updated_at = last_login_at
            user.email = email
            user.display_name = display_name
            user.last_login_at = last_login_at
            self._persist_state()
            return replace(user)

    def set_user_active(
        self, user_id: str, is_active: bool, *, now: Optional[datetime] = None
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            user.updated_at = now or _utcnow()
            self._persist_state()
            return replace(user)

    def list_users(self, limit: int = 100, *, active_only: bool = False) -> List[User]:
        with self._data_lock:
            results = [
                replace(u)
                for u in self.users.values()
                if u.is_active or not active_only
            ]
        return sorted(results, key=lambda u: u.created_at, reverse=True)[:limit]

    # ------------------------------------------------------------------ roles

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return [replace(r) for r in self.roles.values()]

    def get_role(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(name)
            return replace(role) if role else None

    def list_user_roles(self, user_id: str) -> List[UserRole]:
        with self._data_lock:
            grants = self.user_roles.get(user_id, {})
            return sorted((replace(g) for g in grants.values()), key=lambda g: g.role)

    def grant_role(
        self,
        user_id: str,
        role: str,
        *,
        granted_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if role not in self.roles:
                raise ConstraintViolation("unknown role", {"role": role})
            grants = self.user_roles.setdefault(user_id, {})
            if role in grants:
                return False
            grants[role] = UserRole(
                user_id, role, granted_at=now or _utcnow(), granted_by=granted_by
            )
            self._persist_state()
            return True

    def revoke_role(self, user_id: str, role: str) -> bool:
        with self._data_lock:
            removed = self.user_roles.get(user_id, {}).pop(role, None)
            if removed:
                self._persist_state()
            return removed is not None

    # --------------------------------------------------------- refresh tokens

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        with self._data_lock:
            self._insert_refresh_token(record)
            self._persist_state()
            return replace(record)

    def _insert_refresh_token(self, record: RefreshToken) -> None:
        if record.user_id not in self.users:
            raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
        if record.token_hash in self._refresh_by_hash:
            raise ConstraintViolation("refresh token hash exists", {"field": "token_hash"})
        stored = replace(record)
        self.refresh_tokens[stored.id] = stored
        self._refresh_by_hash[stored.token_hash] = stored.id

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            return replace(record) if record else None

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token_id = self._refresh_by_hash.get(token_hash)
            record = self.refresh_tokens.get(token_id) if token_id else None
            return replace(record) if record else None

    def touch_refresh_token(self, token_id: str, used_at: datetime) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if not record or record.revoked:
                return False
            record.last_used_at = used_at
            self._persist_state()
            return True

    def revoke_refresh_token(
        self, token_id: str, *, reason: str, revoked_at: datetime
    ) -> bool:
        """Flip ``revoked``; True only for the caller that changed it."""
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if not record or record.revoked:
                return False
            record.revoked = True
            record.revoked_at = revoked_at
            record.revoked_reason = reason
            self._persist_state()
            return True

    def rotate_refresh_token(
        self, old_id: str, replacement: RefreshToken, *, revoked_at: datetime
    ) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(old_id)
            if not record or record.revoked:
                return False
            self._insert_refresh_token(replacement)
            record.revoked = True
            record.revoked_at = revoked_at
            record.revoked_reason = RevocationReason.ROTATED
            record.replaced_by = replacement.id
            record.last_used_at = revoked_at
            self._persist_state()
            return True

    def revoke_user_refresh_tokens(
        self, user_id: str, *, reason: str, revoked_at: datetime
    ) -> int:
        with self._data_lock:
            count = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and not record.revoked:
                    record.revoked = True
                    record.revoked_at = revoked_at
                    record.revoked_reason = reason
                    count += 1
            if count:
                self._persist_state()
            return count

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._data_lock:
            records = [replace(r) for r in self.refresh_tokens.values() if r.user_id == user_id]
        return sorted(records, key=lambda r: r.issued_at)

    def delete_expired_refresh_tokens(self, before: datetime) -> int:
        with self._data_lock:
            stale = [r for r in self.refresh_tokens.values() if r.expires_at <= before]
            for record in stale:
                self.refresh_tokens.pop(record.id, None)
                self._refresh_by_hash.pop(record.token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    # ------------------------------------------------------- revoked access

    def add_revoked_access_token(self, entry: RevokedAccessToken) -> bool:
        with self._data_lock:
            if entry.jti in self.revoked_access_tokens:
                return False
            self.revoked_access_tokens[entry.jti] = replace(entry)
            self._persist_state()
            return True

    def is_access_token_revoked(self, jti: str) -> bool:
        with self._data_lock:
            return jti in self.revoked_access_tokens

    def get_revoked_access_token(self, jti: str) -> Optional[RevokedAccessToken]:
        with self._data_lock:
            entry = self.revoked_access_tokens.get(jti)
            return replace(entry) if entry else None

    def set_user_revoked_before(self, user_id: str, revoked_before: datetime) -> datetime:
        with self._data_lock:
            current = self.user_revoked_before.get(user_id)
            if current is None or revoked_before > current:
                self.user_revoked_before[user_id] = revoked_before
                self._persist_state()
            return self.user_revoked_before[user_id]

    def get_user_revoked_before(self, user_id: str) -> Optional[datetime]:
        with self._data_lock:
            return self.user_revoked_before.get(user_id)

    def is_token_revoked(self, jti: str, user_id: str) -> tuple[bool, Optional[datetime]]:
        with self._data_lock:
            return jti in self.revoked_access_tokens, self.user_revoked_before.get(user_id)

    def delete_expired_revoked_access_tokens(self, before: datetime) -> int:
        with self._data_lock:
            stale = [
                jti
                for jti, entry in self.revoked_access_tokens.items()
                if entry.expires_at <= before
            ]
            for jti in stale:
                self.revoked_access_tokens.pop(jti, None)
            if stale:
                self._persist_state()
            return len(stale)

    # ------------------------------------------------------------ persistence

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _snapshot(self) -> dict:
        return {
            "users": [self._serialize(u) for u in self.users.values()],
            "user_roles": [
                self._serialize(g)
                for grants in self.user_roles.values()
                for g in grants.values()
            ],
            "refresh_tokens": [self._serialize(r) for r in self.refresh_tokens.values()],
            "revoked_access_tokens": [
                self._serialize(e) for e in self.revoked_access_tokens.values()
            ],
            "user_revoked_before": {
                user_id: self._serialize_datetime(ts)
                for user_id, ts in self.user_revoked_before.items()
            },
        }

    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        state = self._snapshot()
        try:
            path = self._state_path()
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            # Roll memory back to the last state that reached disk
            self._apply_state(self._persisted)
            logger.error("memory_store_persist_failed", error=str(exc))
            raise StoreUnavailable(
                "memory store persistence failed", {"error": str(exc)}
            ) from exc
        self._persisted = state

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self._apply_state(data)
        return True

    def _apply_state(self, data: dict) -> None:
        self.users = {
            u["id"]: self._deserialize(User, u) for u in data.get("users", [])
        }
        self.user_roles = {}
        for raw in data.get("user_roles", []):
            grant = self._deserialize(UserRole, raw)
            self.user_roles.setdefault(grant.user_id, {})[grant.role] = grant
        self.refresh_tokens = {
            r["id"]: self._deserialize(RefreshToken, r)
            for r in data.get("refresh_tokens", [])
        }
        self._refresh_by_hash = {
            r.token_hash: r.id for r in self.refresh_tokens.values()
        }
        self.revoked_access_tokens = {
            e["jti"]: self._deserialize(RevokedAccessToken, e)
            for e in data.get("revoked_access_tokens", [])
        }
        self.user_revoked_before = {
            user_id: self._deserialize_datetime(ts)
            for user_id, ts in data.get("user_revoked_before", {}).items()
        }

    @staticmethod
    def _serialize_datetime(value: datetime) -> str:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()

    @staticmethod
    def _deserialize_datetime(value: str) -> datetime:
        parsed = datetime.fromisoformat(value)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _serialize(self, obj) -> dict:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = self._serialize_datetime(value)
        return data

    def _deserialize(self, cls, data: dict):
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in data.items():
            if key not in known:
                continue
            if isinstance(value, str) and key.endswith("_at"):
                value = self._deserialize_datetime(value)
            values[key] = value
        return cls(**values)
