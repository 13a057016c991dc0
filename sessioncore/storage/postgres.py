from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from sessioncore.logging import get_logger
from sessioncore.storage.errors import ConstraintViolation, StoreUnavailable
from sessioncore.storage.models import (
    SYSTEM_ACTOR,
    RefreshToken,
    RevocationReason,
    RevokedAccessToken,
    Role,
    User,
    UserRole,
)

_REQUIRED_TABLES = (
    "app_user",
    "app_role",
    "user_role",
    "refresh_token",
    "revoked_access_token",
    "user_revocation",
)

_REFRESH_COLUMNS = (
    "id, user_id, token_hash, issued_at, expires_at, last_used_at, revoked, "
    "revoked_at, revoked_reason, replaced_by, ip_address, user_agent"
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _unique_field(exc: Exception) -> str:
    """Best-effort name of the column behind a unique violation."""
    diag = getattr(exc, "diag", None)
    constraint = (getattr(diag, "constraint_name", None) or "") + " " + str(exc)
    for name in ("subject", "email", "token_hash"):
        if name in constraint:
            return name
    return "unknown"


class PostgresStore:
    """Postgres-backed persistence for users, roles and token state."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.OperationalError, errors.InterfaceError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StoreUnavailable("database unavailable", {"error": type(exc).__name__}) from exc

    def _verify_required_schema(self) -> None:
        """Ensure the session tables exist before serving requests."""

        with self._connect() as conn:
            missing = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sessioncore/storage/schema.sql.".format(
                    ", ".join(sorted(missing))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # ------------------------------------------------------------- row mapping

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            subject=row["subject"],
            email=row["email"],
            display_name=row.get("display_name"),
            is_active=bool(row.get("is_active", True)),
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            last_used_at=row.get("last_used_at"),
            revoked=bool(row.get("revoked", False)),
            revoked_at=row.get("revoked_at"),
            revoked_reason=row.get("revoked_reason"),
            replaced_by=_str_or_none(row.get("replaced_by")),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
        )

    @staticmethod
    def _revoked_from_row(row: Dict[str, Any]) -> RevokedAccessToken:
        return RevokedAccessToken(
            jti=row["jti"],
            user_id=str(row["user_id"]),
            revoked_at=row["revoked_at"],
            expires_at=row["expires_at"],
            reason=row.get("reason"),
            revoked_by=row.get("revoked_by"),
        )

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
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        """
                        INSERT INTO app_user (id, subject, email, display_name, is_active,
                                              created_at, updated_at, last_login_at)
                        VALUES (%s, %s, %s, %s, TRUE, %s, %s, %s)
                        RETURNING *
                        """,
                        (user_id, subject, email, display_name, now, now, now),
                    ).fetchone()
                    for role in roles:
                        conn.execute(
                            """
                            INSERT INTO user_role (user_id, role, granted_at, granted_by)
                            VALUES (%s, %s, %s, %s)
                            """,
                            (user_id, role, now, granted_by),
                        )
        except errors.UniqueViolation as exc:
            field = _unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("unknown role", {"roles": list(roles)}) from exc
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_subject(self, subject: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE subject = %s", (subject,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_login(
        self,
        user_id: str,
        *,
        email: str,
        display_name: Optional[str],
        last_login_at: datetime,
    ) -> Optional[User]:
        try:
            with self._connect() as conn:
                # SET expressions see the pre-update row
                row = conn.execute(
                    """
                    UPDATE app_user
                       SET email = %s,
                           display_name = %s,
                           last_login_at = %s,
                           updated_at = CASE
                               WHEN email IS DISTINCT FROM %s
                                 OR display_name IS DISTINCT FROM %s
                               THEN %s ELSE updated_at END
                     WHERE id = %s
                    RETURNING *
                    """,
                    (
                        email,
                        display_name,
                        last_login_at,
                        email,
                        display_name,
                        last_login_at,
                        user_id,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return self._user_from_row(row) if row else None

    def set_user_active(
        self, user_id: str, is_active: bool, *, now: Optional[datetime] = None
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s, updated_at = %s WHERE id = %s RETURNING *",
                (is_active, now or _utcnow(), user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(self, limit: int = 100, *, active_only: bool = False) -> List[User]:
        query = "SELECT * FROM app_user"
        if active_only:
            query += " WHERE is_active"
        query += " ORDER BY created_at DESC LIMIT %s"
        with self._connect() as conn:
            rows = conn.execute(query, (limit,)).fetchall()
        return [self._user_from_row(row) for row in rows]

    # ------------------------------------------------------------------ roles

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT name, description FROM app_role ORDER BY name").fetchall()
        return [Role(row["name"], row.get("description")) for row in rows]

    def get_role(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT name, description FROM app_role WHERE name = %s", (name,)
            ).fetchone()
        return Role(row["name"], row.get("description")) if row else None

    def list_user_roles(self, user_id: str) -> List[UserRole]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_role WHERE user_id = %s ORDER BY role", (user_id,)
            ).fetchall()
        return [
            UserRole(
                user_id=str(row["user_id"]),
                role=row["role"],
                granted_at=row["granted_at"],
                granted_by=row.get("granted_by"),
            )
            for row in rows
        ]

    def grant_role(
        self,
        user_id: str,
        role: str,
        *,
        granted_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_role (user_id, role, granted_at, granted_by)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (user_id, role) DO NOTHING
                    RETURNING role
                    """,
                    (user_id, role, now or _utcnow(), granted_by),
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "unknown user or role", {"user_id": user_id, "role": role}
            ) from exc
        return row is not None

    def revoke_role(self, user_id: str, role: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM user_role WHERE user_id = %s AND role = %s RETURNING role",
                (user_id, role),
            ).fetchone()
        return row is not None

    # --------------------------------------------------------- refresh tokens

    def _insert_refresh_token(self, conn, record: RefreshToken) -> None:
        conn.execute(
            f"""
            INSERT INTO refresh_token ({_REFRESH_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.id,
                record.user_id,
                record.token_hash,
                record.issued_at,
                record.expires_at,
                record.last_used_at,
                record.revoked,
                record.revoked_at,
                record.revoked_reason,
                record.replaced_by,
                record.ip_address,
                record.user_agent,
            ),
        )

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                self._insert_refresh_token(conn, record)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "refresh token hash exists", {"field": "token_hash"}
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user does not exist", {"user_id": record.user_id}
            ) from exc
        return record

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_REFRESH_COLUMNS} FROM refresh_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_REFRESH_COLUMNS} FROM refresh_token WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def touch_refresh_token(self, token_id: str, used_at: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token SET last_used_at = %s
                 WHERE id = %s AND NOT revoked
                RETURNING id
                """,
                (used_at, token_id),
            ).fetchone()
        return row is not None

    def revoke_refresh_token(
        self, token_id: str, *, reason: str, revoked_at: datetime
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                   SET revoked = TRUE, revoked_at = %s, revoked_reason = %s
                 WHERE id = %s AND NOT revoked
                RETURNING id
                """,
                (revoked_at, reason, token_id),
            ).fetchone()
        return row is not None

    def rotate_refresh_token(
        self, old_id: str, replacement: RefreshToken, *, revoked_at: datetime
    ) -> bool:
        """Revoke ``old_id`` and insert ``replacement`` in one transaction.

        The conditional UPDATE takes the row lock; a concurrent rotation of
        the same record re-checks ``NOT revoked`` after the winner commits
        and matches nothing.
        """
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        """
                        UPDATE refresh_token
                           SET revoked = TRUE,
                               revoked_at = %s,
                               revoked_reason = %s,
                               replaced_by = %s,
                               last_used_at = %s
                         WHERE id = %s AND NOT revoked
                        RETURNING id
                        """,
                        (
                            revoked_at,
                            RevocationReason.ROTATED,
                            replacement.id,
                            revoked_at,
                            old_id,
                        ),
                    ).fetchone()
                    if row is None:
                        return False
                    self._insert_refresh_token(conn, replacement)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "refresh token hash exists", {"field": "token_hash"}
            ) from exc
        return True

    def revoke_user_refresh_tokens(
        self, user_id: str, *, reason: str, revoked_at: datetime
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token
                   SET revoked = TRUE, revoked_at = %s, revoked_reason = %s
                 WHERE user_id = %s AND NOT revoked
                """,
                (revoked_at, reason, user_id),
            )
            return cur.rowcount or 0

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_REFRESH_COLUMNS} FROM refresh_token WHERE user_id = %s ORDER BY issued_at",
                (user_id,),
            ).fetchall()
        return [self._refresh_from_row(row) for row in rows]

    def delete_expired_refresh_tokens(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE expires_at <= %s", (before,))
            return cur.rowcount or 0

    # ------------------------------------------------------- revoked access

    def add_revoked_access_token(self, entry: RevokedAccessToken) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO revoked_access_token (jti, user_id, revoked_at, expires_at, reason, revoked_by)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (jti) DO NOTHING
                RETURNING jti
                """,
                (
                    entry.jti,
                    entry.user_id,
                    entry.revoked_at,
                    entry.expires_at,
                    entry.reason,
                    entry.revoked_by,
                ),
            ).fetchone()
        return row is not None

    def is_access_token_revoked(self, jti: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS hit FROM revoked_access_token WHERE jti = %s", (jti,)
            ).fetchone()
        return row is not None

    def get_revoked_access_token(self, jti: str) -> Optional[RevokedAccessToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM revoked_access_token WHERE jti = %s", (jti,)
            ).fetchone()
        return self._revoked_from_row(row) if row else None

    def set_user_revoked_before(self, user_id: str, revoked_before: datetime) -> datetime:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO user_revocation (user_id, revoked_before)
                VALUES (%s, %s)
                ON CONFLICT (user_id) DO UPDATE
                   SET revoked_before = GREATEST(user_revocation.revoked_before, EXCLUDED.revoked_before)
                RETURNING revoked_before
                """,
                (user_id, revoked_before),
            ).fetchone()
        return row["revoked_before"]

    def get_user_revoked_before(self, user_id: str) -> Optional[datetime]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT revoked_before FROM user_revocation WHERE user_id = %s", (user_id,)
            ).fetchone()
        return row["revoked_before"] if row else None

    def is_token_revoked(self, jti: str, user_id: str) -> tuple[bool, Optional[datetime]]:
        """Point revocation flag and revoked-before marker in one round trip."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT EXISTS (SELECT 1 FROM revoked_access_token WHERE jti = %s) AS point,
                       (SELECT revoked_before FROM user_revocation WHERE user_id = %s) AS revoked_before
                """,
                (jti, user_id),
            ).fetchone()
        return bool(row["point"]), row.get("revoked_before")

    def delete_expired_revoked_access_tokens(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM revoked_access_token WHERE expires_at <= %s", (before,)
            )
            return cur.rowcount or 0
