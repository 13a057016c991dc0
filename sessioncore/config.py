from __future__ import annotations

import os
import secrets
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessioncore.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


class RefreshPolicy(str, Enum):
    """How an expired access token may be renewed.

    - FORCED_REAUTH: a live refresh credential only earns a redirect back to
      the identity provider
    - SILENT_REFRESH: a live refresh credential is exchanged for a new access
      token (and, with rotation enabled, a new refresh credential)
    """

    FORCED_REAUTH = "forced_reauth"
    SILENT_REFRESH = "silent_refresh"


class RevocationBackend(str, Enum):
    """Where revoked access-token identifiers are recorded."""

    STORE = "store"
    MEMORY = "memory"
    REDIS = "redis"


def _load_or_create_signing_secret(state_root: Path) -> str:
    """Return the HMAC key kept at ``<state_root>/.jwt_secret``, minting it once."""
    secret_path = state_root / ".jwt_secret"
    try:
        state_root.mkdir(parents=True, exist_ok=True)
        state_root.chmod(0o700)
    except OSError:
        # Directory may be owned by another user inside containers
        logger.warning("state_root_chmod_skipped", path=str(state_root))

    if secret_path.is_file() and not secret_path.is_symlink():
        try:
            existing = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
        else:
            if len(existing) >= MIN_SECRET_LENGTH:
                return existing
            logger.warning("jwt_secret_too_short_regenerating", path=str(secret_path))

    minted = secrets.token_urlsafe(64)
    # Write beside the target then swap in, so readers never see a partial key
    staging = secret_path.with_name(f".jwt_secret.{secrets.token_hex(4)}.tmp")
    try:
        staging.touch(mode=0o600)
        staging.write_text(minted)
        staging.replace(secret_path)
    except OSError as exc:
        staging.unlink(missing_ok=True)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "cannot store a generated JWT secret; set JWT_SECRET or make STATE_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(secret_path))
    return minted


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sessioncore", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    state_root: str = env_field("/srv/sessioncore", "STATE_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviours; allows runtime resets.",
    )
    build_sha: str = env_field("dev", "BUILD_SHA")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("sessioncore", "JWT_ISSUER")
    jwt_audience: str = env_field("sessioncore-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", description="Access token lifetime", gt=0
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh credential lifetime",
        gt=0,
    )
    clock_skew_leeway_seconds: int = env_field(
        5,
        "CLOCK_SKEW_LEEWAY_SECONDS",
        description="Tolerance applied to the access token exp claim",
        ge=0,
        le=60,
    )

    refresh_policy: RefreshPolicy = env_field(
        RefreshPolicy.FORCED_REAUTH, "REFRESH_POLICY"
    )
    refresh_rotate_on_use: bool = env_field(
        True,
        "REFRESH_ROTATE_ON_USE",
        description="Silent refresh revokes the presented credential and issues a new one",
    )
    revocation_backend: RevocationBackend = env_field(
        RevocationBackend.STORE, "REVOCATION_BACKEND"
    )
    default_role: str = env_field("USER", "DEFAULT_ROLE")
    login_url: str = env_field("/auth/login", "LOGIN_URL")
    token_cleanup_interval_seconds: int = env_field(
        3600, "TOKEN_CLEANUP_INTERVAL_SECONDS", gt=0
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    session_exchange_secret: str | None = env_field(
        None,
        "SESSION_EXCHANGE_SECRET",
        description="Shared secret the OIDC client presents when creating sessions",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("refresh_policy", mode="before")
    @classmethod
    def _validate_refresh_policy(cls, value: Any) -> RefreshPolicy:
        if isinstance(value, str):
            value = value.strip().lower().replace("-", "_")
        return RefreshPolicy(value)

    @field_validator("revocation_backend", mode="before")
    @classmethod
    def _validate_revocation_backend(cls, value: Any) -> RevocationBackend:
        if isinstance(value, str):
            value = value.strip().lower()
        return RevocationBackend(value)

    @field_validator("default_role")
    @classmethod
    def _normalize_default_role(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if not value:
            # Tokens must stay verifiable across restarts
            return _load_or_create_signing_secret(
                Path(os.getenv("STATE_ROOT", "/srv/sessioncore"))
            )
        if len(value) < MIN_SECRET_LENGTH:
            raise ValueError(f"JWT_SECRET must be at least {MIN_SECRET_LENGTH} characters")
        return value


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
