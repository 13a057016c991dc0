from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from sessioncore.config import RevocationBackend, Settings, get_settings, reset_settings_cache
from sessioncore.logging import get_logger
from sessioncore.service.authenticator import RequestAuthenticator
from sessioncore.service.claims import ClaimsCodec
from sessioncore.service.clock import Clock, utcnow
from sessioncore.service.provisioning import IdentityProvisioner
from sessioncore.service.refresh_tokens import RefreshTokenStore
from sessioncore.service.revocation import (
    MemoryRevocationRegistry,
    RedisRevocationRegistry,
    RevocationRegistry,
    StoreRevocationRegistry,
)
from sessioncore.service.revocation_admin import RevocationAdministrator
from sessioncore.service.sessions import (
    SessionIssuer,
    SessionRefresher,
    build_refresh_strategy,
)
from sessioncore.storage.memory import MemoryStore
from sessioncore.storage.postgres import PostgresStore
from sessioncore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None, *, clock: Clock = utcnow):
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            refresh_policy=self.settings.refresh_policy.value,
            revocation_backend=self.settings.revocation_backend.value,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.state_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache = self._connect_cache()

        access_ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        leeway = timedelta(seconds=self.settings.clock_skew_leeway_seconds)
        self.codec = ClaimsCodec(
            self.settings.jwt_secret,
            self.settings.jwt_issuer,
            self.settings.jwt_audience,
            default_ttl=access_ttl,
            leeway_seconds=self.settings.clock_skew_leeway_seconds,
            clock=clock,
        )
        self.registry = self._build_registry(access_ttl + leeway, leeway)
        self.refresh_tokens = RefreshTokenStore(
            self.store,
            default_ttl=timedelta(minutes=self.settings.refresh_token_ttl_minutes),
            clock=clock,
        )
        self.provisioner = IdentityProvisioner(
            self.store, default_role=self.settings.default_role, clock=clock
        )
        self.issuer = SessionIssuer(self.provisioner, self.codec, self.refresh_tokens)
        self.refresher = SessionRefresher(
            self.provisioner,
            self.codec,
            self.refresh_tokens,
            build_refresh_strategy(self.settings),
        )
        self.authenticator = RequestAuthenticator(self.codec, self.registry)
        self.admin = RevocationAdministrator(
            self.registry, self.refresh_tokens, self.provisioner, clock=clock
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            registry=type(self.registry).__name__,
            refresh_policy=self.settings.refresh_policy.value,
            rotate_on_use=self.settings.refresh_rotate_on_use,
        )

    def _connect_cache(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except (RedisError, OSError) as exc:
                redis_error = exc

        if self.settings.revocation_backend == RevocationBackend.REDIS:
            raise RuntimeError(
                "REVOCATION_BACKEND=redis requires a reachable REDIS_URL."
            ) from redis_error
        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for shared revocation state; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode=fallback_mode,
        )
        return None

    def _build_registry(
        self, marker_retention: timedelta, leeway: timedelta
    ) -> RevocationRegistry:
        backend = self.settings.revocation_backend
        if backend == RevocationBackend.REDIS:
            return RedisRevocationRegistry(
                self.cache, marker_retention=marker_retention, clock=self.clock, leeway=leeway
            )
        if backend == RevocationBackend.MEMORY:
            return MemoryRevocationRegistry(
                marker_retention=marker_retention, clock=self.clock, leeway=leeway
            )
        return StoreRevocationRegistry(self.store, clock=self.clock, leeway=leeway)

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(clock: Clock = utcnow) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache.client.close()
            else:
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    asyncio.run(runtime.cache.close())
                else:
                    loop.create_task(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, clock=clock)
        return runtime
