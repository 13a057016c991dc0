from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from sessioncore.api.error_handling import register_exception_handlers
from sessioncore.api.routes import router
from sessioncore.config import Settings
from sessioncore.logging import clear_request_context, get_logger, set_correlation_id
from sessioncore.storage.errors import StoreUnavailable

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha


_cleanup_task: asyncio.Task | None = None


async def _run_token_cleanup(admin, interval_seconds: int) -> None:
    """Periodically purge expired revocation entries and refresh tokens."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await admin.cleanup_expired()
        except StoreUnavailable as exc:
            # Next tick retries; nothing is lost by skipping one pass
            logger.warning("token_cleanup_skipped", error=exc.message)
        except Exception as exc:
            logger.warning(
                "token_cleanup_failed", error=str(exc), error_type=type(exc).__name__
            )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the cleanup loop on startup; close stores on shutdown."""
    global _cleanup_task
    from sessioncore.service.runtime import get_runtime

    runtime = get_runtime()
    _cleanup_task = asyncio.create_task(
        _run_token_cleanup(runtime.admin, runtime.settings.token_cleanup_interval_seconds)
    )
    logger.info(
        "token_cleanup_scheduled",
        interval_seconds=runtime.settings.token_cleanup_interval_seconds,
    )

    yield

    if _cleanup_task:
        _cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _cleanup_task
        _cleanup_task = None
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Session Core", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with X-Request-ID (client supplied or generated)."""
    clear_request_context()
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Probe the store and, when configured, Redis."""
    from sessioncore.service.runtime import get_runtime

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }
    healthy = db_ok

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        healthy = healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "revocation_backend": runtime.settings.revocation_backend.value,
        "refresh_policy": runtime.settings.refresh_policy.value,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
