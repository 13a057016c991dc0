from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from sessioncore.api.schemas import Envelope, ErrorBody
from sessioncore.config import get_settings
from sessioncore.logging import get_logger
from sessioncore.service.errors import RefreshRejected, ServiceError, TokenError
from sessioncore.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    500: "server_error",
    503: "unavailable",
}

# Every access token failure looks the same to the client
INVALID_SESSION_MESSAGE = "invalid session"

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def invalid_session_response() -> JSONResponse:
    return _error_response(401, INVALID_SESSION_MESSAGE, code="unauthorized")


def clear_session_cookies(response: Response, *, secure: bool) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(name, path="/", secure=secure, httponly=True, samesite="lax")


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error(
            "store_unavailable",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(503, "service temporarily unavailable", code="unavailable")

    @app.exception_handler(TokenError)
    async def handle_token_error(request: Request, exc: TokenError):
        logger.warning(
            "access_token_rejected",
            path=request.url.path,
            method=request.method,
            token_kind=exc.kind,
        )
        return invalid_session_response()

    @app.exception_handler(RefreshRejected)
    async def handle_refresh_rejected(request: Request, exc: RefreshRejected):
        log_fn = logger.info if exc.kind == "already_revoked" else logger.warning
        log_fn(
            "refresh_credential_rejected",
            path=request.url.path,
            method=request.method,
            token_kind=exc.kind,
        )
        # The credential is dead; drop it from the browser too
        response = _error_response(
            401, INVALID_SESSION_MESSAGE, {"requires_reauth": False}, code="unauthorized"
        )
        clear_session_cookies(response, secure=get_settings().cookie_secure)
        return response

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        # Envelope-shaped detail produced by routes._http_error()
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            message = error_obj.get("message", "http error")
            code = error_obj.get("code")
            log_fn = logger.error if exc.status_code >= 500 else logger.warning
            log_fn(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=code,
                message=message,
            )
            response = _error_response(
                exc.status_code, message, error_obj.get("details"), code=code
            )
        else:
            message = exc.detail if isinstance(exc.detail, str) else "http error"
            response = _error_response(exc.status_code, message)
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
