from __future__ import annotations

import hmac
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Query, Request, Response

from sessioncore.api.error_handling import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    clear_session_cookies,
)
from sessioncore.api.schemas import (
    Envelope,
    PrincipalResponse,
    RefreshRequest,
    RefreshResponse,
    RevokeRequest,
    RevokeUserResponse,
    RoleChangeResponse,
    SessionCheckResponse,
    SessionCreateRequest,
    SessionResponse,
    UserListResponse,
    UserSummary,
)
from sessioncore.logging import bind_principal, get_logger
from sessioncore.service.authenticator import RequestAuthenticator, UserPrincipal
from sessioncore.service.clock import from_epoch
from sessioncore.service.errors import RefreshTokenNotFound, TokenError
from sessioncore.service.runtime import get_runtime
from sessioncore.storage.models import ROLE_ADMIN, ExternalIdentity, RequestMeta, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _request_meta(request: Request) -> RequestMeta:
    return RequestMeta(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def _user_summary(user: User, roles: list[str]) -> UserSummary:
    return UserSummary(
        id=user.id,
        email=user.email,
        display_name=user.display_name,
        roles=roles,
        is_active=user.is_active,
        created_at=user.created_at,
        last_login_at=user.last_login_at,
    )


def _apply_session_cookies(
    response: Response,
    *,
    access_token: str,
    refresh_token: Optional[str],
) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        ACCESS_COOKIE,
        access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.access_token_ttl_minutes * 60,
        path="/",
    )
    if refresh_token:
        response.set_cookie(
            REFRESH_COOKIE,
            refresh_token,
            httponly=True,
            secure=settings.cookie_secure,
            samesite="lax",
            max_age=settings.refresh_token_ttl_minutes * 60,
            path="/",
        )


async def get_user(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
) -> UserPrincipal:
    principal = await get_runtime().authenticator.authenticate_request(authorization, access_token)
    bind_principal(principal.user_id, principal.jti)
    return principal


async def get_admin_user(principal: UserPrincipal = Depends(get_user)) -> UserPrincipal:
    return RequestAuthenticator.require_role(principal, ROLE_ADMIN)


# ---------------------------------------------------------------- sessions


@router.post("/session", response_model=Envelope, status_code=201, tags=["session"])
async def create_session(
    body: SessionCreateRequest,
    request: Request,
    response: Response,
    x_exchange_secret: Optional[str] = Header(None, alias="X-Exchange-Secret"),
):
    """Start a session for an identity the OIDC client has already verified.

    Raises:
        401: If the exchange secret is configured and does not match
        403: If the local account is deactivated
        409: If the email belongs to another identity
    """
    runtime = get_runtime()
    expected = runtime.settings.session_exchange_secret
    if expected and not hmac.compare_digest(
        (x_exchange_secret or "").encode(), expected.encode()
    ):
        logger.warning("session_exchange_secret_mismatch")
        raise _http_error("unauthorized", "invalid exchange secret", status_code=401)

    issued = runtime.issuer.issue_session(
        ExternalIdentity(
            subject=body.subject, email=body.email, display_name=body.display_name
        ),
        meta=_request_meta(request),
    )
    _apply_session_cookies(
        response, access_token=issued.access.token, refresh_token=issued.refresh.raw
    )
    return Envelope(
        status="ok",
        data=SessionResponse(
            user=_user_summary(issued.user, issued.roles),
            access_token=issued.access.token,
            refresh_token=issued.refresh.raw,
            access_expires_at=issued.access.claims.expires_at_dt,
            refresh_expires_at=issued.refresh.record.expires_at,
        ),
    )


@router.post("/session/refresh", response_model=Envelope, tags=["session"])
async def refresh_session(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    refresh_token: Optional[str] = Cookie(None),
):
    runtime = get_runtime()
    raw = (body.refresh_token if body else None) or refresh_token
    if not raw:
        raise RefreshTokenNotFound("missing refresh credential")
    result = runtime.refresher.refresh(raw, meta=_request_meta(request))
    if result.requires_reauth:
        raise _http_error(
            "reauth_required",
            "re-authentication required",
            status_code=401,
            details={"requires_reauth": True, "login_url": runtime.settings.login_url},
        )
    new_refresh = result.refresh.raw if result.refresh else None
    _apply_session_cookies(
        response, access_token=result.access.token, refresh_token=new_refresh
    )
    return Envelope(
        status="ok",
        data=RefreshResponse(
            access_token=result.access.token,
            refresh_token=new_refresh,
            expires_at=result.access.claims.expires_at_dt,
        ),
    )


@router.post("/session/revoke", status_code=204, tags=["session"])
async def revoke_session(
    body: Optional[RevokeRequest] = None,
    refresh_token: Optional[str] = Cookie(None),
    principal: UserPrincipal = Depends(get_user),
):
    runtime = get_runtime()
    raw = (body.refresh_token if body else None) or refresh_token
    record = runtime.refresh_tokens.find(raw) if raw else None
    await runtime.admin.logout(
        principal.user_id,
        principal.jti,
        from_epoch(principal.expires_at),
        refresh_record_id=record.id if record else None,
    )
    response = Response(status_code=204)
    clear_session_cookies(response, secure=runtime.settings.cookie_secure)
    return response


@router.get("/session/whoami", response_model=Envelope, tags=["session"])
async def whoami(principal: UserPrincipal = Depends(get_user)):
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            user_id=principal.user_id,
            email=principal.email,
            roles=principal.roles,
            expires_at=from_epoch(principal.expires_at),
        ),
    )


@router.get("/session/check", response_model=Envelope, tags=["session"])
async def check_session(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
    refresh_token: Optional[str] = Cookie(None),
):
    """Report session state without ever failing with 401."""
    runtime = get_runtime()
    try:
        principal = await runtime.authenticator.authenticate_request(
            authorization, access_token
        )
    except TokenError as exc:
        logger.debug("session_check_unauthenticated", token_kind=exc.kind)
        principal = None
    status = runtime.refresher.check(principal, refresh_token)
    return Envelope(
        status="ok",
        data=SessionCheckResponse(
            authenticated=status.authenticated,
            refresh_valid=status.refresh_valid,
            requires_reauth=status.requires_reauth,
            access_expires_at=(
                from_epoch(status.access_expires_at) if status.access_expires_at else None
            ),
            user_id=status.user_id,
        ),
    )


# ------------------------------------------------------------------- admin


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: int = Query(100, ge=1, le=1000, description="Maximum users to return"),
    active_only: bool = False,
    principal: UserPrincipal = Depends(get_admin_user),
):
    runtime = get_runtime()
    users = runtime.provisioner.list_users(limit, active_only=active_only)
    return Envelope(
        status="ok",
        data=UserListResponse(
            items=[_user_summary(u, runtime.provisioner.roles_for(u.id)) for u in users]
        ),
    )


@router.post("/admin/users/{user_id}/revoke", response_model=Envelope, tags=["admin"])
async def admin_revoke_user(
    user_id: str, principal: UserPrincipal = Depends(get_admin_user)
):
    """Kill every session the user holds (breach response)."""
    runtime = get_runtime()
    runtime.provisioner.get_user(user_id)
    count = await runtime.admin.admin_revoke_user(user_id, actor=principal.user_id)
    return Envelope(
        status="ok",
        data=RevokeUserResponse(user_id=user_id, refresh_tokens_revoked=count),
    )


@router.post("/admin/users/{user_id}/deactivate", response_model=Envelope, tags=["admin"])
async def admin_deactivate_user(
    user_id: str, principal: UserPrincipal = Depends(get_admin_user)
):
    runtime = get_runtime()
    if user_id == principal.user_id:
        raise _http_error("validation_error", "cannot deactivate yourself", status_code=400)
    user = await runtime.admin.deactivate_user(user_id, actor=principal.user_id)
    return Envelope(
        status="ok", data=_user_summary(user, runtime.provisioner.roles_for(user.id))
    )


@router.post("/admin/users/{user_id}/activate", response_model=Envelope, tags=["admin"])
async def admin_activate_user(
    user_id: str, principal: UserPrincipal = Depends(get_admin_user)
):
    runtime = get_runtime()
    user = await runtime.admin.activate_user(user_id, actor=principal.user_id)
    return Envelope(
        status="ok", data=_user_summary(user, runtime.provisioner.roles_for(user.id))
    )


@router.post("/admin/users/{user_id}/roles/{role}", response_model=Envelope, tags=["admin"])
async def admin_grant_role(
    user_id: str, role: str, principal: UserPrincipal = Depends(get_admin_user)
):
    runtime = get_runtime()
    changed = await runtime.admin.grant_role(user_id, role, actor=principal.user_id)
    return Envelope(
        status="ok",
        data=RoleChangeResponse(
            user_id=user_id,
            role=role.upper(),
            changed=changed,
            roles=runtime.provisioner.roles_for(user_id),
        ),
    )


@router.delete("/admin/users/{user_id}/roles/{role}", response_model=Envelope, tags=["admin"])
async def admin_revoke_role(
    user_id: str, role: str, principal: UserPrincipal = Depends(get_admin_user)
):
    runtime = get_runtime()
    if user_id == principal.user_id and role.upper() == ROLE_ADMIN:
        raise _http_error("validation_error", "cannot remove your own admin role", status_code=400)
    changed = await runtime.admin.revoke_role(user_id, role, actor=principal.user_id)
    return Envelope(
        status="ok",
        data=RoleChangeResponse(
            user_id=user_id,
            role=role.upper(),
            changed=changed,
            roles=runtime.provisioner.roles_for(user_id),
        ),
    )
