from __future__ import annotations

from fastapi import APIRouter, Depends, Path, Query, Request, Response

from tenantguard.api.middleware import get_principal
from tenantguard.api.schemas import (
    AuditListResponse,
    AuditRecordResponse,
    AuthResponse,
    Envelope,
    LoginRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PrincipalResponse,
    RevokeSessionsResponse,
)
from tenantguard.logging import get_logger
from tenantguard.service.errors import ForbiddenError, RateLimited, SignatureInvalid
from tenantguard.service.principal import Principal
from tenantguard.service.runtime import Runtime, check_rate_limit, get_runtime
from tenantguard.service.tokens import SessionTokens
from tenantguard.storage.common import call_store
from tenantguard.storage.models import AuditRecord, Severity

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


async def _enforce_rate_limit(runtime: Runtime, key: str, limit: int) -> None:
    allowed, _, retry_after = await check_rate_limit(runtime, key, limit, 60)
    if not allowed:
        raise RateLimited(
            "rate limit exceeded", detail={"key": key.split(":", 1)[0], "retry_after": retry_after}
        )


def _apply_refresh_cookie(response: Response, tokens: SessionTokens) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        settings.refresh_cookie_name,
        tokens.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.refresh_token_ttl_seconds,
        path=settings.refresh_cookie_path,
    )


def _clear_refresh_cookie(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        secure=settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )


def _auth_envelope(tokens: SessionTokens) -> Envelope:
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=tokens.user_id,
            session_id=tokens.session_id,
            role=tokens.role,
            tenant_id=tokens.tenant_id,
            access_token=tokens.access_token,
            access_expires_at=tokens.access_expires_at,
            token_type=tokens.token_type,
        ),
    )


def _require_admin(principal: Principal) -> None:
    settings = get_runtime().settings
    if principal.is_privileged() or principal.role == settings.tenant_admin_role:
        return
    raise ForbiddenError("admin role required", detail={"role": principal.role})


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    The access token is returned in the body; the refresh token is only set as
    an HttpOnly cookie scoped to the auth endpoints.
    """
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime, f"login:ip:{_client_ip(request)}", settings.login_ip_rate_limit_per_minute
    )
    await _enforce_rate_limit(runtime, f"login:{body.email}", settings.login_rate_limit_per_minute)
    tokens = await runtime.auth.login(body.email, body.password, client_ip=_client_ip(request))
    _apply_refresh_cookie(response, tokens)
    return _auth_envelope(tokens)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"refresh:ip:{_client_ip(request)}", runtime.settings.refresh_rate_limit_per_minute
    )
    raw = request.cookies.get(runtime.settings.refresh_cookie_name)
    if not raw:
        raise SignatureInvalid("refresh cookie missing")
    tokens = await runtime.tokens.rotate_refresh_token(raw, client_ip=_client_ip(request))
    _apply_refresh_cookie(response, tokens)
    return _auth_envelope(tokens)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    await runtime.tokens.revoke_session(
        principal.token_id,
        principal.session_id,
        reason="logout",
        expires_at=principal.expires_at,
    )
    _clear_refresh_cookie(response)
    return Envelope(status="ok", data={"status": "logged_out"})


@router.post("/auth/password-reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"reset:{body.email}", runtime.settings.reset_rate_limit_per_minute
    )
    await runtime.auth.request_password_reset(body.email)
    # same answer whether or not the account exists
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/password-reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset-confirm:ip:{_client_ip(request)}",
        runtime.settings.reset_rate_limit_per_minute,
    )
    await runtime.auth.confirm_password_reset(body.token, body.new_password)
    return Envelope(status="ok", data={"status": "reset"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: Principal = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            user_id=principal.user_id,
            tenant_id=principal.tenant_id,
            role=principal.role,
            session_id=principal.session_id,
            privileged=principal.is_privileged(),
            expires_at=principal.expires_at,
        ),
    )


@router.get("/tenants/{tenant_id}", response_model=Envelope, tags=["tenants"])
async def get_tenant(
    tenant_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    tenant = await call_store(
        runtime.settings.store_timeout_seconds, runtime.store.get_tenant, tenant_id
    )
    tenant = await runtime.ownership.load_scoped(
        principal, tenant, "tenant", tenant_id, tenant_of=lambda t: t.id
    )
    return Envelope(status="ok", data={"id": tenant.id, "status": tenant.status.value})


@router.get("/tenants/{tenant_id}/audit", response_model=Envelope, tags=["tenants"])
async def list_tenant_audit(
    tenant_id: str = Path(..., max_length=128),
    limit: int = Query(100, ge=1, le=500),
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    await runtime.ownership.enforce(principal, tenant_id, "tenant_audit_log", tenant_id)
    _require_admin(principal)
    records = await runtime.audit.list_records(tenant_id=tenant_id, limit=limit)
    return Envelope(
        status="ok",
        data=AuditListResponse(
            items=[
                AuditRecordResponse(
                    id=r.id,
                    timestamp=r.timestamp,
                    action=r.action,
                    severity=Severity(r.severity).value,
                    actor_user_id=r.actor_user_id,
                    actor_tenant_id=r.actor_tenant_id,
                    target_tenant_id=r.target_tenant_id,
                    target_resource_type=r.target_resource_type,
                    target_resource_id=r.target_resource_id,
                    detail=r.detail,
                )
                for r in records
            ]
        ),
    )


@router.post(
    "/admin/users/{user_id}/revoke-sessions", response_model=Envelope, tags=["admin"]
)
async def revoke_user_sessions(
    user_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    user = await call_store(runtime.settings.store_timeout_seconds, runtime.store.get_user, user_id)
    user = await runtime.ownership.load_scoped(principal, user, "user", user_id)
    _require_admin(principal)
    revoked = await runtime.tokens.revoke_all_user_sessions(user.id, "admin_revoked")
    logger.info(
        "admin_revoked_user_sessions",
        actor_user_id=principal.user_id,
        user_id=user.id,
        revoked=revoked,
    )
    await runtime.audit.record(
        AuditRecord(
            action="sessions-revoked",
            severity=Severity.WARNING,
            actor_user_id=principal.user_id,
            actor_tenant_id=principal.tenant_id,
            target_tenant_id=user.tenant_id,
            target_resource_type="user",
            target_resource_id=user.id,
            detail={"revoked_links": revoked},
        )
    )
    return Envelope(status="ok", data=RevokeSessionsResponse(user_id=user.id, revoked=revoked))
