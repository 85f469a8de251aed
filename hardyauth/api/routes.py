from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from fastapi import APIRouter, Query, Request, Response

from hardyauth.api.schemas import (
    AuditEntryResponse,
    BackupCodesResponse,
    Envelope,
    LoginRequest,
    MembershipRequest,
    MembershipResponse,
    PasswordChangeRequest,
    PasswordResetComplete,
    PasswordResetRequest,
    PrincipalResponse,
    RegisterRequest,
    SessionResponse,
    TOTPDisableRequest,
    TOTPSetupResponse,
    TOTPVerifyRequest,
    TwoFactorStatusResponse,
)
from hardyauth.logging import get_correlation_id, get_logger
from hardyauth.service.errors import Forbidden
from hardyauth.service.pipeline import RequestContext
from hardyauth.service.runtime import get_runtime
from hardyauth.storage.models import Session

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _carrier(request: Request) -> Dict[str, str]:
    """Cookies take precedence over same-named headers."""
    carrier: Dict[str, str] = dict(request.headers)
    carrier.update(request.cookies)
    return carrier


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _session_cookie_name() -> str:
    return get_runtime().settings.session_carrier_keys[0]


def _apply_session_cookie(response: Response, session: Session) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        _session_cookie_name(),
        session.token,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
        expires=session.expires_at,
        path="/",
    )


async def _protected(
    request: Request,
    operation: str,
    capabilities: tuple[str, ...],
    handler,
    *,
    require_tenant: bool = False,
):
    runtime = get_runtime()
    return await runtime.auth.run_pipeline(
        operation,
        capabilities,
        handler,
        carrier=_carrier(request),
        client_ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        request_id=get_correlation_id(),
        require_tenant=require_tenant,
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create a principal with a policy-checked password.

    Raises:
        400: password rejected by policy
        409: email already registered
        429: rate limit exceeded for this client
    """
    runtime = get_runtime()
    principal = await runtime.auth.register_principal(
        body.email,
        body.password,
        name=body.name,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        request_id=get_correlation_id(),
    )
    return Envelope(
        status="ok",
        data=PrincipalResponse(id=principal.id, email=principal.email, name=principal.name),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password, plus a second factor when enrolled.

    Raises:
        401: invalid credentials, locked account, or missing second factor
        429: rate limit exceeded for this client
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        otp_code=body.otp_code,
        backup_code=body.backup_code,
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
        request_id=get_correlation_id(),
    )
    _apply_session_cookie(response, result.session)
    return Envelope(
        status="ok",
        data=SessionResponse(
            principal_id=result.principal.id,
            session_token=result.session.token,
            session_expires_at=result.session.expires_at,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        await runtime.auth.logout(ctx.resolved.session.token)
        return {"message": "logged out"}

    data = await _protected(request, "auth.logout", (), handler)
    response.delete_cookie(_session_cookie_name(), path="/")
    return Envelope(status="ok", data=data)


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(request: Request):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        principal = ctx.resolved.principal
        organizations = runtime.auth.tenants.list_organizations(principal.id)
        return PrincipalResponse(
            id=principal.id,
            email=principal.email,
            name=principal.name,
            organization_id=ctx.tenant.organization_id,
            role=ctx.tenant.role,
            is_system_admin=ctx.tenant.is_system_admin,
            organizations=[m.organization_id for m in organizations],
        )

    return Envelope(status="ok", data=await _protected(request, "auth.me", (), handler))


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(body: PasswordChangeRequest, request: Request):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        await runtime.auth.change_password(
            ctx.principal_id, body.current_password, body.new_password
        )
        return {"message": "password changed"}

    data = await _protected(request, "auth.password.change", (), handler)
    return Envelope(status="ok", data=data)


@router.post("/auth/password/reset/request", response_model=Envelope, status_code=202, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest, request: Request):
    """Start a password reset. The answer is the same whether or not the email exists."""
    runtime = get_runtime()
    await runtime.auth.request_password_reset(
        body.email,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        request_id=get_correlation_id(),
    )
    return Envelope(
        status="ok",
        data={"message": "if the address is registered, reset instructions have been sent"},
    )


@router.post("/auth/password/reset/complete", response_model=Envelope, tags=["auth"])
async def complete_password_reset(body: PasswordResetComplete, request: Request):
    """Set a new password with a reset token; signs the principal out everywhere.

    Raises:
        400: invalid or expired token, or password rejected by policy
        429: rate limit exceeded for this client
    """
    runtime = get_runtime()
    await runtime.auth.complete_password_reset(
        body.token,
        body.new_password,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        request_id=get_correlation_id(),
    )
    return Envelope(status="ok", data={"message": "password has been reset"})


@router.post("/auth/two-factor/setup", response_model=Envelope, tags=["two-factor"])
async def two_factor_setup(request: Request):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        enrollment = await runtime.auth.setup_totp(ctx.resolved.principal)
        return TOTPSetupResponse(
            secret=enrollment.secret, provisioning_uri=enrollment.provisioning_uri
        )

    data = await _protected(request, "totp.setup", (), handler)
    return Envelope(status="ok", data=data)


@router.post("/auth/two-factor/verify", response_model=Envelope, tags=["two-factor"])
async def two_factor_verify(body: TOTPVerifyRequest, request: Request):
    """Confirm a pending enrollment; returns the initial backup codes."""
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        codes = await runtime.auth.confirm_totp(ctx.principal_id, body.code)
        return BackupCodesResponse(codes=codes)

    data = await _protected(request, "totp.confirm", (), handler)
    return Envelope(status="ok", data=data)


@router.post("/auth/two-factor/disable", response_model=Envelope, tags=["two-factor"])
async def two_factor_disable(body: TOTPDisableRequest, request: Request):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        await runtime.auth.disable_totp(ctx.principal_id, body.password)
        return {"message": "two-factor authentication disabled"}

    data = await _protected(request, "totp.disable", (), handler)
    return Envelope(status="ok", data=data)


@router.get("/auth/two-factor/status", response_model=Envelope, tags=["two-factor"])
async def two_factor_status(request: Request):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        return TwoFactorStatusResponse(**runtime.auth.two_factor_status(ctx.principal_id))

    data = await _protected(request, "totp.status", (), handler)
    return Envelope(status="ok", data=data)


@router.post("/auth/backup-codes", response_model=Envelope, tags=["two-factor"])
async def regenerate_backup_codes(request: Request):
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        codes = await runtime.auth.generate_backup_codes(ctx.principal_id)
        return BackupCodesResponse(codes=codes)

    data = await _protected(request, "backup_codes.generate", (), handler)
    return Envelope(status="ok", data=data)


@router.post("/admin/memberships", response_model=Envelope, status_code=201, tags=["admin"])
async def add_membership(body: MembershipRequest, request: Request):
    """Add a member to the caller's organization.

    Tenant admins may only add to their own organization; global
    administrators may target any organization.
    """
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        if not ctx.tenant.is_system_admin and body.organization_id != ctx.organization_id:
            raise Forbidden("cannot manage another organization")
        membership = runtime.auth.add_membership(
            body.principal_id, body.organization_id, body.role
        )
        return MembershipResponse(
            principal_id=membership.principal_id,
            organization_id=membership.organization_id,
            role=membership.role,
            status=membership.status,
            joined_at=membership.joined_at,
        )

    data = await _protected(
        request, "member.create", ("member:create",), handler, require_tenant=True
    )
    return Envelope(status="ok", data=data)


@router.get("/admin/audit", response_model=Envelope, tags=["admin"])
async def list_audit(
    request: Request,
    actor_id: Optional[str] = Query(default=None, max_length=128),
    action: Optional[str] = Query(default=None, max_length=128),
    outcome: Optional[str] = Query(default=None, pattern="^(success|failure|cancelled)$"),
    severity: Optional[str] = Query(default=None, pattern="^(info|warning|critical)$"),
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    """Audit entries for the caller's organization, newest first."""
    runtime = get_runtime()

    async def handler(ctx: RequestContext):
        entries = runtime.auth.audit.query(
            organization_id=None if ctx.tenant.is_system_admin else ctx.organization_id,
            actor_id=actor_id,
            action=action,
            outcome=outcome,
            severity=severity,
            since=since,
            until=until,
            limit=limit,
            offset=offset,
        )
        return [
            AuditEntryResponse(
                id=e.id,
                action=e.action,
                outcome=e.outcome,
                severity=e.severity,
                reason=e.reason,
                actor_id=e.actor_id,
                organization_id=e.organization_id,
                ip_address=e.ip_address,
                request_id=e.request_id,
                timestamp=e.timestamp,
                details=e.details,
            )
            for e in entries
        ]

    data = await _protected(
        request, "audit.read", ("audit:read",), handler, require_tenant=True
    )
    return Envelope(status="ok", data=data)
