from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from mssaccess.api.schemas import (
    AccessGrantRequest,
    AccessMatrixResponse,
    AccessRecordResponse,
    AccessUpdateRequest,
    AuditCleanupRequest,
    AuditEntryResponse,
    AuditListResponse,
    Envelope,
    HandoffRequest,
    HandoffResponse,
    LoginRequest,
    LoginResponse,
    MFACodeRequest,
    MFASetupResponse,
    OrganizationCreateRequest,
    OrganizationResponse,
    OrganizationUpdateRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PasswordValidateRequest,
    PasswordValidationResponse,
    SessionResponse,
    TokenRefreshRequest,
    TokensResponse,
    UserCreateRequest,
    UserResponse,
    UserUpdateRequest,
)
from mssaccess.config import GRANT_ADMIN_ROLES, PROVIDER_ROLES, OrgType
from mssaccess.logging import get_logger
from mssaccess.service.audit import RequestContext
from mssaccess.service.errors import InvalidCodeError
from mssaccess.service.runtime import get_runtime
from mssaccess.service.tokens import Identity
from mssaccess.storage.models import AuditQuery

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


def _request_context(
    request: Request,
    identity: Optional[Identity] = None,
    device_info: Optional[Dict[str, Any]] = None,
) -> RequestContext:
    return RequestContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        session_id=identity.session_id if identity else None,
        device_info=dict(device_info or {}),
    )


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    return token.strip()


async def get_identity(authorization: Optional[str] = Header(None)) -> Identity:
    runtime = get_runtime()
    return await runtime.tokens.verify(_bearer_token(authorization))


def _is_provider(identity: Identity) -> bool:
    return identity.org_type == OrgType.PROVIDER.value


def _is_grant_admin(identity: Identity) -> bool:
    return _is_provider(identity) and identity.role in GRANT_ADMIN_ROLES


def _is_provider_staff(identity: Identity) -> bool:
    return _is_provider(identity) and identity.role in PROVIDER_ROLES


def _can_manage_org(identity: Identity, org_id: str) -> bool:
    return _is_grant_admin(identity) or (identity.org_id == org_id and identity.role == "admin")


async def get_grant_admin(identity: Identity = Depends(get_identity)) -> Identity:
    if not _is_grant_admin(identity):
        raise _http_error("forbidden", "grant administrator role required", status_code=403)
    return identity


async def get_super_admin(identity: Identity = Depends(get_identity)) -> Identity:
    if not (_is_provider(identity) and identity.role == "super_admin"):
        raise _http_error("forbidden", "super_admin role required", status_code=403)
    return identity


# auth
@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password, plus an MFA code when enrolled.

    With MFA enabled and no code the response carries ``mfa_required`` and no tokens.
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        email=body.email,
        password=body.password,
        mfa_code=body.mfa_code,
        context=_request_context(request, device_info=body.device_info),
    )
    return Envelope(status="ok", data=LoginResponse.from_result(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    pair = await runtime.tokens.refresh(body.refresh_token, _request_context(request))
    session = runtime.store.get_session(pair.session_id)
    user = runtime.directory.get_user(session.user_id)
    org = runtime.directory.get_organization(user.org_id)
    return Envelope(
        status="ok",
        data=LoginResponse(
            user=UserResponse.from_model(user),
            organization=OrganizationResponse.from_model(org),
            tokens=TokensResponse.from_pair(pair),
            mfa_enrollment_required=pair.refresh_token is None,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    await runtime.auth.logout(_bearer_token(authorization), _request_context(request))
    return Envelope(status="ok", data={"message": "Logged out successfully"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(request: Request, identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(identity, _request_context(request, identity))
    return Envelope(status="ok", data={"sessions_revoked": revoked})


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    sessions = runtime.tokens.list_user_sessions(identity.user_id)
    return Envelope(
        status="ok",
        data={
            "items": [
                SessionResponse.from_model(s, current_id=identity.session_id) for s in sessions
            ]
        },
    )


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(session_id: str, identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    session = runtime.store.get_session(session_id)
    if not session or session.user_id != identity.user_id or session.status != "active":
        raise _http_error("not_found", "session not found", status_code=404)
    await runtime.tokens.revoke(session_id, reason="manual_revoke")
    return Envelope(status="ok", data={"session_id": session_id, "revoked": True})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    user = runtime.directory.get_user(identity.user_id)
    org = runtime.directory.get_organization(user.org_id)
    return Envelope(
        status="ok",
        data={
            "user": UserResponse.from_model(user),
            "organization": OrganizationResponse.from_model(org),
            "session_id": identity.session_id,
        },
    )


# mfa
@router.post("/auth/mfa/setup", response_model=Envelope, tags=["mfa"])
async def mfa_setup(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    setup = runtime.mfa.begin_setup(identity.user_id)
    return Envelope(status="ok", data=MFASetupResponse.from_setup(setup))


@router.post("/auth/mfa/enable", response_model=Envelope, tags=["mfa"])
async def mfa_enable(
    body: MFACodeRequest, request: Request, identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    await runtime.mfa.complete_setup(
        identity.user_id, body.code, context=_request_context(request, identity)
    )
    return Envelope(status="ok", data={"enabled": True})


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["mfa"])
async def mfa_verify(
    body: MFACodeRequest, request: Request, identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    result = await runtime.mfa.verify(
        identity.user_id, body.code, context=_request_context(request, identity)
    )
    if not result.valid:
        raise InvalidCodeError("Invalid MFA code")
    return Envelope(
        status="ok",
        data={
            "valid": True,
            "method": result.method,
            "remaining_backup_codes": result.remaining_backup_codes,
        },
    )


@router.post("/auth/mfa/disable", response_model=Envelope, tags=["mfa"])
async def mfa_disable(
    body: MFACodeRequest, request: Request, identity: Identity = Depends(get_identity)
):
    """Disable MFA after confirming a current TOTP or backup code."""
    runtime = get_runtime()
    ctx = _request_context(request, identity)
    result = await runtime.mfa.verify(identity.user_id, body.code, context=ctx)
    if not result.valid:
        raise InvalidCodeError("Invalid MFA code")
    runtime.mfa.disable(identity.user_id, context=ctx)
    return Envelope(status="ok", data={"enabled": False})


@router.post("/auth/mfa/backup-codes", response_model=Envelope, tags=["mfa"])
async def mfa_backup_codes(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    codes = runtime.mfa.regenerate_backup_codes(identity.user_id)
    return Envelope(status="ok", data={"backup_codes": codes})


@router.get("/auth/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    status = runtime.mfa.status(identity.user_id)
    status["required"] = runtime.mfa.is_mfa_required(identity.role)
    return Envelope(status="ok", data=status)


# passwords
@router.post("/auth/password/validate", response_model=Envelope, tags=["password"])
async def validate_password(body: PasswordValidateRequest):
    runtime = get_runtime()
    result = runtime.passwords.validate(body.password)
    return Envelope(status="ok", data=PasswordValidationResponse.from_result(result))


@router.post("/auth/password/change", response_model=Envelope, tags=["password"])
async def change_password(
    body: PasswordChangeRequest, request: Request, identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    runtime.passwords.change(
        identity.user_id,
        body.current_password,
        body.new_password,
        context=_request_context(request, identity),
    )
    return Envelope(status="ok", data={"message": "Password changed successfully"})


@router.post("/auth/reset/request", response_model=Envelope, tags=["password"])
async def request_reset(body: PasswordResetRequest, request: Request):
    runtime = get_runtime()
    token = await runtime.passwords.generate_reset_token(
        body.email, context=_request_context(request)
    )
    if token:
        logger.info("password_reset_token_issued")
    # Same response whether or not the account exists
    return Envelope(
        status="ok",
        data={"message": "If the account exists, a reset link has been sent"},
    )


@router.post("/auth/reset/confirm", response_model=Envelope, tags=["password"])
async def confirm_reset(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    await runtime.passwords.reset_password(
        body.token, body.new_password, context=_request_context(request)
    )
    return Envelope(status="ok", data={"message": "Password reset successfully"})


# organizations
@router.post("/organizations", response_model=Envelope, tags=["organizations"])
async def create_organization(
    body: OrganizationCreateRequest,
    request: Request,
    identity: Identity = Depends(get_grant_admin),
):
    runtime = get_runtime()
    org = runtime.directory.create_organization(
        body.name,
        body.org_type,
        domain=body.domain,
        sso_enabled=body.sso_enabled,
        settings=body.settings,
        created_by=identity.user_id,
        context=_request_context(request, identity),
    )
    return Envelope(status="ok", data=OrganizationResponse.from_model(org))


@router.get("/organizations", response_model=Envelope, tags=["organizations"])
async def list_organizations(
    org_type: Optional[str] = Query(None, alias="type"),
    status: Optional[str] = Query(None),
    search: Optional[str] = Query(None, max_length=255),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    identity: Identity = Depends(get_identity),
):
    if not _is_provider_staff(identity):
        raise _http_error("forbidden", "provider access required", status_code=403)
    runtime = get_runtime()
    orgs, total = runtime.directory.list_organizations(
        org_type=org_type, status=status, search=search, limit=limit, offset=offset
    )
    return Envelope(
        status="ok",
        data={
            "items": [OrganizationResponse.from_model(o) for o in orgs],
            "total": total,
            "limit": limit,
            "offset": offset,
        },
    )


@router.get("/organizations/{org_id}", response_model=Envelope, tags=["organizations"])
async def get_organization(org_id: str, identity: Identity = Depends(get_identity)):
    if identity.org_id != org_id and not _is_provider_staff(identity):
        raise _http_error("forbidden", "organization access denied", status_code=403)
    runtime = get_runtime()
    org = runtime.directory.get_organization(org_id)
    return Envelope(status="ok", data=OrganizationResponse.from_model(org))


@router.patch("/organizations/{org_id}", response_model=Envelope, tags=["organizations"])
async def update_organization(
    org_id: str,
    body: OrganizationUpdateRequest,
    request: Request,
    identity: Identity = Depends(get_identity),
):
    if not _can_manage_org(identity, org_id):
        raise _http_error("forbidden", "organization access denied", status_code=403)
    runtime = get_runtime()
    org = runtime.directory.update_organization(
        org_id,
        body.model_dump(exclude_unset=True),
        updated_by=identity.user_id,
        context=_request_context(request, identity),
    )
    return Envelope(status="ok", data=OrganizationResponse.from_model(org))


@router.delete("/organizations/{org_id}", response_model=Envelope, tags=["organizations"])
async def delete_organization(
    org_id: str, request: Request, identity: Identity = Depends(get_grant_admin)
):
    runtime = get_runtime()
    await runtime.directory.delete_organization(
        org_id, deleted_by=identity.user_id, context=_request_context(request, identity)
    )
    return Envelope(status="ok", data={"id": org_id, "deleted": True})


@router.get("/organizations/{org_id}/users", response_model=Envelope, tags=["users"])
async def list_organization_users(
    org_id: str,
    status: Optional[str] = Query(None),
    identity: Identity = Depends(get_identity),
):
    if not (_can_manage_org(identity, org_id) or _is_provider_staff(identity)):
        raise _http_error("forbidden", "organization access denied", status_code=403)
    runtime = get_runtime()
    users = runtime.directory.list_users(org_id, status=status)
    return Envelope(status="ok", data={"items": [UserResponse.from_model(u) for u in users]})


# users
@router.post("/users", response_model=Envelope, tags=["users"])
async def create_user(
    body: UserCreateRequest, request: Request, identity: Identity = Depends(get_identity)
):
    if not _can_manage_org(identity, body.org_id):
        raise _http_error("forbidden", "organization access denied", status_code=403)
    runtime = get_runtime()
    user = runtime.directory.create_user(
        body.org_id,
        body.email,
        body.first_name,
        body.last_name,
        body.role,
        body.password,
        created_by=identity.user_id,
        context=_request_context(request, identity),
    )
    return Envelope(status="ok", data=UserResponse.from_model(user))


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(user_id: str, identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    user = runtime.directory.get_user(user_id)
    if user.id != identity.user_id and not (
        _can_manage_org(identity, user.org_id) or _is_provider_staff(identity)
    ):
        raise _http_error("forbidden", "user access denied", status_code=403)
    return Envelope(status="ok", data=UserResponse.from_model(user))


@router.patch("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    user_id: str,
    body: UserUpdateRequest,
    request: Request,
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    target = runtime.directory.get_user(user_id)
    changes = body.model_dump(exclude_unset=True)
    is_self_profile = target.id == identity.user_id and set(changes) <= {"first_name", "last_name"}
    if not (is_self_profile or _can_manage_org(identity, target.org_id)):
        raise _http_error("forbidden", "user access denied", status_code=403)
    user = await runtime.directory.update_user(
        user_id,
        changes,
        updated_by=identity.user_id,
        context=_request_context(request, identity),
    )
    return Envelope(status="ok", data=UserResponse.from_model(user))


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def delete_user(user_id: str, request: Request, identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    target = runtime.directory.get_user(user_id)
    if not _can_manage_org(identity, target.org_id):
        raise _http_error("forbidden", "user access denied", status_code=403)
    await runtime.directory.delete_user(
        user_id, deleted_by=identity.user_id, context=_request_context(request, identity)
    )
    return Envelope(status="ok", data={"id": user_id, "deleted": True})


@router.get("/roles/{org_type}", response_model=Envelope, tags=["users"])
async def list_roles(org_type: str, identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data={"org_type": org_type, "roles": runtime.access.list_valid_roles(org_type)},
    )


# technician access
@router.get("/technician-access/matrix", response_model=Envelope, tags=["technician-access"])
async def access_matrix(identity: Identity = Depends(get_grant_admin)):
    runtime = get_runtime()
    matrix = runtime.access.build_access_matrix()
    return Envelope(status="ok", data=AccessMatrixResponse.from_matrix(matrix))


@router.post("/technician-access/grant", response_model=Envelope, tags=["technician-access"])
async def grant_access(
    body: AccessGrantRequest, request: Request, identity: Identity = Depends(get_grant_admin)
):
    runtime = get_runtime()
    record = runtime.access.grant(
        body.technician_id,
        body.customer_org_id,
        body.access_level,
        granted_by=identity.user_id,
        expires_at=body.expires_at,
        allowed_services=body.allowed_services,
        ip_restrictions=body.ip_restrictions,
        time_restrictions=body.time_restrictions,
        notes=body.notes,
        context=_request_context(request, identity),
    )
    return Envelope(status="ok", data=AccessRecordResponse.from_model(record))


@router.post("/technician-access/handoff", response_model=Envelope, tags=["technician-access"])
async def handoff_access(
    body: HandoffRequest, request: Request, identity: Identity = Depends(get_grant_admin)
):
    runtime = get_runtime()
    result = runtime.access.handoff(
        body.from_technician_id,
        body.to_technician_id,
        body.customer_org_ids,
        body.reason,
        body.maintain_original_access,
        performed_by=identity.user_id,
        context=_request_context(request, identity),
    )
    return Envelope(status="ok", data=HandoffResponse.from_result(result))


@router.get(
    "/technician-access/technician/{technician_id}",
    response_model=Envelope,
    tags=["technician-access"],
)
async def technician_access(
    technician_id: str,
    status: Optional[str] = Query(None),
    identity: Identity = Depends(get_identity),
):
    if technician_id != identity.user_id and not _is_grant_admin(identity):
        raise _http_error("forbidden", "technician access denied", status_code=403)
    runtime = get_runtime()
    records = runtime.access.list_technician_access(technician_id, status=status)
    return Envelope(
        status="ok", data={"items": [AccessRecordResponse.from_model(r) for r in records]}
    )


@router.put("/technician-access/{access_id}", response_model=Envelope, tags=["technician-access"])
async def update_access(
    access_id: str,
    body: AccessUpdateRequest,
    request: Request,
    identity: Identity = Depends(get_grant_admin),
):
    runtime = get_runtime()
    record = runtime.access.update(
        access_id,
        body.model_dump(exclude_unset=True),
        updated_by=identity.user_id,
        context=_request_context(request, identity),
    )
    return Envelope(status="ok", data=AccessRecordResponse.from_model(record))


@router.delete(
    "/technician-access/{access_id}", response_model=Envelope, tags=["technician-access"]
)
async def revoke_access(
    access_id: str,
    request: Request,
    reason: str = Query("Administrative revocation", max_length=500),
    identity: Identity = Depends(get_grant_admin),
):
    runtime = get_runtime()
    record = runtime.access.revoke(
        access_id,
        revoked_by=identity.user_id,
        reason=reason,
        context=_request_context(request, identity),
    )
    return Envelope(status="ok", data=AccessRecordResponse.from_model(record))


# audit
def _audit_scope(identity: Identity, organization_id: Optional[str]) -> Optional[str]:
    """Provider super_admins see every tenant; customer admins only their own."""
    if _is_provider(identity) and identity.role == "super_admin":
        return organization_id
    if identity.role == "admin":
        return identity.org_id
    raise _http_error("forbidden", "audit access denied", status_code=403)


@router.get("/audit/logs", response_model=Envelope, tags=["audit"])
async def audit_logs(
    user_id: Optional[str] = Query(None),
    organization_id: Optional[str] = Query(None),
    action_type: Optional[str] = Query(None),
    resource_type: Optional[str] = Query(None),
    risk_level: Optional[str] = Query(None),
    compliance_relevant: Optional[bool] = Query(None),
    ip_address: Optional[str] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    limit: int = Query(50, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    page = runtime.audit.query(
        AuditQuery(
            user_id=user_id,
            organization_id=_audit_scope(identity, organization_id),
            action_type=action_type,
            resource_type=resource_type,
            risk_level=risk_level,
            compliance_relevant=compliance_relevant,
            ip_address=ip_address,
            start=start,
            end=end,
            limit=limit,
            offset=offset,
        )
    )
    return Envelope(
        status="ok",
        data=AuditListResponse(
            items=[AuditEntryResponse.from_model(e) for e in page.entries],
            total=page.total,
            limit=page.limit,
            offset=page.offset,
        ),
    )


@router.get("/audit/stats", response_model=Envelope, tags=["audit"])
async def audit_stats(
    organization_id: Optional[str] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    stats = runtime.audit.stats(_audit_scope(identity, organization_id), start, end)
    return Envelope(status="ok", data=stats)


@router.get("/audit/compliance-report", response_model=Envelope, tags=["audit"])
async def compliance_report(
    request: Request,
    organization_id: Optional[str] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    scope = _audit_scope(identity, organization_id)
    report = runtime.audit.compliance_report(scope, start, end)
    report["details"] = {
        section: [AuditEntryResponse.from_model(e) for e in entries]
        for section, entries in report["details"].items()
    }
    runtime.audit.log_data_access(
        "export",
        user_id=identity.user_id,
        organization_id=identity.org_id,
        resource_type="compliance_report",
        resource_id=scope,
        context=_request_context(request, identity),
    )
    return Envelope(status="ok", data=report)


@router.get("/audit/users/{user_id}/activity", response_model=Envelope, tags=["audit"])
async def user_activity(
    user_id: str,
    days: int = Query(30, ge=1, le=3650),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    if user_id != identity.user_id:
        target = runtime.directory.get_user(user_id)
        scope = _audit_scope(identity, target.org_id)
        if scope is not None and scope != target.org_id:
            raise _http_error("forbidden", "audit access denied", status_code=403)
    summary = runtime.audit.user_activity_summary(user_id, days)
    return Envelope(status="ok", data=summary)


@router.post("/audit/cleanup", response_model=Envelope, tags=["audit"])
async def audit_cleanup(
    body: AuditCleanupRequest, identity: Identity = Depends(get_super_admin)
):
    runtime = get_runtime()
    deleted = runtime.audit.cleanup_old_logs(body.retention_days)
    return Envelope(status="ok", data={"deleted": deleted})


# maintenance
@router.post("/admin/sessions/cleanup", response_model=Envelope, tags=["admin"])
async def cleanup_sessions(identity: Identity = Depends(get_super_admin)):
    runtime = get_runtime()
    return Envelope(status="ok", data={"expired": runtime.tokens.cleanup_expired()})


@router.post("/admin/technician-access/expire", response_model=Envelope, tags=["admin"])
async def expire_access(identity: Identity = Depends(get_super_admin)):
    runtime = get_runtime()
    return Envelope(status="ok", data={"expired": runtime.access.expire_grants()})
