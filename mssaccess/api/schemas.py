from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mssaccess.logging import current_request_id
from mssaccess.service.access import ACCESS_LEVELS, AccessMatrix, HandoffResult
from mssaccess.service.auth import LoginResult
from mssaccess.service.mfa import MFASetup
from mssaccess.service.passwords import PasswordValidation
from mssaccess.service.tokens import TokenPair
from mssaccess.storage.models import (
    AuditLogEntry,
    Organization,
    Session,
    TechnicianAccess,
    User,
)

MAX_LIST_ITEMS = 100
MAX_STRING_LENGTH = 1024


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credential",
    "invalid_code",
    "token_expired",
    "token_invalid",
    "token_revoked",
    "no_active_session",
    "account_locked",
    "transaction_failed",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: current_request_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class _EmailPayload(BaseModel):
    @field_validator("email", check_fields=False)
    @classmethod
    def _validate_payload_email(cls, value: str) -> str:
        return _validate_email(value)


# requests
class LoginRequest(_EmailPayload):
    email: str
    password: str = Field(..., max_length=MAX_STRING_LENGTH)
    mfa_code: Optional[str] = Field(default=None, max_length=32)
    device_info: Dict[str, Any] = Field(default_factory=dict)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class MFACodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)


class PasswordValidateRequest(BaseModel):
    password: str = Field(..., max_length=MAX_STRING_LENGTH)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=MAX_STRING_LENGTH)
    new_password: str = Field(..., max_length=MAX_STRING_LENGTH)


class PasswordResetRequest(_EmailPayload):
    email: str


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=MAX_STRING_LENGTH)


class OrganizationCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=255)
    org_type: str = Field(..., alias="type")
    domain: Optional[str] = Field(default=None, max_length=255)
    sso_enabled: bool = False
    settings: Dict[str, Any] = Field(default_factory=dict)


class OrganizationUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    domain: Optional[str] = Field(default=None, max_length=255)
    sso_enabled: Optional[bool] = None
    status: Optional[str] = None
    settings: Optional[Dict[str, Any]] = None


class UserCreateRequest(_EmailPayload):
    org_id: str
    email: str
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    role: str
    password: str = Field(..., max_length=MAX_STRING_LENGTH)


class UserUpdateRequest(BaseModel):
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    role: Optional[str] = None
    status: Optional[str] = None


class AccessGrantRequest(BaseModel):
    technician_id: str
    customer_org_id: str
    access_level: str = "read_only"
    expires_at: Optional[datetime] = None
    allowed_services: Optional[List[str]] = Field(default=None, max_length=MAX_LIST_ITEMS)
    ip_restrictions: Optional[List[str]] = Field(default=None, max_length=MAX_LIST_ITEMS)
    time_restrictions: Optional[Dict[str, Any]] = None
    notes: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("access_level")
    @classmethod
    def _validate_level(cls, value: str) -> str:
        if value not in ACCESS_LEVELS:
            raise ValueError(f"access_level must be one of {', '.join(ACCESS_LEVELS)}")
        return value


class AccessUpdateRequest(BaseModel):
    access_level: Optional[str] = None
    expires_at: Optional[datetime] = None
    allowed_services: Optional[List[str]] = Field(default=None, max_length=MAX_LIST_ITEMS)
    ip_restrictions: Optional[List[str]] = Field(default=None, max_length=MAX_LIST_ITEMS)
    time_restrictions: Optional[Dict[str, Any]] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class HandoffRequest(BaseModel):
    from_technician_id: str
    to_technician_id: str
    customer_org_ids: Optional[List[str]] = Field(default=None, max_length=1000)
    reason: Optional[str] = Field(default=None, max_length=2000)
    maintain_original_access: bool = False


class AuditCleanupRequest(BaseModel):
    retention_days: Optional[int] = Field(default=None, ge=1)


# responses
class OrganizationResponse(BaseModel):
    id: str
    name: str
    type: str
    domain: Optional[str] = None
    sso_enabled: bool = False
    status: str
    settings: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, org: Organization) -> "OrganizationResponse":
        return cls(
            id=org.id,
            name=org.name,
            type=org.type,
            domain=org.domain,
            sso_enabled=org.sso_enabled,
            status=org.status,
            settings=org.settings,
            created_at=org.created_at,
            updated_at=org.updated_at,
        )


class UserResponse(BaseModel):
    id: str
    org_id: str
    email: str
    first_name: str
    last_name: str
    role: str
    status: str
    mfa_enabled: bool = False
    last_login_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_model(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            org_id=user.org_id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role,
            status=user.status,
            mfa_enabled=user.mfa_enabled,
            last_login_at=user.last_login_at,
            password_changed_at=user.password_changed_at,
            created_at=user.created_at,
        )


class TokensResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_at: datetime
    refresh_expires_at: Optional[datetime] = None
    session_id: str

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokensResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_at=pair.access_expires_at,
            refresh_expires_at=pair.refresh_expires_at,
            session_id=pair.session_id,
        )


class LoginResponse(BaseModel):
    user: UserResponse
    organization: OrganizationResponse
    tokens: Optional[TokensResponse] = None
    mfa_required: bool = False
    mfa_enrollment_required: bool = False
    password_expired: bool = False

    @classmethod
    def from_result(cls, result: LoginResult) -> "LoginResponse":
        return cls(
            user=UserResponse.from_model(result.user),
            organization=OrganizationResponse.from_model(result.organization),
            tokens=TokensResponse.from_pair(result.tokens) if result.tokens else None,
            mfa_required=result.mfa_required,
            mfa_enrollment_required=result.mfa_enrollment_required,
            password_expired=result.password_expired,
        )


class SessionResponse(BaseModel):
    id: str
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None
    device_info: Dict[str, Any] = Field(default_factory=dict)
    current: bool = False

    @classmethod
    def from_model(cls, session: Session, *, current_id: Optional[str] = None) -> "SessionResponse":
        return cls(
            id=session.id,
            created_at=session.created_at,
            last_activity_at=session.last_activity_at,
            expires_at=session.expires_at,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            location=session.location,
            device_info=session.device_info,
            current=session.id == current_id,
        )


class MFASetupResponse(BaseModel):
    secret: str
    otpauth_uri: str
    backup_codes: List[str]

    @classmethod
    def from_setup(cls, setup: MFASetup) -> "MFASetupResponse":
        return cls(
            secret=setup.secret, otpauth_uri=setup.otpauth_uri, backup_codes=setup.backup_codes
        )


class PasswordValidationResponse(BaseModel):
    valid: bool
    errors: List[str]
    score: int
    strength: str

    @classmethod
    def from_result(cls, result: PasswordValidation) -> "PasswordValidationResponse":
        return cls(
            valid=result.valid, errors=result.errors, score=result.score, strength=result.strength
        )


class AccessRecordResponse(BaseModel):
    id: str
    technician_id: str
    customer_org_id: str
    access_level: str
    granted_by: Optional[str] = None
    granted_at: datetime
    expires_at: Optional[datetime] = None
    status: str
    allowed_services: List[str] = Field(default_factory=list)
    ip_restrictions: List[str] = Field(default_factory=list)
    time_restrictions: Dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None
    transferred_from: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    revoked_reason: Optional[str] = None

    @classmethod
    def from_model(cls, record: TechnicianAccess) -> "AccessRecordResponse":
        return cls(
            id=record.id,
            technician_id=record.technician_id,
            customer_org_id=record.customer_org_id,
            access_level=record.access_level,
            granted_by=record.granted_by,
            granted_at=record.granted_at,
            expires_at=record.expires_at,
            status=record.status,
            allowed_services=record.allowed_services,
            ip_restrictions=record.ip_restrictions,
            time_restrictions=record.time_restrictions,
            notes=record.notes,
            transferred_from=record.transferred_from,
            revoked_at=record.revoked_at,
            revoked_by=record.revoked_by,
            revoked_reason=record.revoked_reason,
        )


class TechnicianSummary(BaseModel):
    id: str
    first_name: str
    last_name: str
    email: str
    role: str

    @classmethod
    def from_model(cls, user: User) -> "TechnicianSummary":
        return cls(
            id=user.id,
            first_name=user.first_name,
            last_name=user.last_name,
            email=user.email,
            role=user.role,
        )


class MatrixCell(BaseModel):
    technician_id: str
    customer_org_id: str
    has_access: bool
    access: Optional[AccessRecordResponse] = None


class AccessMatrixResponse(BaseModel):
    matrix: Dict[str, MatrixCell]
    technicians: List[TechnicianSummary]
    customers: List[OrganizationResponse]

    @classmethod
    def from_matrix(cls, result: AccessMatrix) -> "AccessMatrixResponse":
        return cls(
            matrix={
                key: MatrixCell(
                    technician_id=cell["technician_id"],
                    customer_org_id=cell["customer_org_id"],
                    has_access=cell["has_access"],
                    access=AccessRecordResponse.from_model(cell["access"]) if cell["access"] else None,
                )
                for key, cell in result.matrix.items()
            },
            technicians=[TechnicianSummary.from_model(t) for t in result.technicians],
            customers=[OrganizationResponse.from_model(c) for c in result.customers],
        )


class HandoffResponse(BaseModel):
    results: List[Dict[str, Any]]
    summary: Dict[str, int]
    from_technician: TechnicianSummary
    to_technician: TechnicianSummary

    @classmethod
    def from_result(cls, result: HandoffResult) -> "HandoffResponse":
        return cls(
            results=result.results,
            summary=result.summary,
            from_technician=TechnicianSummary.from_model(result.from_technician),
            to_technician=TechnicianSummary.from_model(result.to_technician),
        )


class AuditEntryResponse(BaseModel):
    id: str
    action_type: str
    resource_type: str
    action_description: str
    timestamp: datetime
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    organization_id: Optional[str] = None
    resource_id: Optional[str] = None
    action_data: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    risk_level: str
    compliance_relevant: bool

    @classmethod
    def from_model(cls, entry: AuditLogEntry) -> "AuditEntryResponse":
        return cls(
            id=entry.id,
            action_type=entry.action_type,
            resource_type=entry.resource_type,
            action_description=entry.action_description,
            timestamp=entry.timestamp,
            user_id=entry.user_id,
            session_id=entry.session_id,
            organization_id=entry.organization_id,
            resource_id=entry.resource_id,
            action_data=entry.action_data,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            risk_level=entry.risk_level,
            compliance_relevant=entry.compliance_relevant,
        )


class AuditListResponse(BaseModel):
    items: List[AuditEntryResponse]
    total: int
    limit: int
    offset: int
