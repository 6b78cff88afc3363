from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Organization:
    id: str
    name: str
    type: str
    domain: Optional[str] = None
    sso_enabled: bool = False
    status: str = "active"
    settings: Dict[str, Any] = field(default_factory=dict)
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    id: str
    org_id: str
    email: str
    first_name: str
    last_name: str
    role: str
    status: str = "active"
    password_hash: Optional[str] = None
    password_changed_at: Optional[datetime] = None
    # newest first, bounded by the password reuse window
    password_history: List[str] = field(default_factory=list)
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None
    mfa_backup_codes: List[str] = field(default_factory=list)
    mfa_last_used: Optional[datetime] = None
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class Session:
    id: str
    user_id: str
    session_token_hash: str
    refresh_token_hash: Optional[str]
    created_at: datetime
    access_expires_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    status: str = "active"
    device_info: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        *,
        session_token_hash: str,
        refresh_token_hash: Optional[str],
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        session_id: Optional[str] = None,
        device_info: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        location: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=session_id or new_id(),
            user_id=user_id,
            session_token_hash=session_token_hash,
            refresh_token_hash=refresh_token_hash,
            created_at=now,
            access_expires_at=now + access_ttl,
            expires_at=now + refresh_ttl,
            last_activity_at=now,
            device_info=dict(device_info or {}),
            ip_address=ip_address,
            user_agent=user_agent,
            location=location,
        )


@dataclass
class TechnicianAccess:
    id: str
    technician_id: str
    customer_org_id: str
    access_level: str
    granted_by: Optional[str]
    granted_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    status: str = "active"
    allowed_services: List[str] = field(default_factory=list)
    ip_restrictions: List[str] = field(default_factory=list)
    time_restrictions: Dict[str, Any] = field(default_factory=dict)
    notes: Optional[str] = None
    transferred_from: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    revoked_reason: Optional[str] = None
    updated_at: Optional[datetime] = None


@dataclass
class PasswordResetToken:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None


@dataclass
class AuditLogEntry:
    id: str
    action_type: str
    resource_type: str
    action_description: str
    timestamp: datetime
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    organization_id: Optional[str] = None
    resource_id: Optional[str] = None
    action_data: Dict[str, Any] = field(default_factory=dict)
    schema_version: int = 1
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    risk_level: str = "low"
    compliance_relevant: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AuditQuery:
    """Filters accepted by the audit query and aggregation paths."""

    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    action_type: Optional[str] = None
    resource_type: Optional[str] = None
    risk_level: Optional[str] = None
    compliance_relevant: Optional[bool] = None
    ip_address: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    action_prefix: Optional[str] = None
    limit: int = 50
    offset: int = 0
