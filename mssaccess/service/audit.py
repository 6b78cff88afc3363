from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

from mssaccess.config import Settings
from mssaccess.logging import get_logger
from mssaccess.service.errors import ValidationError
from mssaccess.service.record_validation import validate_audit_detail
from mssaccess.storage.models import AuditLogEntry, AuditQuery, new_id

logger = get_logger(__name__)

RISK_LEVELS = ("low", "medium", "high", "critical")
MAX_QUERY_LIMIT = 1000
DEFAULT_QUERY_LIMIT = 50
REPORT_SECTION_LIMIT = 100

# (domain, operation) -> (action_type, resource_type, risk_level)
AUDIT_EVENT_MAP: Dict[Tuple[str, str], Tuple[str, str, str]] = {
    ("login", "success"): ("login_success", "user_session", "low"),
    ("login", "failure"): ("login_failed", "user_session", "medium"),
    ("logout", "logout"): ("logout", "user_session", "low"),
    ("organization", "create"): ("organization_create", "organization", "medium"),
    ("organization", "update"): ("organization_update", "organization", "medium"),
    ("organization", "delete"): ("organization_delete", "organization", "high"),
    ("user", "create"): ("user_create", "user", "low"),
    ("user", "update"): ("user_update", "user", "low"),
    ("user", "delete"): ("user_delete", "user", "high"),
    ("user", "invite"): ("user_invite", "user", "low"),
    ("access", "grant"): ("technician_access_grant", "technician_access", "medium"),
    ("access", "revoke"): ("technician_access_revoke", "technician_access", "high"),
    ("access", "update"): ("technician_access_update", "technician_access", "medium"),
    ("access", "handoff"): ("technician_access_handoff", "technician_access", "high"),
    ("mfa", "enable"): ("mfa_enable", "user_security", "low"),
    ("mfa", "disable"): ("mfa_disable", "user_security", "medium"),
    ("mfa", "verify"): ("mfa_verify", "user_security", "low"),
    ("mfa", "backup_code_used"): ("mfa_backup_code_used", "user_security", "low"),
    ("password", "change"): ("password_change", "user_security", "medium"),
    ("password", "reset"): ("password_reset", "user_security", "medium"),
    ("password", "reset_request"): ("password_reset_request", "user_security", "medium"),
    ("data", "view"): ("data_view", "", "low"),
    ("data", "download"): ("data_download", "", "low"),
    ("data", "export"): ("data_export", "", "medium"),
}

# compliance report sections keyed by action type prefix
_REPORT_SECTIONS = (
    ("user_management", "user_"),
    ("access_management", "technician_access_"),
    ("data_access", "data_"),
    ("security_events", "security_event_"),
)


@dataclass
class RequestContext:
    """Request origin carried into sessions and audit rows."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    location: Optional[str] = None
    device_info: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AuditEvent:
    action_type: str
    resource_type: str
    description: str
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    resource_id: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    risk_level: str = "low"
    compliance_relevant: bool = True
    system_event: bool = False
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AuditPage:
    entries: List[AuditLogEntry]
    total: int
    limit: int
    offset: int


class AuditStore(Protocol):
    def append_audit(self, entry: AuditLogEntry) -> str: ...

    def query_audit(self, query: AuditQuery) -> Tuple[List[AuditLogEntry], int]: ...

    def count_audit(self, query: AuditQuery) -> int: ...

    def audit_histogram(
        self, column: str, query: AuditQuery, *, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]: ...

    def delete_audit_before(self, cutoff: datetime) -> int: ...


def email_digest(email: str) -> str:
    return hashlib.sha256((email or "").strip().lower().encode()).hexdigest()[:16]


class AuditService:
    """Append-only compliance trail shared by every other service.

    ``append`` is the single write path. The ``log_*`` wrappers translate a
    domain event into the canonical ``(action_type, resource_type, risk)``
    triple from ``AUDIT_EVENT_MAP``.
    """

    def __init__(self, store: AuditStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def append(self, event: AuditEvent) -> str:
        errors: List[str] = []
        if not (event.action_type or "").strip():
            errors.append("action_type is required")
        if not (event.resource_type or "").strip():
            errors.append("resource_type is required")
        if not (event.description or "").strip():
            errors.append("description is required")
        if not event.user_id and not event.system_event:
            errors.append("user_id is required unless the event is system-originated")
        if event.risk_level not in RISK_LEVELS:
            errors.append(f"risk_level must be one of {', '.join(RISK_LEVELS)}")
        if errors:
            raise ValidationError("invalid audit entry", errors=errors)

        schema_version = validate_audit_detail(event.action_type, event.detail or {})
        entry = AuditLogEntry(
            id=new_id(),
            action_type=event.action_type,
            resource_type=event.resource_type,
            action_description=event.description,
            timestamp=self._now(),
            user_id=event.user_id,
            session_id=event.session_id,
            organization_id=event.organization_id,
            resource_id=event.resource_id,
            action_data=dict(event.detail or {}),
            schema_version=schema_version,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            risk_level=event.risk_level,
            compliance_relevant=event.compliance_relevant,
            metadata=dict(event.metadata or {}),
        )
        entry_id = self.store.append_audit(entry)
        self.logger.info(
            "audit_appended",
            audit_id=entry_id,
            action_type=entry.action_type,
            risk_level=entry.risk_level,
            user_id=entry.user_id,
        )
        return entry_id

    def _mapped(
        self,
        domain: str,
        operation: str,
        *,
        description: str,
        user_id: Optional[str],
        organization_id: Optional[str],
        resource_id: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
        resource_type: Optional[str] = None,
        system_event: bool = False,
    ) -> str:
        try:
            action_type, mapped_resource, risk = AUDIT_EVENT_MAP[(domain, operation)]
        except KeyError:
            raise ValidationError(
                "unknown audit event", errors=[f"{domain}:{operation}"]
            ) from None
        ctx = context or RequestContext()
        return self.append(
            AuditEvent(
                action_type=action_type,
                resource_type=resource_type or mapped_resource,
                description=description,
                user_id=user_id,
                organization_id=organization_id,
                resource_id=resource_id,
                detail=detail or {},
                risk_level=risk,
                system_event=system_event,
                session_id=ctx.session_id,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
            )
        )

    # wrappers
    def log_login(
        self,
        *,
        success: bool,
        user_id: Optional[str],
        organization_id: Optional[str],
        context: Optional[RequestContext] = None,
        method: str = "password",
        reason: Optional[str] = None,
        email: Optional[str] = None,
        mfa_enrollment_required: bool = False,
    ) -> str:
        if success:
            return self._mapped(
                "login",
                "success",
                description="User logged in",
                user_id=user_id,
                organization_id=organization_id,
                resource_id=context.session_id if context else None,
                detail={"method": method, "mfa_enrollment_required": mfa_enrollment_required},
                context=context,
            )
        detail: Dict[str, Any] = {"reason": reason or "invalid_credential"}
        if email:
            detail["email_digest"] = email_digest(email)
        return self._mapped(
            "login",
            "failure",
            description="Failed login attempt",
            user_id=user_id,
            organization_id=organization_id,
            detail=detail,
            context=context,
            system_event=user_id is None,
        )

    def log_logout(
        self,
        *,
        user_id: str,
        organization_id: Optional[str],
        context: Optional[RequestContext] = None,
        reason: str = "logout",
    ) -> str:
        return self._mapped(
            "logout",
            "logout",
            description="User logged out",
            user_id=user_id,
            organization_id=organization_id,
            resource_id=context.session_id if context else None,
            detail={"reason": reason},
            context=context,
        )

    def log_organization_action(
        self,
        operation: str,
        *,
        user_id: Optional[str],
        organization_id: Optional[str],
        target_org_id: str,
        organization_name: str,
        organization_type: Optional[str] = None,
        changes: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> str:
        detail: Dict[str, Any] = {"organization_name": organization_name}
        if organization_type:
            detail["organization_type"] = organization_type
        if changes:
            detail["changes"] = changes
        return self._mapped(
            "organization",
            operation,
            description=f"Organization {operation}: {organization_name}",
            user_id=user_id,
            organization_id=organization_id,
            resource_id=target_org_id,
            detail=detail,
            context=context,
            system_event=user_id is None,
        )

    def log_user_action(
        self,
        operation: str,
        *,
        user_id: Optional[str],
        organization_id: Optional[str],
        target_user_id: str,
        email: Optional[str] = None,
        role: Optional[str] = None,
        changes: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> str:
        detail: Dict[str, Any] = {}
        if email:
            detail["email"] = email
        if role:
            detail["role"] = role
        if changes:
            detail["changes"] = changes
        return self._mapped(
            "user",
            operation,
            description=f"User {operation}: {email or target_user_id}",
            user_id=user_id,
            organization_id=organization_id,
            resource_id=target_user_id,
            detail=detail,
            context=context,
            system_event=user_id is None,
        )

    def log_access_action(
        self,
        operation: str,
        *,
        user_id: Optional[str],
        organization_id: Optional[str],
        access_id: Optional[str],
        description: str,
        detail: Dict[str, Any],
        context: Optional[RequestContext] = None,
    ) -> str:
        return self._mapped(
            "access",
            operation,
            description=description,
            user_id=user_id,
            organization_id=organization_id,
            resource_id=access_id,
            detail=detail,
            context=context,
            system_event=user_id is None,
        )

    def log_mfa_action(
        self,
        operation: str,
        *,
        user_id: str,
        organization_id: Optional[str],
        detail: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> str:
        return self._mapped(
            "mfa",
            operation,
            description=f"MFA {operation.replace('_', ' ')}",
            user_id=user_id,
            organization_id=organization_id,
            resource_id=user_id,
            detail=detail or {},
            context=context,
        )

    def log_password_action(
        self,
        operation: str,
        *,
        user_id: str,
        organization_id: Optional[str],
        detail: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> str:
        return self._mapped(
            "password",
            operation,
            description=f"Password {operation.replace('_', ' ')}",
            user_id=user_id,
            organization_id=organization_id,
            resource_id=user_id,
            detail=detail or {},
            context=context,
        )

    def log_data_access(
        self,
        operation: str,
        *,
        user_id: str,
        organization_id: Optional[str],
        resource_type: str,
        resource_id: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> str:
        return self._mapped(
            "data",
            operation,
            description=f"Data {operation}: {resource_type}",
            user_id=user_id,
            organization_id=organization_id,
            resource_id=resource_id,
            detail=detail or {},
            context=context,
            resource_type=resource_type,
        )

    def log_security_event(
        self,
        event_type: str,
        *,
        risk_level: str,
        description: str,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> str:
        ctx = context or RequestContext()
        return self.append(
            AuditEvent(
                action_type=f"security_event_{event_type}",
                resource_type="security",
                description=description,
                user_id=user_id,
                organization_id=organization_id,
                detail={"event_type": event_type, **(detail or {})},
                risk_level=risk_level,
                system_event=user_id is None,
                session_id=ctx.session_id,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
            )
        )

    # reads
    def query(self, filters: AuditQuery) -> AuditPage:
        if filters.limit < 1:
            raise ValidationError("limit must be positive")
        if filters.offset < 0:
            raise ValidationError("offset must not be negative")
        if filters.risk_level and filters.risk_level not in RISK_LEVELS:
            raise ValidationError("invalid risk level", errors=[filters.risk_level])
        bounded = replace(filters, limit=min(filters.limit, MAX_QUERY_LIMIT))
        entries, total = self.store.query_audit(bounded)
        return AuditPage(entries=entries, total=total, limit=bounded.limit, offset=bounded.offset)

    def stats(
        self,
        organization_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        scope = AuditQuery(organization_id=organization_id, start=start, end=end)
        recent_start = self._now() - timedelta(hours=24)
        if start and start > recent_start:
            recent_start = start
        recent_scope = replace(scope, start=recent_start)
        risk_levels = {level: 0 for level in RISK_LEVELS}
        for bucket in self.store.audit_histogram("risk_level", scope):
            risk_levels[bucket["value"]] = bucket["count"]
        return {
            "total_logs": self.store.count_audit(scope),
            "compliance_logs": self.store.count_audit(replace(scope, compliance_relevant=True)),
            "recent_logs": self.store.count_audit(recent_scope),
            "risk_levels": risk_levels,
            "top_actions": [
                {"action_type": b["value"], "count": b["count"]}
                for b in self.store.audit_histogram("action_type", scope, limit=10)
            ],
            "top_resources": [
                {"resource_type": b["value"], "count": b["count"]}
                for b in self.store.audit_histogram("resource_type", scope, limit=10)
            ],
        }

    def compliance_report(
        self,
        organization_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        scope = AuditQuery(
            organization_id=organization_id,
            start=start,
            end=end,
            compliance_relevant=True,
        )
        section_counts: Dict[str, int] = {}
        details: Dict[str, List[AuditLogEntry]] = {}
        for name, prefix in _REPORT_SECTIONS:
            section_query = replace(
                scope, action_prefix=prefix, limit=REPORT_SECTION_LIMIT, offset=0
            )
            entries, total = self.store.query_audit(section_query)
            details[name] = entries
            section_counts[name] = total
        high_risk = sum(
            self.store.count_audit(replace(scope, risk_level=level))
            for level in ("high", "critical")
        )
        return {
            "generated_at": self._now(),
            "period": {"start": start, "end": end},
            "organization_id": organization_id,
            "summary": {
                "total_compliance_logs": self.store.count_audit(scope),
                "high_risk_events": high_risk,
                "user_accounts": section_counts["user_management"],
                "access_grants": section_counts["access_management"],
                "data_access": section_counts["data_access"],
                "security_events": section_counts["security_events"],
            },
            "details": details,
        }

    def user_activity_summary(self, user_id: str, days: int = 30) -> Dict[str, Any]:
        if days < 1:
            raise ValidationError("days must be positive")
        scope = AuditQuery(user_id=user_id, start=self._now() - timedelta(days=days))
        latest, total = self.store.query_audit(replace(scope, limit=1))
        risky = sum(
            self.store.count_audit(replace(scope, risk_level=level))
            for level in ("high", "critical")
        )
        return {
            "user_id": user_id,
            "days": days,
            "total_actions": total,
            "risky_sessions": risky,
            "last_activity": latest[0].timestamp if latest else None,
            "top_actions": [
                {"action_type": b["value"], "count": b["count"]}
                for b in self.store.audit_histogram("action_type", scope, limit=5)
            ],
        }

    def cleanup_old_logs(self, retention_days: Optional[int] = None) -> int:
        """Delete non-compliance entries older than the retention horizon."""
        days = retention_days if retention_days is not None else self.settings.audit_retention_days
        if days < 1:
            raise ValidationError("retention_days must be positive")
        cutoff = self._now() - timedelta(days=days)
        deleted = self.store.delete_audit_before(cutoff)
        self.logger.info("audit_cleanup_completed", deleted=deleted, retention_days=days)
        return deleted
