from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from ipaddress import ip_network
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from mssaccess.config import ROLES_BY_ORG_TYPE, TECHNICIAN_ROLES, OrgType
from mssaccess.logging import get_logger
from mssaccess.service.audit import AuditService, RequestContext
from mssaccess.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TransactionFailureError,
    ValidationError,
)
from mssaccess.storage.common import ip_matches
from mssaccess.storage.errors import ConstraintViolation, StorageUnavailable
from mssaccess.storage.models import Organization, TechnicianAccess, User, new_id

logger = get_logger(__name__)

ACCESS_LEVELS = ("read_only", "full_access", "emergency")

DEFAULT_SERVICES: Dict[str, Tuple[str, ...]] = {
    "read_only": ("reports", "alerts"),
    "full_access": ("reports", "alerts", "interventions", "configurations"),
    "emergency": ("reports", "alerts", "interventions", "configurations", "emergency_access"),
}

MUTABLE_FIELDS = (
    "access_level",
    "expires_at",
    "allowed_services",
    "ip_restrictions",
    "time_restrictions",
    "notes",
)

SKIP_EXISTING_REASON = "Destination technician already has active access"
SKIP_EXPIRED_REASON = "Source access has expired"
SKIP_INACTIVE_CUSTOMER_REASON = "Customer organization is not active"


@dataclass
class AccessMatrix:
    matrix: Dict[str, Dict[str, Any]]
    technicians: List[User]
    customers: List[Organization]


@dataclass
class HandoffResult:
    results: List[Dict[str, Any]]
    summary: Dict[str, int]
    from_technician: User
    to_technician: User


class AccessStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def list_users(
        self,
        *,
        org_id: Optional[str] = None,
        roles: Optional[Sequence[str]] = None,
        status: Optional[str] = None,
    ) -> List[User]: ...

    def get_organization(self, org_id: str) -> Optional[Organization]: ...

    def list_organizations(self, **filters: Any) -> Tuple[List[Organization], int]: ...

    def create_access(self, record: TechnicianAccess) -> TechnicianAccess: ...

    def get_access(self, access_id: str) -> Optional[TechnicianAccess]: ...

    def get_active_access(
        self, technician_id: str, customer_org_id: str
    ) -> Optional[TechnicianAccess]: ...

    def list_access(self, **filters: Any) -> List[TechnicianAccess]: ...

    def update_access(self, access_id: str, **changes: Any) -> Optional[TechnicianAccess]: ...

    def revoke_access(
        self, access_id: str, *, revoked_by: Optional[str], reason: str, at: datetime
    ) -> Optional[TechnicianAccess]: ...

    def expire_access(self, now: datetime) -> List[TechnicianAccess]: ...

    def transaction(self): ...


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _audit_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class AccessGrantService:
    """Technician grants against customer tenants, the grant matrix and bulk handoff.

    At most one active grant exists per (technician, customer) pair; the store
    enforces it and this service reports a duplicate as ``ConflictError``.
    """

    def __init__(self, store: AccessStore, audit: AuditService) -> None:
        self.store = store
        self.audit = audit
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # roles
    def list_valid_roles(self, org_type: str) -> List[str]:
        try:
            return list(ROLES_BY_ORG_TYPE[org_type])
        except KeyError:
            raise ValidationError("Unknown organization type", errors=[str(org_type)]) from None

    def validate_role(self, role: str, org_type: str) -> bool:
        return role in ROLES_BY_ORG_TYPE.get(org_type, ())

    # lookups
    def _require_technician(self, technician_id: str) -> User:
        user = self.store.get_user(technician_id) if technician_id else None
        if not user or user.status != "active" or user.role not in TECHNICIAN_ROLES:
            raise NotFoundError("Technician not found or not eligible")
        org = self.store.get_organization(user.org_id)
        if not org or org.type != OrgType.PROVIDER.value or org.status != "active":
            raise NotFoundError("Technician not found or not eligible")
        return user

    def _require_customer(self, customer_org_id: str) -> Organization:
        org = self.store.get_organization(customer_org_id) if customer_org_id else None
        if not org or org.type != OrgType.CUSTOMER.value or org.status != "active":
            raise NotFoundError("Customer organization not found")
        return org

    # validation
    def _validate_level(self, level: str) -> None:
        if level not in ACCESS_LEVELS:
            raise ValidationError(
                "Invalid access level",
                errors=[f"access_level must be one of {', '.join(ACCESS_LEVELS)}"],
            )

    def _validate_expiry(self, expires_at: Optional[datetime]) -> None:
        if expires_at is None:
            return
        if expires_at.tzinfo is None:
            raise ValidationError("expires_at must include a timezone")
        if expires_at <= self._now():
            raise ValidationError("Expiration date must be in the future")

    def _validate_restrictions(
        self,
        ip_restrictions: Optional[Sequence[str]],
        time_restrictions: Optional[Dict[str, Any]],
    ) -> None:
        errors: List[str] = []
        for entry in ip_restrictions or []:
            try:
                ip_network(str(entry).strip(), strict=False)
            except ValueError:
                errors.append(f"invalid IP network: {entry}")
        if time_restrictions:
            days = time_restrictions.get("days")
            if days is not None and (
                not isinstance(days, list)
                or any(not isinstance(d, int) or d < 0 or d > 6 for d in days)
            ):
                errors.append("time_restrictions.days must be integers 0-6")
            start = time_restrictions.get("start_hour", 0)
            end = time_restrictions.get("end_hour", 24)
            if not isinstance(start, int) or not isinstance(end, int):
                errors.append("time_restrictions hours must be integers")
            elif not (0 <= start < end <= 24):
                errors.append("time_restrictions requires 0 <= start_hour < end_hour <= 24")
            unknown = set(time_restrictions) - {"days", "start_hour", "end_hour"}
            if unknown:
                errors.append(f"unknown time_restrictions keys: {', '.join(sorted(unknown))}")
        if errors:
            raise ValidationError("Invalid access restrictions", errors=errors)

    # grants
    def grant(
        self,
        technician_id: str,
        customer_org_id: str,
        level: str = "read_only",
        *,
        granted_by: Optional[str],
        expires_at: Optional[datetime] = None,
        allowed_services: Optional[List[str]] = None,
        ip_restrictions: Optional[List[str]] = None,
        time_restrictions: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> TechnicianAccess:
        self._validate_level(level)
        self._validate_expiry(expires_at)
        self._validate_restrictions(ip_restrictions, time_restrictions)
        technician = self._require_technician(technician_id)
        customer = self._require_customer(customer_org_id)
        if self.store.get_active_access(technician.id, customer.id):
            raise ConflictError("Technician already has active access to this customer")

        now = self._now()
        record = TechnicianAccess(
            id=new_id(),
            technician_id=technician.id,
            customer_org_id=customer.id,
            access_level=level,
            granted_by=granted_by,
            granted_at=now,
            expires_at=expires_at,
            allowed_services=list(allowed_services or DEFAULT_SERVICES[level]),
            ip_restrictions=list(ip_restrictions or []),
            time_restrictions=dict(time_restrictions or {}),
            notes=notes,
            updated_at=now,
        )
        try:
            with self.store.transaction():
                created = self.store.create_access(record)
                self.audit.log_access_action(
                    "grant",
                    user_id=granted_by,
                    organization_id=customer.id,
                    access_id=created.id,
                    description=f"Granted {level} access to {technician.full_name} for {customer.name}",
                    detail={
                        "technician_id": technician.id,
                        "customer_org_id": customer.id,
                        "access_level": level,
                        "allowed_services": created.allowed_services,
                        "expires_at": _iso(expires_at),
                        "notes": notes,
                    },
                    context=context,
                )
        except ConstraintViolation as exc:
            raise ConflictError(
                "Technician already has active access to this customer", detail=exc.detail
            ) from exc
        self.logger.info(
            "technician_access_granted",
            access_id=created.id,
            technician_id=technician.id,
            customer_org_id=customer.id,
            level=level,
        )
        return created

    def update(
        self,
        access_id: str,
        fields: Dict[str, Any],
        *,
        updated_by: Optional[str],
        context: Optional[RequestContext] = None,
    ) -> TechnicianAccess:
        changes = {k: v for k, v in (fields or {}).items() if k in MUTABLE_FIELDS}
        unknown = sorted(set(fields or {}) - set(MUTABLE_FIELDS))
        if unknown:
            raise ValidationError("Fields cannot be updated", errors=unknown)
        if not changes:
            raise ValidationError("No updates provided")
        if "access_level" in changes:
            self._validate_level(changes["access_level"])
        if "expires_at" in changes:
            self._validate_expiry(changes["expires_at"])
        self._validate_restrictions(
            changes.get("ip_restrictions"), changes.get("time_restrictions")
        )

        existing = self.store.get_access(access_id)
        if not existing or existing.status != "active":
            raise NotFoundError("Active access record not found")
        for key in ("allowed_services", "ip_restrictions"):
            if key in changes:
                changes[key] = list(changes[key] or [])
        if "time_restrictions" in changes:
            changes["time_restrictions"] = dict(changes["time_restrictions"] or {})

        with self.store.transaction():
            updated = self.store.update_access(access_id, updated_at=self._now(), **changes)
            self.audit.log_access_action(
                "update",
                user_id=updated_by,
                organization_id=existing.customer_org_id,
                access_id=access_id,
                description="Technician access updated",
                detail={
                    "technician_id": existing.technician_id,
                    "customer_org_id": existing.customer_org_id,
                    "changes": {k: _audit_value(v) for k, v in changes.items()},
                },
                context=context,
            )
        self.logger.info("technician_access_updated", access_id=access_id, fields=sorted(changes))
        return updated

    def revoke(
        self,
        access_id: str,
        *,
        revoked_by: Optional[str],
        reason: str = "Administrative revocation",
        context: Optional[RequestContext] = None,
    ) -> TechnicianAccess:
        with self.store.transaction():
            revoked = self.store.revoke_access(
                access_id, revoked_by=revoked_by, reason=reason, at=self._now()
            )
            if not revoked:
                raise NotFoundError("Active access record not found")
            self.audit.log_access_action(
                "revoke",
                user_id=revoked_by,
                organization_id=revoked.customer_org_id,
                access_id=access_id,
                description="Technician access revoked",
                detail={
                    "technician_id": revoked.technician_id,
                    "customer_org_id": revoked.customer_org_id,
                    "reason": reason,
                },
                context=context,
            )
        self.logger.info("technician_access_revoked", access_id=access_id, reason=reason)
        return revoked

    def list_technician_access(
        self, technician_id: str, *, status: Optional[str] = None
    ) -> List[TechnicianAccess]:
        return self.store.list_access(technician_id=technician_id, status=status)

    def expire_grants(self) -> int:
        expired = self.store.expire_access(self._now())
        for record in expired:
            self.logger.info(
                "technician_access_expired",
                access_id=record.id,
                technician_id=record.technician_id,
                customer_org_id=record.customer_org_id,
            )
        return len(expired)

    # matrix
    def _technicians(self) -> List[User]:
        providers, _ = self.store.list_organizations(
            org_type=OrgType.PROVIDER.value, status="active", limit=1000
        )
        technicians: List[User] = []
        for provider in providers:
            technicians.extend(
                self.store.list_users(org_id=provider.id, roles=TECHNICIAN_ROLES, status="active")
            )
        technicians.sort(key=lambda u: (u.last_name.lower(), u.first_name.lower(), u.id))
        return technicians

    def build_access_matrix(self) -> AccessMatrix:
        technicians = self._technicians()
        customers, _ = self.store.list_organizations(
            org_type=OrgType.CUSTOMER.value, status="active", limit=10000
        )
        active: Dict[Tuple[str, str], TechnicianAccess] = {
            (rec.technician_id, rec.customer_org_id): rec
            for rec in self.store.list_access(status="active")
        }
        matrix: Dict[str, Dict[str, Any]] = {}
        for tech in technicians:
            for customer in customers:
                rec = active.get((tech.id, customer.id))
                matrix[f"{tech.id}_{customer.id}"] = {
                    "technician_id": tech.id,
                    "customer_org_id": customer.id,
                    "has_access": rec is not None,
                    "access": rec,
                }
        return AccessMatrix(matrix=matrix, technicians=technicians, customers=customers)

    # enforcement
    def authorize(
        self,
        technician_id: str,
        customer_org_id: str,
        *,
        service: Optional[str] = None,
        ip_address: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> TechnicianAccess:
        """Return the active grant covering this request or raise ``ForbiddenError``.

        Time windows use UTC hours and days numbered from Sunday (0) to Saturday (6).
        """
        record = self.store.get_active_access(technician_id, customer_org_id)
        if not record:
            raise ForbiddenError("No active access to this customer")
        at = at or self._now()
        if record.expires_at and record.expires_at <= at:
            raise ForbiddenError("Access has expired")
        if service and record.allowed_services and service not in record.allowed_services:
            raise ForbiddenError("Service not permitted by this access grant")
        if record.ip_restrictions and not ip_matches(ip_address, record.ip_restrictions):
            raise ForbiddenError("Request origin not permitted by this access grant")
        window = record.time_restrictions or {}
        if window:
            at_utc = at.astimezone(timezone.utc)
            days = window.get("days")
            if days is not None and (at_utc.weekday() + 1) % 7 not in days:
                raise ForbiddenError("Access not permitted on this day")
            start = window.get("start_hour", 0)
            end = window.get("end_hour", 24)
            if not (start <= at_utc.hour < end):
                raise ForbiddenError("Access not permitted at this time")
        return record

    # handoff
    def handoff(
        self,
        from_technician_id: str,
        to_technician_id: str,
        customer_org_ids: Optional[List[str]] = None,
        reason: Optional[str] = None,
        maintain_original_access: bool = False,
        *,
        performed_by: Optional[str],
        context: Optional[RequestContext] = None,
    ) -> HandoffResult:
        """Copy a technician's active grants to another technician in one transaction.

        Lapsed grants and grants to inactive customers are skipped, as are
        customers where the destination already holds an active grant. Unless
        ``maintain_original_access`` is set the source grants are revoked as
        they are copied.
        """
        if not from_technician_id or not to_technician_id:
            raise ValidationError("Both source and destination technicians are required")
        if from_technician_id == to_technician_id:
            raise ValidationError("Source and destination technicians must differ")
        source = self._require_technician(from_technician_id)
        target = self._require_technician(to_technician_id)
        records = self.store.list_access(
            technician_id=source.id, status="active", customer_org_ids=customer_org_ids
        )
        if not records:
            raise NotFoundError("No active access records found for source technician")

        now = self._now()
        notes = f"Transferred from {source.full_name}. {reason or ''}".strip()
        revoke_reason = f"Access transferred to {target.full_name}"
        results: List[Dict[str, Any]] = []
        try:
            with self.store.transaction():
                for record in records:
                    customer = self.store.get_organization(record.customer_org_id)
                    entry: Dict[str, Any] = {
                        "customer_org_id": record.customer_org_id,
                        "customer_name": customer.name if customer else None,
                    }
                    skip_reason = None
                    if record.expires_at and record.expires_at <= now:
                        skip_reason = SKIP_EXPIRED_REASON
                    elif not customer or customer.status != "active":
                        skip_reason = SKIP_INACTIVE_CUSTOMER_REASON
                    elif self.store.get_active_access(target.id, record.customer_org_id):
                        skip_reason = SKIP_EXISTING_REASON
                    if skip_reason:
                        results.append({**entry, "status": "skipped", "reason": skip_reason})
                        continue
                    created = self.store.create_access(
                        TechnicianAccess(
                            id=new_id(),
                            technician_id=target.id,
                            customer_org_id=record.customer_org_id,
                            access_level=record.access_level,
                            granted_by=performed_by,
                            granted_at=now,
                            expires_at=record.expires_at,
                            allowed_services=list(record.allowed_services),
                            ip_restrictions=list(record.ip_restrictions),
                            time_restrictions=dict(record.time_restrictions),
                            notes=notes,
                            transferred_from=source.id,
                            updated_at=now,
                        )
                    )
                    if not maintain_original_access:
                        self.store.revoke_access(
                            record.id, revoked_by=performed_by, reason=revoke_reason, at=now
                        )
                    results.append({**entry, "status": "transferred", "new_access_id": created.id})

                transferred = sum(1 for r in results if r["status"] == "transferred")
                summary = {
                    "total": len(results),
                    "transferred": transferred,
                    "skipped": len(results) - transferred,
                }
                self.audit.log_access_action(
                    "handoff",
                    user_id=performed_by,
                    organization_id=source.org_id,
                    access_id=None,
                    description=(
                        f"Access handoff from {source.full_name} to {target.full_name}: "
                        f"{transferred} transferred, {summary['skipped']} skipped"
                    ),
                    detail={
                        "from_technician_id": source.id,
                        "to_technician_id": target.id,
                        "reason": reason,
                        "maintain_original_access": maintain_original_access,
                        "transferred_count": transferred,
                        "skipped_count": summary["skipped"],
                        "results": results,
                    },
                    context=context,
                )
        except (ConstraintViolation, StorageUnavailable) as exc:
            self.logger.error(
                "technician_access_handoff_failed",
                from_technician_id=source.id,
                to_technician_id=target.id,
                error=str(exc),
            )
            raise TransactionFailureError("Access handoff failed; no changes were applied") from exc

        self.logger.info(
            "technician_access_handoff",
            from_technician_id=source.id,
            to_technician_id=target.id,
            **summary,
        )
        return HandoffResult(
            results=results, summary=summary, from_technician=source, to_technician=target
        )
