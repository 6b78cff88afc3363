from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from mssaccess.config import ROLES_BY_ORG_TYPE, OrgType
from mssaccess.logging import get_logger
from mssaccess.service.audit import AuditService, RequestContext
from mssaccess.service.errors import ConflictError, NotFoundError, ValidationError
from mssaccess.service.passwords import PasswordService
from mssaccess.service.record_validation import RecordValidationError, validate_org_settings
from mssaccess.service.tokens import TokenService
from mssaccess.storage.errors import ConstraintViolation
from mssaccess.storage.models import Organization, User, new_id

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

ORG_STATUSES = ("active", "suspended")
USER_STATUSES = ("active", "inactive", "suspended")
ORG_MUTABLE_FIELDS = ("name", "domain", "sso_enabled", "status", "settings")
USER_MUTABLE_FIELDS = ("first_name", "last_name", "role", "status")


def _validated_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    try:
        return validate_org_settings(settings)
    except RecordValidationError as exc:
        raise ValidationError("Invalid organization settings", errors=exc.errors) from exc


class DirectoryService:
    """Organizations and users of the tenant directory.

    Deletes are soft: rows move to ``deleted`` and their sessions and grants
    are revoked so nothing issued before the delete keeps working.
    """

    def __init__(
        self,
        store: Any,
        audit: AuditService,
        passwords: PasswordService,
        tokens: TokenService,
    ) -> None:
        self.store = store
        self.audit = audit
        self.passwords = passwords
        self.tokens = tokens
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # organizations
    def create_organization(
        self,
        name: str,
        org_type: str,
        *,
        domain: Optional[str] = None,
        sso_enabled: bool = False,
        settings: Optional[Dict[str, Any]] = None,
        created_by: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> Organization:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Organization name is required")
        if org_type not in ROLES_BY_ORG_TYPE:
            raise ValidationError("Unknown organization type", errors=[str(org_type)])
        settings = _validated_settings(dict(settings or {}))
        if org_type == OrgType.PROVIDER.value:
            providers, total = self.store.list_organizations(
                org_type=OrgType.PROVIDER.value, status="active", limit=1
            )
            if total:
                raise ConflictError("A provider organization already exists")

        now = self._now()
        org = Organization(
            id=new_id(),
            name=name,
            type=org_type,
            domain=domain,
            sso_enabled=sso_enabled,
            settings=settings,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        creator = self.store.get_user(created_by) if created_by else None
        try:
            with self.store.transaction():
                created = self.store.create_organization(org)
                self.audit.log_organization_action(
                    "create",
                    user_id=created_by,
                    organization_id=creator.org_id if creator else created.id,
                    target_org_id=created.id,
                    organization_name=created.name,
                    organization_type=created.type,
                    context=context,
                )
        except ConstraintViolation as exc:
            raise ConflictError(str(exc), detail=exc.detail) from exc
        self.logger.info("organization_created", org_id=created.id, org_type=org_type)
        return created

    def get_organization(self, org_id: str) -> Organization:
        org = self.store.get_organization(org_id)
        if not org or org.status == "deleted":
            raise NotFoundError("Organization not found")
        return org

    def list_organizations(
        self,
        *,
        org_type: Optional[str] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Organization], int]:
        if limit < 1 or limit > 500:
            raise ValidationError("limit must be between 1 and 500")
        if offset < 0:
            raise ValidationError("offset must not be negative")
        return self.store.list_organizations(
            org_type=org_type, status=status, search=search, limit=limit, offset=offset
        )

    def update_organization(
        self,
        org_id: str,
        changes: Dict[str, Any],
        *,
        updated_by: Optional[str],
        context: Optional[RequestContext] = None,
    ) -> Organization:
        org = self.get_organization(org_id)
        unknown = sorted(set(changes or {}) - set(ORG_MUTABLE_FIELDS))
        if unknown:
            raise ValidationError("Fields cannot be updated", errors=unknown)
        updates = dict(changes or {})
        if not updates:
            raise ValidationError("No updates provided")
        if "name" in updates:
            updates["name"] = str(updates["name"] or "").strip()
            if not updates["name"]:
                raise ValidationError("Organization name is required")
        if "status" in updates and updates["status"] not in ORG_STATUSES:
            raise ValidationError("Invalid organization status", errors=[str(updates["status"])])
        if "settings" in updates:
            updates["settings"] = _validated_settings({**org.settings, **(updates["settings"] or {})})

        actor = self.store.get_user(updated_by) if updated_by else None
        try:
            with self.store.transaction():
                updated = self.store.update_organization(
                    org_id, updated_at=self._now(), **updates
                )
                self.audit.log_organization_action(
                    "update",
                    user_id=updated_by,
                    organization_id=actor.org_id if actor else org_id,
                    target_org_id=org_id,
                    organization_name=updated.name,
                    changes={k: v for k, v in updates.items()},
                    context=context,
                )
        except ConstraintViolation as exc:
            raise ConflictError(str(exc), detail=exc.detail) from exc
        return updated

    async def delete_organization(
        self,
        org_id: str,
        *,
        deleted_by: Optional[str],
        context: Optional[RequestContext] = None,
    ) -> Organization:
        org = self.get_organization(org_id)
        if org.type == OrgType.PROVIDER.value:
            raise ValidationError("The provider organization cannot be deleted")
        now = self._now()
        actor = self.store.get_user(deleted_by) if deleted_by else None
        with self.store.transaction():
            deleted = self.store.update_organization(org_id, status="deleted", updated_at=now)
            user_ids = self.store.set_org_users_status(org_id, "deleted", now)
            grants = self.store.list_access(customer_org_id=org_id, status="active")
            for grant in grants:
                self.store.revoke_access(
                    grant.id,
                    revoked_by=deleted_by,
                    reason="Customer organization deleted",
                    at=now,
                )
            self.audit.log_organization_action(
                "delete",
                user_id=deleted_by,
                organization_id=actor.org_id if actor else org_id,
                target_org_id=org_id,
                organization_name=org.name,
                organization_type=org.type,
                changes={"users_deleted": len(user_ids), "grants_revoked": len(grants)},
                context=context,
            )
        for user_id in user_ids:
            await self.tokens.revoke_all(user_id, reason="organization_deleted")
        self.logger.info(
            "organization_deleted", org_id=org_id, users=len(user_ids), grants=len(grants)
        )
        return deleted

    # users
    def _require_role(self, role: str, org: Organization) -> None:
        if role not in ROLES_BY_ORG_TYPE.get(org.type, ()):
            raise ValidationError(
                "Invalid role for organization type",
                errors=[f"{role} is not valid for {org.type}"],
            )

    def create_user(
        self,
        org_id: str,
        email: str,
        first_name: str,
        last_name: str,
        role: str,
        password: str,
        *,
        created_by: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> User:
        org = self.get_organization(org_id)
        if org.status != "active":
            raise ValidationError("Organization is not active")
        email = (email or "").strip().lower()
        errors: List[str] = []
        if not _EMAIL_RE.match(email):
            errors.append("email must be a valid address")
        if not (first_name or "").strip():
            errors.append("first_name is required")
        if not (last_name or "").strip():
            errors.append("last_name is required")
        if errors:
            raise ValidationError("Invalid user", errors=errors)
        self._require_role(role, org)
        validation = self.passwords.validate(password)
        if not validation.valid:
            raise ValidationError("Password does not meet policy", errors=validation.errors)

        now = self._now()
        user = User(
            id=new_id(),
            org_id=org.id,
            email=email,
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            role=role,
            created_at=now,
            updated_at=now,
        )
        try:
            with self.store.transaction():
                created = self.store.create_user(user)
                created = self.passwords.set_initial_password(created.id, password)
                self.audit.log_user_action(
                    "create",
                    user_id=created_by,
                    organization_id=org.id,
                    target_user_id=created.id,
                    email=created.email,
                    role=role,
                    context=context,
                )
        except ConstraintViolation as exc:
            raise ConflictError("A user with this email already exists", detail=exc.detail) from exc
        self.logger.info("user_created", user_id=created.id, org_id=org.id, role=role)
        return created

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user or user.status == "deleted":
            raise NotFoundError("User not found")
        return user

    def list_users(self, org_id: str, *, status: Optional[str] = None) -> List[User]:
        self.get_organization(org_id)
        return self.store.list_users(org_id=org_id, status=status)

    async def update_user(
        self,
        user_id: str,
        changes: Dict[str, Any],
        *,
        updated_by: Optional[str],
        context: Optional[RequestContext] = None,
    ) -> User:
        user = self.get_user(user_id)
        unknown = sorted(set(changes or {}) - set(USER_MUTABLE_FIELDS))
        if unknown:
            raise ValidationError("Fields cannot be updated", errors=unknown)
        updates = {k: v for k, v in (changes or {}).items()}
        if not updates:
            raise ValidationError("No updates provided")
        for key in ("first_name", "last_name"):
            if key in updates:
                updates[key] = str(updates[key] or "").strip()
                if not updates[key]:
                    raise ValidationError(f"{key} is required")
        if "role" in updates:
            self._require_role(updates["role"], self.get_organization(user.org_id))
        if "status" in updates and updates["status"] not in USER_STATUSES:
            raise ValidationError("Invalid user status", errors=[str(updates["status"])])

        with self.store.transaction():
            updated = self.store.update_user(user_id, updated_at=self._now(), **updates)
            self.audit.log_user_action(
                "update",
                user_id=updated_by,
                organization_id=user.org_id,
                target_user_id=user_id,
                email=user.email,
                role=updated.role,
                changes=updates,
                context=context,
            )
        if updates.get("status", "active") != "active" or updates.get("role", user.role) != user.role:
            await self.tokens.revoke_all(user_id, reason="user_updated")
        return updated

    async def delete_user(
        self,
        user_id: str,
        *,
        deleted_by: Optional[str],
        context: Optional[RequestContext] = None,
    ) -> User:
        user = self.get_user(user_id)
        if deleted_by == user_id:
            raise ValidationError("Users cannot delete themselves")
        now = self._now()
        with self.store.transaction():
            deleted = self.store.update_user(user_id, status="deleted", updated_at=now)
            for grant in self.store.list_access(technician_id=user_id, status="active"):
                self.store.revoke_access(
                    grant.id, revoked_by=deleted_by, reason="Technician deleted", at=now
                )
            self.audit.log_user_action(
                "delete",
                user_id=deleted_by,
                organization_id=user.org_id,
                target_user_id=user_id,
                email=user.email,
                role=user.role,
                context=context,
            )
        await self.tokens.revoke_all(user_id, reason="user_deleted")
        self.logger.info("user_deleted", user_id=user_id)
        return deleted
