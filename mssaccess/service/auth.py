from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Optional

from mssaccess.logging import get_logger
from mssaccess.service.audit import AuditService, RequestContext
from mssaccess.service.errors import (
    AccountLockedError,
    InvalidCodeError,
    InvalidCredentialError,
)
from mssaccess.service.mfa import MFAService
from mssaccess.service.passwords import PasswordService
from mssaccess.service.tokens import (
    Identity,
    TokenPair,
    TokenService,
    mfa_enrollment_required,
)
from mssaccess.storage.models import Organization, User

logger = get_logger(__name__)

_GENERIC_LOGIN_FAILURE = "Invalid email or password"


@dataclass
class LoginResult:
    user: User
    organization: Organization
    tokens: Optional[TokenPair]
    mfa_required: bool = False
    mfa_enrollment_required: bool = False
    password_expired: bool = False


class AuthService:
    """Login and logout control flow across passwords, MFA, tokens and audit."""

    def __init__(
        self,
        store: Any,
        tokens: TokenService,
        passwords: PasswordService,
        mfa: MFAService,
        audit: AuditService,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.passwords = passwords
        self.mfa = mfa
        self.audit = audit
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _locked_error(self, user_id: str, locked_until: Optional[datetime]) -> AccountLockedError:
        detail: dict[str, Any] = {}
        if locked_until is not None:
            retry = max(0, int((locked_until - self._now()).total_seconds()))
            detail = {"locked_until": locked_until.isoformat(), "retry_after_seconds": retry}
        self.logger.warning("login_account_locked", user_id=user_id)
        return AccountLockedError("Account is temporarily locked", detail=detail)

    def _reject(
        self,
        user: User,
        reason: str,
        context: Optional[RequestContext],
        email: str,
    ) -> None:
        self.audit.log_login(
            success=False,
            user_id=user.id,
            organization_id=user.org_id,
            context=context,
            reason=reason,
            email=email,
        )

    async def login(
        self,
        email: str,
        password: str,
        mfa_code: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> LoginResult:
        """Authenticate a user and issue tokens.

        With MFA enabled and no code supplied the result carries
        ``mfa_required=True`` and no tokens. Users whose role requires MFA but
        who have not enrolled get an access token only.
        """
        context = context or RequestContext()
        user = self.store.get_user_by_email(email or "")
        org = self.store.get_organization(user.org_id) if user else None
        if not user or not org:
            self.audit.log_login(
                success=False,
                user_id=None,
                organization_id=None,
                context=context,
                reason="unknown_user",
                email=email,
            )
            self.logger.warning("login_unknown_user")
            raise InvalidCredentialError(_GENERIC_LOGIN_FAILURE)
        if user.status != "active" or org.status != "active":
            self._reject(user, "inactive_account", context, email)
            raise InvalidCredentialError(_GENERIC_LOGIN_FAILURE)

        if self.passwords.is_account_locked(user.id):
            self._reject(user, "account_locked", context, email)
            current = self.store.get_user(user.id)
            raise self._locked_error(user.id, current.locked_until if current else None)

        if not self.passwords.verify_password(user.password_hash, password):
            status = self.passwords.handle_failed_login(user.id, context=context)
            self._reject(user, "invalid_password", context, email)
            if status.locked:
                raise self._locked_error(user.id, status.locked_until)
            raise InvalidCredentialError(_GENERIC_LOGIN_FAILURE)

        method = "password"
        if user.mfa_enabled:
            if not mfa_code:
                self.logger.info("login_mfa_required", user_id=user.id)
                return LoginResult(user=user, organization=org, tokens=None, mfa_required=True)
            verification = await self.mfa.verify(user.id, mfa_code, context=context)
            if not verification.valid:
                status = self.passwords.handle_failed_login(user.id, context=context)
                self._reject(user, "invalid_mfa_code", context, email)
                if status.locked:
                    raise self._locked_error(user.id, status.locked_until)
                raise InvalidCodeError("Invalid MFA code")
            method = f"password+{verification.method}"

        enrollment_required = mfa_enrollment_required(
            user, org, self.mfa.settings.mfa_required_roles
        )
        if user.failed_login_attempts:
            self.passwords.reset_failed_attempts(user.id)
        self.store.record_login(user.id, ip_address=context.ip_address, at=self._now())
        tokens = await self.tokens.issue_pair(
            Identity.from_records(user, org), context, long_lived=not enrollment_required
        )
        self.audit.log_login(
            success=True,
            user_id=user.id,
            organization_id=org.id,
            context=replace(context, session_id=tokens.session_id),
            method=method,
            mfa_enrollment_required=enrollment_required,
        )
        self.logger.info(
            "login_succeeded",
            user_id=user.id,
            session_id=tokens.session_id,
            method=method,
            mfa_enrollment_required=enrollment_required,
        )
        return LoginResult(
            user=self.store.get_user(user.id) or user,
            organization=org,
            tokens=tokens,
            mfa_enrollment_required=enrollment_required,
            password_expired=self.passwords.is_password_expired(user),
        )

    async def logout(
        self, access_token: str, context: Optional[RequestContext] = None
    ) -> Identity:
        identity = await self.tokens.verify(access_token)
        await self.tokens.revoke(identity.session_id, reason="logout")
        ctx = replace(context or RequestContext(), session_id=identity.session_id)
        self.audit.log_logout(user_id=identity.user_id, organization_id=identity.org_id, context=ctx)
        return identity

    async def logout_all(
        self, identity: Identity, context: Optional[RequestContext] = None
    ) -> int:
        revoked = await self.tokens.revoke_all(identity.user_id, reason="logout_all")
        ctx = replace(context or RequestContext(), session_id=identity.session_id)
        self.audit.log_logout(
            user_id=identity.user_id,
            organization_id=identity.org_id,
            context=ctx,
            reason="logout_all",
        )
        return revoked
