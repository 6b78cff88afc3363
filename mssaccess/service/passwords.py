from __future__ import annotations

import hashlib
import re
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from redis.exceptions import RedisError

from mssaccess.config import Settings
from mssaccess.logging import get_logger
from mssaccess.service.audit import AuditService, RequestContext
from mssaccess.service.errors import (
    InvalidCredentialError,
    NotFoundError,
    TransactionFailureError,
    TransientError,
    ValidationError,
)
from mssaccess.storage.errors import StorageUnavailable
from mssaccess.storage.models import PasswordResetToken, User, new_id
from mssaccess.storage.redis_cache import RedisCache, reset_attempts_key

logger = get_logger(__name__)

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"\d")
_SYMBOL = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>\?]")
_REPEATS = re.compile(r"(.)\1{2,}")
_COMMON = re.compile(r"123|abc|qwe|password|admin", re.IGNORECASE)

_RESET_WINDOW_SECONDS = 3600


@dataclass
class PasswordPolicy:
    min_length: int = 8
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_symbols: bool = True
    max_age_days: int = 90
    prevent_reuse: int = 5

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordPolicy":
        return cls(
            min_length=settings.password_min_length,
            require_uppercase=settings.password_require_uppercase,
            require_lowercase=settings.password_require_lowercase,
            require_numbers=settings.password_require_numbers,
            require_symbols=settings.password_require_symbols,
            max_age_days=settings.password_max_age_days,
            prevent_reuse=settings.password_history_size,
        )


@dataclass
class PasswordValidation:
    valid: bool
    errors: List[str] = field(default_factory=list)
    score: int = 0
    strength: str = "weak"


@dataclass
class LockoutStatus:
    locked: bool
    attempts_remaining: int
    locked_until: Optional[datetime] = None


class PasswordStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def set_password(
        self, user_id: str, password_hash: str, *, history_size: int, at: datetime
    ) -> Optional[User]: ...

    def record_failed_login(
        self, user_id: str, *, threshold: int, lock_until: datetime
    ) -> Optional[Tuple[int, Optional[datetime]]]: ...

    def reset_failed_logins(self, user_id: str) -> None: ...

    def upsert_reset_token(self, token: PasswordResetToken) -> PasswordResetToken: ...

    def get_reset_token_by_hash(self, token_hash: str) -> Optional[PasswordResetToken]: ...

    def mark_reset_token_used(self, token_id: str, at: datetime) -> bool: ...

    def transaction(self): ...


class SessionRevoker(Protocol):
    async def revoke_all(self, user_id: str, reason: str = "logout_all") -> int: ...


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


def _strength_label(score: float) -> str:
    if score >= 85:
        return "very_strong"
    if score >= 70:
        return "strong"
    if score >= 50:
        return "medium"
    return "weak"


class PasswordService:
    """Password hashing, policy scoring, change/reset flows and lockout counters."""

    def __init__(
        self,
        store: PasswordStore,
        cache: Optional[RedisCache],
        settings: Settings,
        audit: AuditService,
        *,
        sessions: Optional[SessionRevoker] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.audit = audit
        self.sessions = sessions
        self.policy = PasswordPolicy.from_settings(settings)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger
        # In-memory fallback for reset rate limiting when Redis is unavailable
        self._state_lock = threading.Lock()
        self._reset_attempts: dict[str, tuple[int, datetime]] = {}

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # hashing
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, password_hash: Optional[str], password: str) -> bool:
        if not password_hash:
            return False
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    # policy
    def validate(
        self, password: str, policy: Optional[PasswordPolicy] = None
    ) -> PasswordValidation:
        """Score ``password`` against ``policy`` (defaults to configured policy).

        Length, character classes and the unique-character ratio add to the
        score; repeated runs and common substrings subtract and are reported.
        """
        policy = policy or self.policy
        password = password or ""
        errors: List[str] = []
        score = 0.0

        if len(password) < policy.min_length:
            errors.append(f"Password must be at least {policy.min_length} characters long")
        else:
            score += min(25.0, len(password) / policy.min_length * 10)

        classes = (
            (_UPPER, policy.require_uppercase, "Password must contain at least one uppercase letter"),
            (_LOWER, policy.require_lowercase, "Password must contain at least one lowercase letter"),
            (_DIGIT, policy.require_numbers, "Password must contain at least one number"),
            (_SYMBOL, policy.require_symbols, "Password must contain at least one special character"),
        )
        for pattern, required, message in classes:
            if pattern.search(password):
                score += 15
            elif required:
                errors.append(message)

        if password:
            score += min(15.0, len(set(password)) / len(password) * 20)

        if _REPEATS.search(password):
            score -= 10
            errors.append("Password should not contain repeating characters")
        if _COMMON.search(password):
            score -= 20
            errors.append("Password should not contain common patterns")

        strength = _strength_label(score)
        return PasswordValidation(
            valid=not errors,
            errors=errors,
            score=int(round(max(0.0, min(100.0, score)))),
            strength=strength,
        )

    def _require_valid(self, password: str) -> None:
        result = self.validate(password)
        if not result.valid:
            raise ValidationError("Password does not meet policy", errors=result.errors)

    def _require_not_reused(self, user: User, password: str) -> None:
        window = self.policy.prevent_reuse
        if window <= 0:
            return
        for previous in (user.password_history or [])[:window]:
            if self.verify_password(previous, password):
                raise ValidationError(
                    "Password was used recently",
                    errors=[f"Password must not match any of the last {window} passwords"],
                )

    def is_password_expired(self, user: User) -> bool:
        if self.policy.max_age_days <= 0 or user.password_changed_at is None:
            return False
        return user.password_changed_at + timedelta(days=self.policy.max_age_days) <= self._now()

    # credential updates
    def set_initial_password(self, user_id: str, password: str) -> User:
        """Hash and store a provisioning password, seeding the reuse history."""
        self._require_valid(password)
        updated = self.store.set_password(
            user_id,
            self.hash_password(password),
            history_size=self.policy.prevent_reuse,
            at=self._now(),
        )
        if not updated:
            raise NotFoundError("user not found")
        return updated

    def change(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        context: Optional[RequestContext] = None,
    ) -> None:
        user = self.store.get_user(user_id)
        if not user or user.status == "deleted":
            raise NotFoundError("user not found")
        if not self.verify_password(user.password_hash, current_password):
            self.logger.warning("password_change_bad_current", user_id=user_id)
            raise InvalidCredentialError("Current password is incorrect")
        self._require_valid(new_password)
        self._require_not_reused(user, new_password)

        with self.store.transaction():
            self.store.set_password(
                user_id,
                self.hash_password(new_password),
                history_size=self.policy.prevent_reuse,
                at=self._now(),
            )
            self.audit.log_password_action(
                "change", user_id=user_id, organization_id=user.org_id, context=context
            )
        self.logger.info("password_changed", user_id=user_id)

    # reset flow
    async def _count_reset_attempt(self, email: str) -> int:
        digest = _sha256(email.strip().lower())
        if self.cache:
            try:
                return await self.cache.increment_window_counter(
                    reset_attempts_key(digest), _RESET_WINDOW_SECONDS
                )
            except RedisError as exc:
                self.logger.error("reset_rate_limit_cache_failed", error=str(exc))
                raise TransientError("service temporarily unavailable") from exc
        now = self._now()
        with self._state_lock:
            count, window_start = self._reset_attempts.get(digest, (0, now))
            if now - window_start >= timedelta(seconds=_RESET_WINDOW_SECONDS):
                count, window_start = 0, now
            count += 1
            self._reset_attempts[digest] = (count, window_start)
            return count

    async def generate_reset_token(
        self, email: str, *, context: Optional[RequestContext] = None
    ) -> Optional[str]:
        """Issue a single-use reset token, or None.

        None is returned for unknown, inactive and rate-limited requests alike
        so callers cannot tell whether an account exists.
        """
        attempts = await self._count_reset_attempt(email or "")
        if attempts > self.settings.reset_max_attempts_per_hour:
            self.logger.warning("password_reset_rate_limited", attempts=attempts)
            return None
        user = self.store.get_user_by_email(email or "")
        if not user or user.status != "active":
            return None

        token = secrets.token_hex(32)
        now = self._now()
        with self.store.transaction():
            self.store.upsert_reset_token(
                PasswordResetToken(
                    id=new_id(),
                    user_id=user.id,
                    token_hash=_sha256(token),
                    expires_at=now + timedelta(minutes=self.settings.reset_token_ttl_minutes),
                    created_at=now,
                )
            )
            self.audit.log_password_action(
                "reset_request", user_id=user.id, organization_id=user.org_id, context=context
            )
        return token

    async def reset_password(
        self,
        token: str,
        new_password: str,
        *,
        context: Optional[RequestContext] = None,
    ) -> None:
        record = self.store.get_reset_token_by_hash(_sha256(token or ""))
        now = self._now()
        if not record or record.used_at is not None or record.expires_at <= now:
            raise ValidationError("Invalid or expired reset token")
        user = self.store.get_user(record.user_id)
        if not user or user.status == "deleted":
            raise ValidationError("Invalid or expired reset token")
        self._require_valid(new_password)
        self._require_not_reused(user, new_password)

        try:
            with self.store.transaction():
                if not self.store.mark_reset_token_used(record.id, now):
                    raise ValidationError("Invalid or expired reset token")
                self.store.set_password(
                    user.id,
                    self.hash_password(new_password),
                    history_size=self.policy.prevent_reuse,
                    at=now,
                )
                self.audit.log_password_action(
                    "reset", user_id=user.id, organization_id=user.org_id, context=context
                )
        except StorageUnavailable as exc:
            self.logger.error("password_reset_transaction_failed", user_id=user.id, error=str(exc))
            raise TransactionFailureError("password reset failed") from exc

        if self.sessions is not None:
            revoked = await self.sessions.revoke_all(user.id, reason="password_reset")
            self.logger.info("password_reset_sessions_revoked", user_id=user.id, count=revoked)

    # lockout
    def handle_failed_login(
        self, user_id: str, *, context: Optional[RequestContext] = None
    ) -> LockoutStatus:
        now = self._now()
        threshold = self.settings.lockout_threshold
        result = self.store.record_failed_login(
            user_id,
            threshold=threshold,
            lock_until=now + timedelta(minutes=self.settings.lockout_duration_minutes),
        )
        if result is None:
            raise NotFoundError("user not found")
        attempts, locked_until = result
        locked = locked_until is not None and locked_until > now
        if attempts == threshold:
            user = self.store.get_user(user_id)
            self.audit.log_security_event(
                "account_locked",
                risk_level="high",
                description="Account locked after repeated failed logins",
                user_id=user_id,
                organization_id=user.org_id if user else None,
                detail={"attempts": attempts},
                context=context,
            )
            self.logger.warning("account_locked", user_id=user_id, attempts=attempts)
        return LockoutStatus(
            locked=locked,
            attempts_remaining=max(0, threshold - attempts),
            locked_until=locked_until if locked else None,
        )

    def reset_failed_attempts(self, user_id: str) -> None:
        self.store.reset_failed_logins(user_id)

    def is_account_locked(self, user_id: str) -> bool:
        """True while ``locked_until`` is in the future; clears expired locks."""
        user = self.store.get_user(user_id)
        if not user or user.locked_until is None:
            return False
        if user.locked_until > self._now():
            return True
        self.store.reset_failed_logins(user.id)
        return False
