from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import quote

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from redis.exceptions import RedisError

from mssaccess.config import Settings
from mssaccess.logging import get_logger
from mssaccess.service.audit import AuditService, RequestContext
from mssaccess.service.errors import (
    ConflictError,
    InvalidCodeError,
    NotFoundError,
    ServerError,
    TransientError,
    ValidationError,
)
from mssaccess.storage.models import User
from mssaccess.storage.redis_cache import RedisCache

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
TOTP_CLAIM_SECONDS = 60
BACKUP_CODE_CLAIM_SECONDS = 300

_BOX_VERSION = "v1"
_SALT_BYTES = 16


@dataclass
class MFASetup:
    secret: str
    otpauth_uri: str
    backup_codes: List[str]


@dataclass
class MFAVerification:
    valid: bool
    method: Optional[str] = None
    remaining_backup_codes: Optional[int] = None


class MFAStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def set_mfa_pending(
        self, user_id: str, encrypted_secret: str, backup_code_hashes: List[str]
    ) -> bool: ...

    def enable_mfa(self, user_id: str) -> bool: ...

    def disable_mfa(self, user_id: str) -> bool: ...

    def replace_backup_codes(self, user_id: str, backup_code_hashes: List[str]) -> bool: ...

    def consume_backup_code(self, user_id: str, code_hash: str) -> Optional[int]: ...

    def touch_mfa_used(self, user_id: str, at: datetime) -> None: ...

    def transaction(self): ...


def code_digest(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


class SecretBox:
    """Encrypts TOTP secrets at rest with a per-secret scrypt-derived Fernet key."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("MFA key material must be configured")
        self._material = key_material.encode()

    def _fernet(self, salt: bytes) -> Fernet:
        kdf = Scrypt(salt=salt, length=32, n=2**14, r=8, p=1)
        return Fernet(base64.urlsafe_b64encode(kdf.derive(self._material)))

    def encrypt(self, plaintext: str) -> str:
        salt = os.urandom(_SALT_BYTES)
        token = self._fernet(salt).encrypt(plaintext.encode()).decode()
        return f"{_BOX_VERSION}${base64.urlsafe_b64encode(salt).decode()}${token}"

    def decrypt(self, boxed: str) -> str:
        try:
            version, salt_b64, token = boxed.split("$", 2)
        except ValueError:
            raise ValueError("malformed MFA secret") from None
        if version != _BOX_VERSION:
            raise ValueError(f"unsupported MFA secret version {version}")
        try:
            salt = base64.urlsafe_b64decode(salt_b64)
            return self._fernet(salt).decrypt(token.encode()).decode()
        except (InvalidToken, binascii.Error) as exc:
            raise ValueError("MFA secret could not be decrypted") from exc


def generate_totp(secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL) -> str:
    padded = secret + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**TOTP_DIGITS
    )
    return str(code_int).zfill(TOTP_DIGITS)


def verify_totp(secret: str, code: str, *, window: int = 1, at: Optional[float] = None) -> bool:
    now = time.time() if at is None else at
    for step in range(-window, window + 1):
        generated = generate_totp(secret, now + step * TOTP_INTERVAL)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def _normalize_code(code: str) -> str:
    return "".join((code or "").split()).replace("-", "").upper()


class MFAService:
    """TOTP enrollment and verification with single-use backup codes.

    Every accepted code is claimed in the cache so the same code cannot be
    presented twice while it is still inside the verification window.
    """

    def __init__(
        self,
        store: MFAStore,
        cache: Optional[RedisCache],
        settings: Settings,
        audit: AuditService,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.audit = audit
        self.box = SecretBox(settings.mfa_encryption_key or settings.jwt_secret or "")
        self.logger = logger
        # In-memory fallback for code claims when Redis is unavailable
        self._state_lock = threading.Lock()
        self._claims: dict[str, datetime] = {}

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user or user.status == "deleted":
            raise NotFoundError("user not found")
        return user

    def _decrypt_secret(self, user: User) -> str:
        try:
            return self.box.decrypt(user.mfa_secret or "")
        except ValueError as exc:
            self.logger.error("mfa_secret_decrypt_failed", user_id=user.id, error=str(exc))
            raise ServerError("MFA secret could not be read") from exc

    def _new_backup_codes(self) -> List[str]:
        return [
            secrets.token_hex(4).upper() for _ in range(self.settings.mfa_backup_code_count)
        ]

    # replay protection
    async def _is_claimed(self, user_id: str, digest: str) -> bool:
        if self.cache:
            try:
                return await self.cache.is_mfa_code_claimed(user_id, digest)
            except RedisError as exc:
                self.logger.error("mfa_claim_check_failed", user_id=user_id, error=str(exc))
                raise TransientError("service temporarily unavailable") from exc
        key = f"{user_id}:{digest}"
        with self._state_lock:
            expires = self._claims.get(key)
            if expires and expires > self._now():
                return True
            self._claims.pop(key, None)
            return False

    async def _claim(self, user_id: str, digest: str, ttl_seconds: int) -> bool:
        if self.cache:
            try:
                return await self.cache.claim_mfa_code(user_id, digest, ttl_seconds)
            except RedisError as exc:
                self.logger.error("mfa_claim_failed", user_id=user_id, error=str(exc))
                raise TransientError("service temporarily unavailable") from exc
        key = f"{user_id}:{digest}"
        now = self._now()
        with self._state_lock:
            expires = self._claims.get(key)
            if expires and expires > now:
                return False
            self._claims[key] = now + timedelta(seconds=ttl_seconds)
            return True

    # enrollment
    def begin_setup(self, user_id: str) -> MFASetup:
        user = self._require_user(user_id)
        if user.mfa_enabled:
            raise ConflictError("MFA is already enabled")
        secret = base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")
        backup_codes = self._new_backup_codes()
        stored = self.store.set_mfa_pending(
            user_id, self.box.encrypt(secret), [code_digest(c) for c in backup_codes]
        )
        if not stored:
            raise ConflictError("MFA is already enabled")
        issuer = self.settings.mfa_issuer
        uri = (
            f"otpauth://totp/{quote(issuer)}:{quote(user.email)}"
            f"?secret={secret}&issuer={quote(issuer)}"
            f"&algorithm=SHA1&digits={TOTP_DIGITS}&period={TOTP_INTERVAL}"
        )
        self.logger.info("mfa_setup_started", user_id=user_id)
        return MFASetup(secret=secret, otpauth_uri=uri, backup_codes=backup_codes)

    async def complete_setup(
        self, user_id: str, code: str, *, context: Optional[RequestContext] = None
    ) -> None:
        user = self._require_user(user_id)
        if user.mfa_enabled:
            raise ConflictError("MFA is already enabled")
        if not user.mfa_secret:
            raise NotFoundError("No pending MFA setup")
        normalized = _normalize_code(code)
        secret = self._decrypt_secret(user)
        if not verify_totp(secret, normalized, window=self.settings.mfa_totp_window):
            raise InvalidCodeError("Invalid verification code")
        if not await self._claim(user_id, code_digest(normalized), TOTP_CLAIM_SECONDS):
            raise InvalidCodeError("Invalid verification code")
        with self.store.transaction():
            self.store.enable_mfa(user_id)
            self.audit.log_mfa_action(
                "enable",
                user_id=user_id,
                organization_id=user.org_id,
                detail={"remaining_backup_codes": len(user.mfa_backup_codes)},
                context=context,
            )
        self.logger.info("mfa_enabled", user_id=user_id)

    # verification
    async def verify(
        self, user_id: str, code: str, *, context: Optional[RequestContext] = None
    ) -> MFAVerification:
        """Check a TOTP or backup code; never raises for a wrong code.

        Six-digit input is treated as TOTP, anything else as a backup code.
        """
        user = self._require_user(user_id)
        if not user.mfa_enabled or not user.mfa_secret:
            raise ValidationError("MFA is not enabled")
        normalized = _normalize_code(code)
        if not normalized:
            return self._fail(user, "empty_code", context)
        digest = code_digest(normalized)
        if await self._is_claimed(user_id, digest):
            return self._fail(user, "code_reused", context)

        if len(normalized) == TOTP_DIGITS and normalized.isdigit():
            secret = self._decrypt_secret(user)
            if not verify_totp(secret, normalized, window=self.settings.mfa_totp_window):
                return self._fail(user, "invalid_totp", context)
            if not await self._claim(user_id, digest, TOTP_CLAIM_SECONDS):
                return self._fail(user, "code_reused", context)
            self.store.touch_mfa_used(user_id, self._now())
            remaining = len(user.mfa_backup_codes)
            self.audit.log_mfa_action(
                "verify",
                user_id=user_id,
                organization_id=user.org_id,
                detail={"method": "totp", "remaining_backup_codes": remaining},
                context=context,
            )
            return MFAVerification(valid=True, method="totp", remaining_backup_codes=remaining)

        if not await self._claim(user_id, digest, BACKUP_CODE_CLAIM_SECONDS):
            return self._fail(user, "code_reused", context)
        remaining = self.store.consume_backup_code(user_id, digest)
        if remaining is None:
            return self._fail(user, "invalid_backup_code", context)
        self.store.touch_mfa_used(user_id, self._now())
        self.audit.log_mfa_action(
            "backup_code_used",
            user_id=user_id,
            organization_id=user.org_id,
            detail={"method": "backup_code", "remaining_backup_codes": remaining},
            context=context,
        )
        if remaining == 0:
            self.logger.warning("mfa_backup_codes_exhausted", user_id=user_id)
        return MFAVerification(
            valid=True, method="backup_code", remaining_backup_codes=remaining
        )

    def _fail(
        self, user: User, reason: str, context: Optional[RequestContext]
    ) -> MFAVerification:
        self.logger.warning("mfa_verification_failed", user_id=user.id, reason=reason)
        self.audit.log_security_event(
            "mfa_verification_failed",
            risk_level="medium",
            description="MFA verification failed",
            user_id=user.id,
            organization_id=user.org_id,
            detail={"reason": reason},
            context=context,
        )
        return MFAVerification(valid=False)

    # management
    def disable(self, user_id: str, *, context: Optional[RequestContext] = None) -> None:
        user = self._require_user(user_id)
        with self.store.transaction():
            self.store.disable_mfa(user_id)
            self.audit.log_mfa_action(
                "disable", user_id=user_id, organization_id=user.org_id, context=context
            )
        self.logger.info("mfa_disabled", user_id=user_id)

    def regenerate_backup_codes(self, user_id: str) -> List[str]:
        self._require_user(user_id)
        codes = self._new_backup_codes()
        if not self.store.replace_backup_codes(user_id, [code_digest(c) for c in codes]):
            raise ValidationError("MFA is not enabled")
        self.logger.info("mfa_backup_codes_regenerated", user_id=user_id)
        return codes

    def status(self, user_id: str) -> Dict[str, Any]:
        user = self._require_user(user_id)
        return {
            "enabled": user.mfa_enabled,
            "pending": bool(user.mfa_secret) and not user.mfa_enabled,
            "backup_codes_count": len(user.mfa_backup_codes) if user.mfa_enabled else 0,
            "last_used": user.mfa_last_used,
        }

    def is_mfa_required(self, role: str) -> bool:
        return role in self.settings.mfa_required_roles
