from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Protocol, Tuple

from redis.exceptions import RedisError

from mssaccess.config import Settings
from mssaccess.logging import get_logger
from mssaccess.service.audit import RequestContext
from mssaccess.service.errors import (
    NoActiveSessionError,
    TokenExpiredError,
    TokenInvalidError,
    TokenRevokedError,
    TransientError,
)
from mssaccess.storage.errors import StorageUnavailable
from mssaccess.storage.models import Organization, Session, User, new_id
from mssaccess.storage.redis_cache import RedisCache, ttl_seconds

logger = get_logger(__name__)

TOKEN_TYPE = "Bearer"


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def mfa_enrollment_required(user: User, org: Organization, required_roles: List[str]) -> bool:
    """True when the user must enrol in MFA before holding a refreshable session."""
    if user.mfa_enabled:
        return False
    return user.role in required_roles or bool(org.settings.get("require_mfa"))


@dataclass
class Identity:
    """Claims carried by an access token."""

    user_id: str
    email: str
    role: str
    org_id: str
    org_name: str
    org_type: str
    session_id: Optional[str] = None

    @classmethod
    def from_records(cls, user: User, org: Organization) -> "Identity":
        return cls(
            user_id=user.id,
            email=user.email,
            role=user.role,
            org_id=org.id,
            org_name=org.name,
            org_type=org.type,
        )


@dataclass
class TokenPair:
    access_token: str
    refresh_token: Optional[str]
    access_expires_at: datetime
    refresh_expires_at: Optional[datetime]
    session_id: str
    token_type: str = TOKEN_TYPE


class SessionStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_organization(self, org_id: str) -> Optional[Organization]: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_refresh_hash(self, token_hash: str) -> Optional[Session]: ...

    def get_session_by_access_hash(self, token_hash: str) -> Optional[Session]: ...

    def list_sessions(self, user_id: str, *, status: Optional[str] = "active") -> List[Session]: ...

    def revoke_session(self, session_id: str, *, reason: str, at: datetime) -> Optional[Session]: ...

    def revoke_user_sessions(
        self,
        user_id: str,
        *,
        reason: str,
        at: datetime,
        exclude_session_id: Optional[str] = None,
    ) -> List[Session]: ...

    def touch_session(self, session_id: str, at: datetime) -> None: ...

    def expire_sessions(self, now: datetime) -> int: ...

    def transaction(self): ...


class TokenService:
    """Issues, verifies, rotates and revokes access/refresh token pairs.

    Access and refresh tokens are HS256 JWTs signed with distinct secrets. Each
    pair is bound to one session row keyed by the SHA-256 of both tokens; the
    cache holds a blacklist of revoked hashes and a fast-path entry per live
    access token. Without a cache the session row is authoritative.
    """

    def __init__(
        self, store: SessionStore, cache: Optional[RedisCache], settings: Settings
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.logger = logger
        self._clock_skew_leeway = timedelta(seconds=settings.clock_skew_seconds)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # jwt
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: str) -> str:
        return self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode_jwt(self, token: str, secret: str) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = (token or "").split(".")
        except ValueError:
            raise TokenInvalidError("malformed token") from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            self.logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError("malformed token") from None
        if not isinstance(header, dict):
            raise TokenInvalidError("malformed token")
        if header.get("alg") != "HS256":
            self.logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenInvalidError("unsupported token algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(signing_input, secret), sig_b64):
            raise TokenInvalidError("invalid token signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
            self.logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError("malformed token") from None
        if not isinstance(payload, dict):
            raise TokenInvalidError("malformed token")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalidError("invalid token issuer")
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            raise TokenInvalidError("invalid token audience")
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError("invalid token expiry") from None
        leeway = self._clock_skew_leeway.total_seconds()
        now_ts = time.time()
        if iat_ts > now_ts + leeway:
            raise TokenInvalidError("token issued in the future")
        if exp_ts <= now_ts - leeway:
            raise TokenExpiredError("token expired")
        return payload

    # issuance
    def _build_pair(
        self,
        identity: Identity,
        context: Optional[RequestContext],
        *,
        long_lived: bool,
        now: datetime,
    ) -> Tuple[TokenPair, Session]:
        session_id = new_id()
        access_ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_ttl = timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        iat = int(now.timestamp())
        access_expires_at = now + access_ttl
        access_token = self._encode_jwt(
            {
                "userId": identity.user_id,
                "email": identity.email,
                "role": identity.role,
                "orgId": identity.org_id,
                "orgName": identity.org_name,
                "orgType": identity.org_type,
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "iat": iat,
                "exp": int(access_expires_at.timestamp()),
                "jti": uuid.uuid4().hex,
            },
            self.settings.jwt_secret,
        )
        refresh_token: Optional[str] = None
        refresh_expires_at: Optional[datetime] = None
        if long_lived:
            refresh_expires_at = now + refresh_ttl
            refresh_token = self._encode_jwt(
                {
                    "userId": identity.user_id,
                    "sessionId": session_id,
                    "iss": self.settings.jwt_issuer,
                    "aud": self.settings.jwt_audience,
                    "iat": iat,
                    "exp": int(refresh_expires_at.timestamp()),
                    "jti": uuid.uuid4().hex,
                },
                self.settings.jwt_refresh_secret,
            )
        ctx = context or RequestContext()
        session = Session.new(
            identity.user_id,
            session_token_hash=hash_token(access_token),
            refresh_token_hash=hash_token(refresh_token) if refresh_token else None,
            access_ttl=access_ttl,
            refresh_ttl=refresh_ttl if long_lived else access_ttl,
            session_id=session_id,
            device_info=ctx.device_info,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            location=ctx.location,
            now=now,
        )
        pair = TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
            session_id=session_id,
        )
        return pair, session

    async def _cache_fast_path(self, pair: TokenPair, user_id: str) -> None:
        if not self.cache:
            return
        try:
            await self.cache.cache_access_token(
                hash_token(pair.access_token), user_id, pair.session_id, pair.access_expires_at
            )
        except RedisError as exc:
            self.logger.warning("access_token_cache_failed", user_id=user_id, error=str(exc))

    async def issue_pair(
        self,
        identity: Identity,
        context: Optional[RequestContext] = None,
        *,
        long_lived: bool = True,
    ) -> TokenPair:
        """Create a session and its token pair.

        ``long_lived=False`` issues an access token only and caps the session at
        the access token lifetime.
        """
        pair, session = self._build_pair(
            identity, context, long_lived=long_lived, now=self._now()
        )
        self.store.create_session(session)
        await self._cache_fast_path(pair, identity.user_id)
        self.logger.info(
            "session_created",
            user_id=identity.user_id,
            session_id=session.id,
            long_lived=long_lived,
        )
        return pair

    # verification
    async def verify(self, access_token: str) -> Identity:
        payload = self._decode_jwt(access_token, self.settings.jwt_secret)
        token_hash = hash_token(access_token)
        session_id: Optional[str] = None
        if self.cache:
            try:
                if await self.cache.is_token_blacklisted(token_hash):
                    self.logger.warning("token_revoked_presented", user_id=payload.get("userId"))
                    raise TokenRevokedError("token has been revoked")
                cached = await self.cache.get_access_token(token_hash)
                if cached and cached.get("userId") == payload.get("userId"):
                    session_id = cached.get("sessionId")
            except RedisError as exc:
                self.logger.warning("token_blacklist_unavailable", error=str(exc))
        if session_id is None:
            session = self._session_by_access_hash(token_hash)
            if not session or session.status != "active":
                self.logger.warning("token_revoked_presented", user_id=payload.get("userId"))
                raise TokenRevokedError("token has been revoked")
            session_id = session.id
        try:
            return Identity(
                user_id=payload["userId"],
                email=payload["email"],
                role=payload["role"],
                org_id=payload["orgId"],
                org_name=payload["orgName"],
                org_type=payload["orgType"],
                session_id=session_id,
            )
        except KeyError:
            raise TokenInvalidError("token is missing required claims") from None

    def _session_by_access_hash(self, token_hash: str) -> Optional[Session]:
        try:
            return self.store.get_session_by_access_hash(token_hash)
        except StorageUnavailable as exc:
            self.logger.error("session_lookup_failed", error=str(exc))
            raise TransientError("service temporarily unavailable") from exc

    # rotation
    async def refresh(
        self, refresh_token: str, context: Optional[RequestContext] = None
    ) -> TokenPair:
        """Rotate a refresh token; the old pair is revoked in the same transaction.

        Concurrent refreshes of one token race on the conditional revoke and only
        one of them obtains a new pair.
        """
        payload = self._decode_jwt(refresh_token, self.settings.jwt_refresh_secret)
        session = self.store.get_session_by_refresh_hash(hash_token(refresh_token))
        if not session or session.status != "active" or session.user_id != payload.get("userId"):
            self.logger.warning("refresh_without_active_session", user_id=payload.get("userId"))
            raise NoActiveSessionError("no active session for this refresh token")
        user = self.store.get_user(session.user_id)
        org = self.store.get_organization(user.org_id) if user else None
        if not user or not org or user.status != "active" or org.status != "active":
            raise NoActiveSessionError("no active session for this refresh token")

        ctx = context or RequestContext(
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            location=session.location,
            device_info=session.device_info,
        )
        long_lived = not mfa_enrollment_required(user, org, self.settings.mfa_required_roles)
        if not long_lived:
            self.logger.warning("refresh_downgraded_mfa_enrollment", user_id=user.id)
        now = self._now()
        pair, new_session = self._build_pair(
            Identity.from_records(user, org), ctx, long_lived=long_lived, now=now
        )
        with self.store.transaction():
            if self.store.revoke_session(session.id, reason="token_refresh", at=now) is None:
                raise NoActiveSessionError("no active session for this refresh token")
            self.store.create_session(new_session)

        try:
            await self._blacklist_session(session)
        except TransientError:
            self.logger.error("refresh_blacklist_failed", session_id=session.id)
        await self._cache_fast_path(pair, user.id)
        self.logger.info(
            "session_refreshed", user_id=user.id, old_session_id=session.id, session_id=pair.session_id
        )
        return pair

    # revocation
    async def _blacklist_session(self, session: Session) -> None:
        if not self.cache:
            return
        try:
            await self.cache.blacklist_token(
                session.session_token_hash, ttl_seconds(session.access_expires_at)
            )
            if session.refresh_token_hash:
                await self.cache.blacklist_token(
                    session.refresh_token_hash, ttl_seconds(session.expires_at)
                )
            await self.cache.drop_access_token(session.session_token_hash)
        except RedisError as exc:
            self.logger.error("token_blacklist_failed", session_id=session.id, error=str(exc))
            raise TransientError("service temporarily unavailable") from exc

    async def revoke(self, session_id: str, reason: str = "manual_revoke") -> bool:
        """Revoke one session; False when it was not active."""
        session = self.store.revoke_session(session_id, reason=reason, at=self._now())
        if session is None:
            return False
        await self._blacklist_session(session)
        self.logger.info("session_revoked", session_id=session_id, reason=reason)
        return True

    async def revoke_all(
        self,
        user_id: str,
        reason: str = "logout_all",
        *,
        exclude_session_id: Optional[str] = None,
    ) -> int:
        sessions = self.store.revoke_user_sessions(
            user_id, reason=reason, at=self._now(), exclude_session_id=exclude_session_id
        )
        for session in sessions:
            await self._blacklist_session(session)
        self.logger.info("sessions_revoked", user_id=user_id, count=len(sessions), reason=reason)
        return len(sessions)

    # maintenance
    def cleanup_expired(self) -> int:
        expired = self.store.expire_sessions(self._now())
        if expired:
            self.logger.info("sessions_expired", count=expired)
        return expired

    def list_user_sessions(self, user_id: str) -> List[Session]:
        return self.store.list_sessions(user_id, status="active")

    def touch_session(self, session_id: str) -> None:
        self.store.touch_session(session_id, self._now())

    def session_for_access_token(self, access_token: str) -> Optional[Session]:
        return self.store.get_session_by_access_hash(hash_token(access_token))
