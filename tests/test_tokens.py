"""Unit tests for token issuance, verification, rotation and revocation."""

import asyncio
import base64
import json
import time
from datetime import datetime, timedelta, timezone

import pytest

from mssaccess.service.audit import RequestContext
from mssaccess.service.errors import (
    NoActiveSessionError,
    TokenExpiredError,
    TokenInvalidError,
    TokenRevokedError,
)
from mssaccess.service.mfa import generate_totp
from mssaccess.service.tokens import Identity, TokenService, hash_token


@pytest.fixture
def identity(technician, provider):
    return Identity.from_records(technician, provider)


@pytest.fixture
def member(customer_user, customer):
    return Identity.from_records(customer_user, customer)


def _claims(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class TestIssue:
    @pytest.mark.asyncio
    async def test_issue_pair_creates_session(self, tokens, store, identity):
        pair = await tokens.issue_pair(
            identity, RequestContext(ip_address="10.0.0.1", user_agent="pytest")
        )
        session = store.get_session(pair.session_id)
        assert session.status == "active"
        assert session.session_token_hash == hash_token(pair.access_token)
        assert session.refresh_token_hash == hash_token(pair.refresh_token)
        assert session.ip_address == "10.0.0.1"
        assert pair.token_type == "Bearer"
        assert pair.refresh_expires_at > pair.access_expires_at

    @pytest.mark.asyncio
    async def test_access_claims(self, tokens, identity, settings):
        pair = await tokens.issue_pair(identity)
        claims = _claims(pair.access_token)
        assert claims["userId"] == identity.user_id
        assert claims["orgType"] == "mss_provider"
        assert claims["iss"] == settings.jwt_issuer
        assert claims["aud"] == settings.jwt_audience
        assert claims["exp"] - claims["iat"] == settings.access_token_ttl_minutes * 60

    @pytest.mark.asyncio
    async def test_short_lived_session_has_no_refresh_token(self, tokens, store, identity):
        pair = await tokens.issue_pair(identity, long_lived=False)
        assert pair.refresh_token is None
        assert pair.refresh_expires_at is None
        session = store.get_session(pair.session_id)
        assert session.expires_at == session.access_expires_at

    @pytest.mark.asyncio
    async def test_pairs_are_unique(self, tokens, identity):
        first = await tokens.issue_pair(identity)
        second = await tokens.issue_pair(identity)
        assert first.access_token != second.access_token
        assert first.session_id != second.session_id


class TestVerify:
    @pytest.mark.asyncio
    async def test_verify_returns_identity(self, tokens, identity):
        pair = await tokens.issue_pair(identity)
        verified = await tokens.verify(pair.access_token)
        assert verified.user_id == identity.user_id
        assert verified.role == "technician"
        assert verified.session_id == pair.session_id

    @pytest.mark.asyncio
    async def test_refresh_token_is_not_an_access_token(self, tokens, identity):
        pair = await tokens.issue_pair(identity)
        with pytest.raises(TokenInvalidError):
            await tokens.verify(pair.refresh_token)

    @pytest.mark.asyncio
    async def test_tampered_signature_rejected(self, tokens, identity):
        pair = await tokens.issue_pair(identity)
        head, body, sig = pair.access_token.split(".")
        forged = f"{head}.{body}.{'A' if sig[0] != 'A' else 'B'}{sig[1:]}"
        with pytest.raises(TokenInvalidError):
            await tokens.verify(forged)

    @pytest.mark.asyncio
    async def test_malformed_token_rejected(self, tokens):
        for token in ("", "abc", "a.b", "a.b.c.d"):
            with pytest.raises(TokenInvalidError):
                await tokens.verify(token)

    @pytest.mark.asyncio
    async def test_wrong_audience_rejected(self, store, settings, identity):
        other = TokenService(store, None, settings.model_copy(update={"jwt_audience": "other"}))
        pair = await other.issue_pair(identity)
        with pytest.raises(TokenInvalidError):
            await TokenService(store, None, settings).verify(pair.access_token)

    @pytest.mark.asyncio
    async def test_expired_token_rejected(self, tokens, settings, identity):
        now = int(time.time())
        token = tokens._encode_jwt(
            {
                "userId": identity.user_id,
                "iss": settings.jwt_issuer,
                "aud": settings.jwt_audience,
                "iat": now - 3600,
                "exp": now - 600,
            },
            settings.jwt_secret,
        )
        with pytest.raises(TokenExpiredError):
            await tokens.verify(token)

    @pytest.mark.asyncio
    async def test_future_issued_token_rejected(self, tokens, settings, identity):
        now = int(time.time())
        token = tokens._encode_jwt(
            {
                "userId": identity.user_id,
                "iss": settings.jwt_issuer,
                "aud": settings.jwt_audience,
                "iat": now + 3600,
                "exp": now + 7200,
            },
            settings.jwt_secret,
        )
        with pytest.raises(TokenInvalidError):
            await tokens.verify(token)

    @pytest.mark.asyncio
    async def test_unknown_session_rejected(self, tokens, settings, identity):
        now = int(time.time())
        token = tokens._encode_jwt(
            {
                "userId": identity.user_id,
                "email": identity.email,
                "role": identity.role,
                "orgId": identity.org_id,
                "orgName": identity.org_name,
                "orgType": identity.org_type,
                "iss": settings.jwt_issuer,
                "aud": settings.jwt_audience,
                "iat": now,
                "exp": now + 600,
            },
            settings.jwt_secret,
        )
        with pytest.raises(TokenRevokedError):
            await tokens.verify(token)


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_rotates_pair(self, tokens, store, member):
        pair = await tokens.issue_pair(member)
        rotated = await tokens.refresh(pair.refresh_token)
        assert rotated.session_id != pair.session_id
        old = store.get_session(pair.session_id)
        assert old.status == "revoked"
        assert old.revoked_reason == "token_refresh"
        assert rotated.refresh_token
        assert (await tokens.verify(rotated.access_token)).session_id == rotated.session_id

    @pytest.mark.asyncio
    async def test_refresh_token_is_single_use(self, tokens, store, member):
        pair = await tokens.issue_pair(member)
        rotated = await tokens.refresh(pair.refresh_token)
        with pytest.raises(NoActiveSessionError):
            await tokens.refresh(pair.refresh_token)
        # reuse of the old token leaves the rotated session intact
        assert store.get_session(rotated.session_id).status == "active"
        assert (await tokens.verify(rotated.access_token)).user_id == member.user_id
        assert await tokens.refresh(rotated.refresh_token)

    @pytest.mark.asyncio
    async def test_old_access_token_dies_with_rotation(self, tokens, member):
        pair = await tokens.issue_pair(member)
        await tokens.refresh(pair.refresh_token)
        with pytest.raises(TokenRevokedError):
            await tokens.verify(pair.access_token)

    @pytest.mark.asyncio
    async def test_concurrent_refresh_yields_one_pair(self, tokens, member):
        pair = await tokens.issue_pair(member)

        def _refresh():
            try:
                return asyncio.run(tokens.refresh(pair.refresh_token))
            except NoActiveSessionError as exc:
                return exc

        results = await asyncio.gather(
            *(asyncio.to_thread(_refresh) for _ in range(5))
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, NoActiveSessionError)]
        assert len(winners) == 1
        assert len(losers) == 4

    @pytest.mark.asyncio
    async def test_access_token_cannot_refresh(self, tokens, member):
        pair = await tokens.issue_pair(member)
        with pytest.raises(TokenInvalidError):
            await tokens.refresh(pair.access_token)

    @pytest.mark.asyncio
    async def test_refresh_rejected_for_inactive_user(self, tokens, store, member):
        pair = await tokens.issue_pair(member)
        store.update_user(member.user_id, status="suspended")
        with pytest.raises(NoActiveSessionError):
            await tokens.refresh(pair.refresh_token)


class TestRefreshMfaPolicy:
    @staticmethod
    async def _enroll(mfa, user_id):
        setup = mfa.begin_setup(user_id)
        await mfa.complete_setup(user_id, generate_totp(setup.secret, time.time()))

    @pytest.mark.asyncio
    async def test_enrolled_privileged_user_keeps_long_session(self, tokens, mfa, identity):
        await self._enroll(mfa, identity.user_id)
        pair = await tokens.issue_pair(identity)
        rotated = await tokens.refresh(pair.refresh_token)
        assert rotated.refresh_token

    @pytest.mark.asyncio
    async def test_disabling_mfa_downgrades_refresh(self, tokens, mfa, store, identity):
        await self._enroll(mfa, identity.user_id)
        pair = await tokens.issue_pair(identity)
        mfa.disable(identity.user_id)

        rotated = await tokens.refresh(pair.refresh_token)
        assert rotated.refresh_token is None
        assert rotated.refresh_expires_at is None
        session = store.get_session(rotated.session_id)
        assert session.expires_at == session.access_expires_at
        assert (await tokens.verify(rotated.access_token)).user_id == identity.user_id

    @pytest.mark.asyncio
    async def test_org_policy_downgrades_refresh(self, tokens, directory, customer, super_admin, member):
        pair = await tokens.issue_pair(member)
        directory.update_organization(
            customer.id, {"settings": {"require_mfa": True}}, updated_by=super_admin.id
        )
        rotated = await tokens.refresh(pair.refresh_token)
        assert rotated.refresh_token is None


class TestRevoke:
    @pytest.mark.asyncio
    async def test_revoke_kills_both_tokens(self, tokens, identity):
        pair = await tokens.issue_pair(identity)
        assert await tokens.revoke(pair.session_id) is True
        with pytest.raises(TokenRevokedError):
            await tokens.verify(pair.access_token)
        with pytest.raises(NoActiveSessionError):
            await tokens.refresh(pair.refresh_token)

    @pytest.mark.asyncio
    async def test_revoke_twice_returns_false(self, tokens, identity):
        pair = await tokens.issue_pair(identity)
        await tokens.revoke(pair.session_id)
        assert await tokens.revoke(pair.session_id) is False

    @pytest.mark.asyncio
    async def test_revoke_all_with_exclusion(self, tokens, identity):
        keep = await tokens.issue_pair(identity)
        await tokens.issue_pair(identity)
        await tokens.issue_pair(identity)
        revoked = await tokens.revoke_all(identity.user_id, exclude_session_id=keep.session_id)
        assert revoked == 2
        assert [s.id for s in tokens.list_user_sessions(identity.user_id)] == [keep.session_id]

    @pytest.mark.asyncio
    async def test_cleanup_expires_sessions(self, tokens, store, identity):
        pair = await tokens.issue_pair(identity)
        store.sessions[pair.session_id].expires_at = datetime.now(timezone.utc) - timedelta(
            minutes=1
        )
        assert tokens.cleanup_expired() == 1
        assert store.get_session(pair.session_id).status == "expired"
