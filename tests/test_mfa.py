"""Tests for TOTP enrollment, verification and backup codes."""

import time

import pytest

from mssaccess.service.errors import ConflictError, InvalidCodeError, NotFoundError, ValidationError
from mssaccess.service.mfa import SecretBox, generate_totp, verify_totp
from mssaccess.storage.models import AuditQuery


async def _enroll(mfa, user_id):
    setup = mfa.begin_setup(user_id)
    await mfa.complete_setup(user_id, generate_totp(setup.secret, time.time()))
    return setup


class TestTotp:
    def test_rfc6238_vector(self):
        # RFC 6238 SHA-1 test secret "12345678901234567890"
        secret = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
        assert generate_totp(secret, 59) == "287082"
        assert generate_totp(secret, 1111111109) == "081804"

    def test_window_accepts_adjacent_steps(self):
        secret = "JBSWY3DPEHPK3PXP"
        now = 1_700_000_000
        assert verify_totp(secret, generate_totp(secret, now - 30), window=1, at=now)
        assert verify_totp(secret, generate_totp(secret, now + 30), window=1, at=now)
        assert not verify_totp(secret, generate_totp(secret, now + 90), window=1, at=now)

    def test_invalid_secret_never_matches(self):
        assert generate_totp("not base32!", time.time()) == ""
        assert not verify_totp("not base32!", "000000")


class TestSecretBox:
    def test_round_trip_uses_fresh_salt(self):
        box = SecretBox("key-material")
        first = box.encrypt("JBSWY3DPEHPK3PXP")
        second = box.encrypt("JBSWY3DPEHPK3PXP")
        assert first != second
        assert first.startswith("v1$")
        assert box.decrypt(first) == "JBSWY3DPEHPK3PXP"

    def test_wrong_key_fails(self):
        boxed = SecretBox("key-one").encrypt("JBSWY3DPEHPK3PXP")
        with pytest.raises(ValueError):
            SecretBox("key-two").decrypt(boxed)

    def test_malformed_box(self):
        with pytest.raises(ValueError):
            SecretBox("key").decrypt("garbage")


class TestEnrollment:
    def test_begin_setup(self, mfa, store, technician, settings):
        setup = mfa.begin_setup(technician.id)
        assert setup.otpauth_uri.startswith("otpauth://totp/")
        assert "issuer=" in setup.otpauth_uri
        assert len(setup.backup_codes) == settings.mfa_backup_code_count
        user = store.get_user(technician.id)
        assert not user.mfa_enabled
        assert user.mfa_secret and setup.secret not in user.mfa_secret
        assert mfa.status(technician.id)["pending"] is True

    @pytest.mark.asyncio
    async def test_complete_setup(self, mfa, store, technician):
        await _enroll(mfa, technician.id)
        assert store.get_user(technician.id).mfa_enabled
        assert store.count_audit(AuditQuery(action_type="mfa_enable")) == 1
        with pytest.raises(ConflictError):
            mfa.begin_setup(technician.id)

    @pytest.mark.asyncio
    async def test_complete_setup_rejects_bad_code(self, mfa, technician):
        setup = mfa.begin_setup(technician.id)
        wrong = "000000" if generate_totp(setup.secret, time.time()) != "000000" else "111111"
        with pytest.raises(InvalidCodeError):
            await mfa.complete_setup(technician.id, wrong)

    @pytest.mark.asyncio
    async def test_complete_without_pending(self, mfa, technician):
        with pytest.raises(NotFoundError):
            await mfa.complete_setup(technician.id, "123456")


class TestVerify:
    @pytest.mark.asyncio
    async def test_totp_verifies_once(self, mfa, technician):
        setup = await _enroll(mfa, technician.id)
        code = generate_totp(setup.secret, time.time() + 30)
        result = await mfa.verify(technician.id, code)
        assert result.valid and result.method == "totp"
        replay = await mfa.verify(technician.id, code)
        assert not replay.valid

    @pytest.mark.asyncio
    async def test_setup_code_cannot_be_replayed(self, mfa, technician):
        setup = mfa.begin_setup(technician.id)
        code = generate_totp(setup.secret, time.time())
        await mfa.complete_setup(technician.id, code)
        assert not (await mfa.verify(technician.id, code)).valid

    @pytest.mark.asyncio
    async def test_backup_code_single_use(self, mfa, store, technician, settings):
        setup = await _enroll(mfa, technician.id)
        code = setup.backup_codes[0]
        result = await mfa.verify(technician.id, code.lower())
        assert result.valid
        assert result.method == "backup_code"
        assert result.remaining_backup_codes == settings.mfa_backup_code_count - 1
        assert not (await mfa.verify(technician.id, code)).valid
        assert store.count_audit(AuditQuery(action_type="mfa_backup_code_used")) == 1

    @pytest.mark.asyncio
    async def test_failure_is_audited(self, mfa, store, technician):
        await _enroll(mfa, technician.id)
        assert not (await mfa.verify(technician.id, "ZZZZZZZZ")).valid
        entries, _ = store.query_audit(
            AuditQuery(action_type="security_event_mfa_verification_failed")
        )
        assert len(entries) == 1
        assert entries[0].risk_level == "medium"

    @pytest.mark.asyncio
    async def test_verify_requires_enabled_mfa(self, mfa, technician):
        with pytest.raises(ValidationError):
            await mfa.verify(technician.id, "123456")


class TestManagement:
    @pytest.mark.asyncio
    async def test_regenerate_replaces_old_codes(self, mfa, technician):
        setup = await _enroll(mfa, technician.id)
        fresh = mfa.regenerate_backup_codes(technician.id)
        assert set(fresh).isdisjoint(setup.backup_codes)
        assert not (await mfa.verify(technician.id, setup.backup_codes[1])).valid
        assert (await mfa.verify(technician.id, fresh[0])).valid

    def test_regenerate_requires_enabled_mfa(self, mfa, technician):
        with pytest.raises(ValidationError):
            mfa.regenerate_backup_codes(technician.id)

    @pytest.mark.asyncio
    async def test_disable(self, mfa, store, technician):
        await _enroll(mfa, technician.id)
        mfa.disable(technician.id)
        status = mfa.status(technician.id)
        assert status == {
            "enabled": False,
            "pending": False,
            "backup_codes_count": 0,
            "last_used": None,
        }
        assert store.count_audit(AuditQuery(action_type="mfa_disable")) == 1

    def test_required_roles(self, mfa):
        assert mfa.is_mfa_required("super_admin")
        assert mfa.is_mfa_required("technician")
        assert not mfa.is_mfa_required("basic_user")
