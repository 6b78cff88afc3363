"""Integration tests for the HTTP surface.

Covers the login, refresh and logout flow, password reset, MFA enrollment,
technician grants and handoff, audit access and the health check.
"""

import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from mssaccess import app as app_module
from mssaccess.service.mfa import generate_totp
from mssaccess.service.runtime import get_runtime

from conftest import STRONG_PASSWORD


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def tenants():
    """Provider with a super admin and two technicians; customer with an admin and a basic user."""
    directory = get_runtime().directory
    provider = directory.create_organization("Acme MSSP", "mss_provider")
    customer = directory.create_organization("Globex", "customer")
    users = {
        "root": directory.create_user(
            provider.id, "root@acme.example", "Ada", "Root", "super_admin", STRONG_PASSWORD
        ),
        "tina": directory.create_user(
            provider.id, "tina@acme.example", "Tina", "Tech", "technician", STRONG_PASSWORD
        ),
        "sam": directory.create_user(
            provider.id, "sam@acme.example", "Sam", "Second", "technician", STRONG_PASSWORD
        ),
        "carol": directory.create_user(
            customer.id, "carol@globex.example", "Carol", "Admin", "admin", STRONG_PASSWORD
        ),
        "bob": directory.create_user(
            customer.id, "bob@globex.example", "Bob", "Basic", "basic_user", STRONG_PASSWORD
        ),
    }
    return {"provider": provider, "customer": customer, **users}


def _login(client, email, password=STRONG_PASSWORD, **extra):
    return client.post("/v1/auth/login", json={"email": email, "password": password, **extra})


def _bearer(client, email):
    tokens = _login(client, email).json()["data"]["tokens"]
    return {"Authorization": f"Bearer {tokens['access_token']}"}


class TestLoginFlow:
    def test_login_me_refresh_logout(self, client, tenants):
        response = _login(client, "bob@globex.example")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["email"] == "bob@globex.example"
        assert data["organization"]["type"] == "customer"
        assert data["mfa_required"] is False
        tokens = data["tokens"]
        headers = {"Authorization": f"Bearer {tokens['access_token']}"}

        me = client.get("/v1/me", headers=headers)
        assert me.status_code == 200
        assert me.json()["data"]["session_id"] == tokens["session_id"]

        refreshed = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refreshed.status_code == 200
        new_tokens = refreshed.json()["data"]["tokens"]
        assert new_tokens["session_id"] != tokens["session_id"]

        stale = client.get("/v1/me", headers=headers)
        assert stale.status_code == 401
        assert stale.json()["error"]["code"] == "token_revoked"

        new_headers = {"Authorization": f"Bearer {new_tokens['access_token']}"}
        assert client.post("/v1/auth/logout", headers=new_headers).status_code == 200
        assert client.get("/v1/me", headers=new_headers).status_code == 401

    def test_refresh_token_replay_rejected(self, client, tenants):
        tokens = _login(client, "bob@globex.example").json()["data"]["tokens"]
        body = {"refresh_token": tokens["refresh_token"]}
        assert client.post("/v1/auth/refresh", json=body).status_code == 200
        replay = client.post("/v1/auth/refresh", json=body)
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "no_active_session"

    def test_failures_do_not_reveal_accounts(self, client, tenants):
        wrong = _login(client, "bob@globex.example", "Wrong#Pass99")
        unknown = _login(client, "nobody@globex.example", "Wrong#Pass99")
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]

    def test_lockout_returns_423(self, client, tenants):
        threshold = get_runtime().settings.lockout_threshold
        for _ in range(threshold):
            _login(client, "bob@globex.example", "Wrong#Pass99")
        locked = _login(client, "bob@globex.example")
        assert locked.status_code == 423
        assert locked.json()["error"]["code"] == "account_locked"
        assert int(locked.headers["Retry-After"]) > 0

    def test_missing_bearer(self, client):
        response = client.get("/v1/me")
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"

    def test_sessions_listing_and_revoke(self, client, tenants):
        headers = _bearer(client, "bob@globex.example")
        other = _login(client, "bob@globex.example").json()["data"]["tokens"]
        sessions = client.get("/v1/auth/sessions", headers=headers).json()["data"]["items"]
        assert len(sessions) == 2
        assert sum(1 for s in sessions if s["current"]) == 1
        revoked = client.delete(f"/v1/auth/sessions/{other['session_id']}", headers=headers)
        assert revoked.status_code == 200
        assert client.delete("/v1/auth/sessions/not-a-session", headers=headers).status_code == 404


class TestPasswordReset:
    def test_request_is_anonymous(self, client, tenants):
        known = client.post("/v1/auth/reset/request", json={"email": "bob@globex.example"})
        unknown = client.post("/v1/auth/reset/request", json={"email": "ghost@globex.example"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_confirm_resets_and_revokes(self, client, tenants):
        headers = _bearer(client, "bob@globex.example")
        token = asyncio.run(get_runtime().passwords.generate_reset_token("bob@globex.example"))
        response = client.post(
            "/v1/auth/reset/confirm", json={"token": token, "new_password": "Fresh#Start42"}
        )
        assert response.status_code == 200
        assert client.get("/v1/me", headers=headers).status_code == 401
        assert _login(client, "bob@globex.example", "Fresh#Start42").status_code == 200

    def test_password_validate_endpoint(self, client):
        data = client.post("/v1/auth/password/validate", json={"password": "abc"}).json()["data"]
        assert data["valid"] is False
        assert data["errors"]


class TestMfa:
    def test_enroll_then_login_with_code(self, client, tenants):
        login = _login(client, "tina@acme.example").json()["data"]
        assert login["mfa_enrollment_required"] is True
        assert login["tokens"]["refresh_token"] is None
        headers = {"Authorization": f"Bearer {login['tokens']['access_token']}"}

        setup = client.post("/v1/auth/mfa/setup", headers=headers).json()["data"]
        code = generate_totp(setup["secret"], time.time())
        enabled = client.post("/v1/auth/mfa/enable", json={"code": code}, headers=headers)
        assert enabled.status_code == 200

        pending = _login(client, "tina@acme.example").json()["data"]
        assert pending["mfa_required"] is True
        assert pending["tokens"] is None

        next_code = generate_totp(setup["secret"], time.time() + 30)
        full = _login(client, "tina@acme.example", mfa_code=next_code).json()["data"]
        assert full["tokens"]["refresh_token"]

        bad = _login(client, "tina@acme.example", mfa_code=setup["backup_codes"][0] + "X")
        assert bad.status_code == 401
        assert bad.json()["error"]["code"] == "invalid_code"

    def test_refresh_after_disable_is_short_lived(self, client, tenants):
        login = _login(client, "tina@acme.example").json()["data"]
        headers = {"Authorization": f"Bearer {login['tokens']['access_token']}"}
        setup = client.post("/v1/auth/mfa/setup", headers=headers).json()["data"]
        now = time.time()
        client.post(
            "/v1/auth/mfa/enable",
            json={"code": generate_totp(setup["secret"], now)},
            headers=headers,
        )

        full = _login(
            client, "tina@acme.example", mfa_code=generate_totp(setup["secret"], now + 30)
        ).json()["data"]["tokens"]
        full_headers = {"Authorization": f"Bearer {full['access_token']}"}
        disabled = client.post(
            "/v1/auth/mfa/disable",
            json={"code": generate_totp(setup["secret"], now - 30)},
            headers=full_headers,
        )
        assert disabled.status_code == 200

        refreshed = client.post("/v1/auth/refresh", json={"refresh_token": full["refresh_token"]})
        assert refreshed.status_code == 200
        data = refreshed.json()["data"]
        assert data["tokens"]["refresh_token"] is None
        assert data["mfa_enrollment_required"] is True


class TestTechnicianAccess:
    def test_grant_and_handoff(self, client, tenants):
        admin = _bearer(client, "root@acme.example")
        granted = client.post(
            "/v1/technician-access/grant",
            json={
                "technician_id": tenants["tina"].id,
                "customer_org_id": tenants["customer"].id,
                "access_level": "full_access",
            },
            headers=admin,
        )
        assert granted.status_code == 200
        assert granted.json()["data"]["status"] == "active"

        duplicate = client.post(
            "/v1/technician-access/grant",
            json={"technician_id": tenants["tina"].id, "customer_org_id": tenants["customer"].id},
            headers=admin,
        )
        assert duplicate.status_code == 409

        handoff = client.post(
            "/v1/technician-access/handoff",
            json={
                "from_technician_id": tenants["tina"].id,
                "to_technician_id": tenants["sam"].id,
                "reason": "Rotation",
            },
            headers=admin,
        )
        assert handoff.status_code == 200
        assert handoff.json()["data"]["summary"] == {"total": 1, "transferred": 1, "skipped": 0}

        matrix = client.get("/v1/technician-access/matrix", headers=admin).json()["data"]
        assert matrix["matrix"][f"{tenants['sam'].id}_{tenants['customer'].id}"]["has_access"]
        assert not matrix["matrix"][f"{tenants['tina'].id}_{tenants['customer'].id}"]["has_access"]

    def test_technician_cannot_grant(self, client, tenants):
        tech = _bearer(client, "tina@acme.example")
        response = client.post(
            "/v1/technician-access/grant",
            json={"technician_id": tenants["tina"].id, "customer_org_id": tenants["customer"].id},
            headers=tech,
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_invalid_level_rejected(self, client, tenants):
        admin = _bearer(client, "root@acme.example")
        response = client.post(
            "/v1/technician-access/grant",
            json={
                "technician_id": tenants["tina"].id,
                "customer_org_id": tenants["customer"].id,
                "access_level": "root",
            },
            headers=admin,
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestAudit:
    def test_customer_admin_sees_only_own_tenant(self, client, tenants):
        _login(client, "tina@acme.example")
        headers = _bearer(client, "carol@globex.example")
        page = client.get(
            "/v1/audit/logs",
            params={"organization_id": tenants["provider"].id},
            headers=headers,
        ).json()["data"]
        assert page["total"] >= 1
        assert {item["organization_id"] for item in page["items"]} == {tenants["customer"].id}

    def test_technician_denied(self, client, tenants):
        headers = _bearer(client, "tina@acme.example")
        assert client.get("/v1/audit/logs", headers=headers).status_code == 403

    def test_compliance_report_is_audited(self, client, tenants):
        headers = _bearer(client, "root@acme.example")
        report = client.get("/v1/audit/compliance-report", headers=headers)
        assert report.status_code == 200
        assert "user_management" in report.json()["data"]["details"]
        exports = client.get(
            "/v1/audit/logs", params={"action_type": "data_export"}, headers=headers
        ).json()["data"]
        assert exports["total"] == 1


class TestPlumbing:
    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]

    def test_envelope_carries_request_id(self, client):
        response = client.get("/v1/me", headers={"X-Request-ID": "req-789"})
        assert response.status_code == 401
        assert response.json()["request_id"] == "req-789"

    def test_healthz(self, client):
        body = client.get("/healthz").json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
        assert body["checks"]["redis"] == {"status": "not_configured"}
