"""Tests for the error envelope and exception-to-status mapping.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError

from mssaccess.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from mssaccess.api.schemas import Envelope, ErrorBody
from mssaccess.service.errors import (
    AccountLockedError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialError,
    NotFoundError,
    TokenExpiredError,
    TransactionFailureError,
    TransientError,
)
from mssaccess.service.errors import ValidationError as ServiceValidationError
from mssaccess.storage.errors import ConstraintViolation, StorageUnavailable


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.details is None

    def test_details_accepts_dict_or_list(self):
        assert ErrorBody(code="validation_error", message="x", details={"field": "email"}).details
        assert len(ErrorBody(code="validation_error", message="x", details=[1, 2]).details) == 2

    def test_missing_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="Some error")


class TestEnvelope:
    def test_error_envelope_has_request_id(self):
        envelope = Envelope(status="error", error=ErrorBody(code="forbidden", message="no"))
        assert envelope.data is None
        assert len(envelope.request_id) == 36

    def test_status_is_constrained(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status_code,expected",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (423, "account_locked"),
            (503, "service_unavailable"),
            (418, "server_error"),
        ],
    )
    def test_codes(self, status_code, expected):
        assert _error_code_for_status(status_code) == expected

    def test_table_covers_service_statuses(self):
        assert {400, 401, 403, 404, 409, 423, 500, 503} <= set(_STATUS_TO_CODE)

    def test_error_response_body(self):
        response = _error_response(404, "User not found")
        body = json.loads(response.body)
        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {"code": "not_found", "message": "User not found", "details": None}


class _Payload(BaseModel):
    count: int


def _app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)
    locked_until = datetime.now(timezone.utc) + timedelta(minutes=5)
    raisers = {
        "credential": InvalidCredentialError("Invalid email or password"),
        "expired": TokenExpiredError("Token expired"),
        "locked": AccountLockedError(
            "Account is temporarily locked",
            detail={"locked_until": locked_until.isoformat(), "retry_after_seconds": 300},
        ),
        "forbidden": ForbiddenError("Insufficient permissions"),
        "missing": NotFoundError("User not found"),
        "conflict": ConflictError("Technician already has active access to this customer"),
        "invalid": ServiceValidationError("Invalid user", errors=["email must be a valid address"]),
        "transaction": TransactionFailureError("Access handoff failed; no changes were applied"),
        "transient": TransientError("cache unavailable"),
        "constraint": ConstraintViolation("email already exists", {"field": "email"}),
        "storage": StorageUnavailable("database unavailable"),
        "bug": RuntimeError("boom"),
    }

    @app.get("/raise/{kind}")
    async def raise_kind(kind: str):
        raise raisers[kind]

    @app.post("/payload")
    async def payload(body: _Payload):
        return {"count": body.count}

    return app


@pytest.fixture
def client():
    return TestClient(_app(), raise_server_exceptions=False)


class TestHandlers:
    @pytest.mark.parametrize(
        "kind,status_code,code",
        [
            ("credential", 401, "invalid_credential"),
            ("expired", 401, "token_expired"),
            ("locked", 423, "account_locked"),
            ("forbidden", 403, "forbidden"),
            ("missing", 404, "not_found"),
            ("conflict", 409, "conflict"),
            ("invalid", 400, "validation_error"),
            ("transaction", 500, "transaction_failed"),
            ("transient", 503, "service_unavailable"),
            ("constraint", 409, "conflict"),
            ("storage", 503, "service_unavailable"),
            ("bug", 500, "server_error"),
        ],
    )
    def test_mapping(self, client, kind, status_code, code):
        response = client.get(f"/raise/{kind}")
        assert response.status_code == status_code
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == code
        assert "request_id" in body

    def test_locked_sets_retry_after(self, client):
        response = client.get("/raise/locked")
        assert response.headers["Retry-After"] == "300"
        assert response.json()["error"]["details"]["retry_after_seconds"] == 300

    def test_validation_details_are_itemized(self, client):
        body = client.get("/raise/invalid").json()
        assert body["error"]["details"] == {"errors": ["email must be a valid address"]}

    def test_internal_errors_are_not_leaked(self, client):
        assert client.get("/raise/bug").json()["error"]["message"] == "internal server error"
        assert "database" not in client.get("/raise/storage").json()["error"]["message"]

    def test_request_validation(self, client):
        response = client.post("/payload", json={"count": "many"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"
