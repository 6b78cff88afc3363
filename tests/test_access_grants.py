"""Tests for technician grants, the access matrix and bulk handoff."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from mssaccess.service.access import (
    DEFAULT_SERVICES,
    SKIP_EXISTING_REASON,
    SKIP_EXPIRED_REASON,
    SKIP_INACTIVE_CUSTOMER_REASON,
)
from mssaccess.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TransactionFailureError,
    ValidationError,
)
from mssaccess.storage.errors import ConstraintViolation
from mssaccess.storage.models import AuditQuery

from conftest import STRONG_PASSWORD


@pytest.fixture
def customers(directory):
    return [
        directory.create_organization(name, "customer")
        for name in ("Initech", "Umbrella", "Hooli")
    ]


class TestGrant:
    def test_grant_defaults(self, access, technician, customer, super_admin):
        record = access.grant(technician.id, customer.id, granted_by=super_admin.id)
        assert record.status == "active"
        assert record.access_level == "read_only"
        assert record.allowed_services == DEFAULT_SERVICES["read_only"]

    def test_grant_is_audited_against_customer(self, access, store, technician, customer, super_admin):
        record = access.grant(technician.id, customer.id, "full_access", granted_by=super_admin.id)
        entries, _ = store.query_audit(AuditQuery(action_type="technician_access_grant"))
        assert len(entries) == 1
        assert entries[0].organization_id == customer.id
        assert entries[0].resource_id == record.id
        assert entries[0].risk_level == "medium"

    def test_single_active_grant(self, access, technician, customer, super_admin):
        access.grant(technician.id, customer.id, granted_by=super_admin.id)
        with pytest.raises(ConflictError):
            access.grant(technician.id, customer.id, "full_access", granted_by=super_admin.id)

    def test_regrant_after_revoke(self, access, technician, customer, super_admin):
        first = access.grant(technician.id, customer.id, granted_by=super_admin.id)
        access.revoke(first.id, revoked_by=super_admin.id)
        second = access.grant(technician.id, customer.id, granted_by=super_admin.id)
        assert second.id != first.id
        assert [r.id for r in access.list_technician_access(technician.id, status="active")] == [
            second.id
        ]

    def test_non_technician_rejected(self, access, customer_user, customer, super_admin):
        with pytest.raises(NotFoundError):
            access.grant(customer_user.id, customer.id, granted_by=super_admin.id)

    def test_provider_is_not_a_customer(self, access, technician, provider, super_admin):
        with pytest.raises(NotFoundError):
            access.grant(technician.id, provider.id, granted_by=super_admin.id)

    def test_invalid_level(self, access, technician, customer, super_admin):
        with pytest.raises(ValidationError):
            access.grant(technician.id, customer.id, "god_mode", granted_by=super_admin.id)

    def test_past_expiry_rejected(self, access, technician, customer, super_admin):
        with pytest.raises(ValidationError):
            access.grant(
                technician.id,
                customer.id,
                granted_by=super_admin.id,
                expires_at=datetime.now(timezone.utc) - timedelta(hours=1),
            )

    def test_invalid_restrictions(self, access, technician, customer, super_admin):
        with pytest.raises(ValidationError) as exc:
            access.grant(
                technician.id,
                customer.id,
                granted_by=super_admin.id,
                ip_restrictions=["10.0.0.0/8", "not-an-ip"],
                time_restrictions={"days": [7], "start_hour": 18, "end_hour": 9},
            )
        assert len(exc.value.detail["errors"]) == 3


class TestUpdateRevoke:
    def test_update(self, access, store, technician, customer, super_admin):
        record = access.grant(technician.id, customer.id, granted_by=super_admin.id)
        updated = access.update(
            record.id,
            {"access_level": "full_access", "notes": "escalated"},
            updated_by=super_admin.id,
        )
        assert updated.access_level == "full_access"
        assert updated.notes == "escalated"
        assert store.count_audit(AuditQuery(action_type="technician_access_update")) == 1

    def test_update_rejects_unknown_and_empty(self, access, technician, customer, super_admin):
        record = access.grant(technician.id, customer.id, granted_by=super_admin.id)
        with pytest.raises(ValidationError):
            access.update(record.id, {"technician_id": "other"}, updated_by=super_admin.id)
        with pytest.raises(ValidationError, match="No updates provided"):
            access.update(record.id, {}, updated_by=super_admin.id)

    def test_update_revoked_grant(self, access, technician, customer, super_admin):
        record = access.grant(technician.id, customer.id, granted_by=super_admin.id)
        access.revoke(record.id, revoked_by=super_admin.id)
        with pytest.raises(NotFoundError):
            access.update(record.id, {"notes": "late"}, updated_by=super_admin.id)

    def test_revoke(self, access, store, technician, customer, super_admin):
        record = access.grant(technician.id, customer.id, granted_by=super_admin.id)
        revoked = access.revoke(record.id, revoked_by=super_admin.id, reason="Contract ended")
        assert revoked.status == "revoked"
        assert revoked.revoked_reason == "Contract ended"
        entries, _ = store.query_audit(AuditQuery(action_type="technician_access_revoke"))
        assert entries[0].risk_level == "high"
        with pytest.raises(NotFoundError):
            access.revoke(record.id, revoked_by=super_admin.id)

    def test_expire_grants(self, access, store, technician, customer, super_admin):
        record = access.grant(
            technician.id,
            customer.id,
            granted_by=super_admin.id,
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )
        store.access_records[record.id].expires_at = datetime.now(timezone.utc) - timedelta(
            seconds=1
        )
        assert access.expire_grants() == 1
        assert store.get_access(record.id).status == "expired"


class TestAuthorize:
    def test_no_grant(self, access, technician, customer):
        with pytest.raises(ForbiddenError):
            access.authorize(technician.id, customer.id)

    def test_service_and_ip(self, access, technician, customer, super_admin):
        access.grant(
            technician.id,
            customer.id,
            granted_by=super_admin.id,
            allowed_services=["reports"],
            ip_restrictions=["10.1.0.0/16"],
        )
        assert access.authorize(technician.id, customer.id, service="reports", ip_address="10.1.2.3")
        with pytest.raises(ForbiddenError):
            access.authorize(technician.id, customer.id, service="tickets", ip_address="10.1.2.3")
        with pytest.raises(ForbiddenError):
            access.authorize(technician.id, customer.id, service="reports", ip_address="192.168.1.1")

    def test_time_window(self, access, technician, customer, super_admin):
        access.grant(
            technician.id,
            customer.id,
            granted_by=super_admin.id,
            time_restrictions={"days": [1, 2, 3, 4, 5], "start_hour": 9, "end_hour": 17},
        )
        # 2024-01-01 was a Monday
        monday_noon = datetime(2024, 1, 1, 12, tzinfo=timezone.utc)
        assert access.authorize(technician.id, customer.id, at=monday_noon)
        with pytest.raises(ForbiddenError):
            access.authorize(technician.id, customer.id, at=monday_noon.replace(hour=20))
        with pytest.raises(ForbiddenError):
            access.authorize(technician.id, customer.id, at=monday_noon - timedelta(days=1))


class TestMatrix:
    def test_matrix(self, access, technician, second_technician, customers, super_admin):
        access.grant(technician.id, customers[0].id, granted_by=super_admin.id)
        result = access.build_access_matrix()
        tech_ids = {t.id for t in result.technicians}
        assert {technician.id, second_technician.id, super_admin.id} <= tech_ids
        assert len(result.customers) == 3
        cell = result.matrix[f"{technician.id}_{customers[0].id}"]
        assert cell["has_access"] is True
        assert cell["access"].technician_id == technician.id
        assert result.matrix[f"{second_technician.id}_{customers[0].id}"]["has_access"] is False

    def test_roles(self, access):
        assert "technician" in access.list_valid_roles("mss_provider")
        assert "admin" in access.list_valid_roles("customer")
        assert access.validate_role("admin", "customer")
        assert not access.validate_role("admin", "mss_provider")
        with pytest.raises(ValidationError):
            access.list_valid_roles("partner")


class TestHandoff:
    def test_transfer_and_revoke(self, access, store, technician, second_technician, customers, super_admin):
        for org in customers:
            access.grant(technician.id, org.id, "full_access", granted_by=super_admin.id)
        result = access.handoff(
            technician.id, second_technician.id, reason="Vacation", performed_by=super_admin.id
        )
        assert result.summary == {"total": 3, "transferred": 3, "skipped": 0}
        assert access.list_technician_access(technician.id, status="active") == []
        moved = access.list_technician_access(second_technician.id, status="active")
        assert len(moved) == 3
        assert all(r.transferred_from == technician.id for r in moved)
        assert all(r.access_level == "full_access" for r in moved)
        assert moved[0].notes == "Transferred from Tina Tech. Vacation"
        revoked = access.list_technician_access(technician.id, status="revoked")
        assert {r.revoked_reason for r in revoked} == {"Access transferred to Sam Second"}
        entries, _ = store.query_audit(AuditQuery(action_type="technician_access_handoff"))
        assert len(entries) == 1
        assert entries[0].action_data["transferred_count"] == 3

    def test_skip_existing_destination(self, access, technician, second_technician, customers, super_admin):
        for org in customers:
            access.grant(technician.id, org.id, granted_by=super_admin.id)
        access.grant(second_technician.id, customers[1].id, granted_by=super_admin.id)
        result = access.handoff(technician.id, second_technician.id, performed_by=super_admin.id)
        assert result.summary == {"total": 3, "transferred": 2, "skipped": 1}
        skipped = [r for r in result.results if r["status"] == "skipped"]
        assert skipped[0]["customer_org_id"] == customers[1].id
        assert skipped[0]["reason"] == SKIP_EXISTING_REASON
        # source keeps the skipped customer
        remaining = access.list_technician_access(technician.id, status="active")
        assert [r.customer_org_id for r in remaining] == [customers[1].id]

    def test_lapsed_grant_is_not_copied(self, access, store, technician, second_technician, customers, super_admin):
        stale = access.grant(technician.id, customers[0].id, granted_by=super_admin.id)
        access.grant(technician.id, customers[1].id, granted_by=super_admin.id)
        store.update_access(stale.id, expires_at=datetime.now(timezone.utc) - timedelta(hours=1))

        result = access.handoff(technician.id, second_technician.id, performed_by=super_admin.id)
        assert result.summary == {"total": 2, "transferred": 1, "skipped": 1}
        skipped = [r for r in result.results if r["status"] == "skipped"]
        assert skipped[0]["customer_org_id"] == customers[0].id
        assert skipped[0]["reason"] == SKIP_EXPIRED_REASON
        moved = access.list_technician_access(second_technician.id, status="active")
        assert [r.customer_org_id for r in moved] == [customers[1].id]

    def test_inactive_customer_is_not_copied(self, access, store, technician, second_technician, customers, super_admin):
        for org in customers[:2]:
            access.grant(technician.id, org.id, granted_by=super_admin.id)
        store.update_organization(customers[0].id, status="suspended")

        result = access.handoff(technician.id, second_technician.id, performed_by=super_admin.id)
        assert result.summary["transferred"] == 1
        skipped = [r for r in result.results if r["status"] == "skipped"]
        assert skipped[0]["reason"] == SKIP_INACTIVE_CUSTOMER_REASON
        assert all(
            r.customer_org_id != customers[0].id
            for r in access.list_technician_access(second_technician.id)
        )

    def test_maintain_original_access(self, access, technician, second_technician, customers, super_admin):
        access.grant(technician.id, customers[0].id, granted_by=super_admin.id)
        access.handoff(
            technician.id,
            second_technician.id,
            maintain_original_access=True,
            performed_by=super_admin.id,
        )
        assert len(access.list_technician_access(technician.id, status="active")) == 1
        assert len(access.list_technician_access(second_technician.id, status="active")) == 1

    def test_subset_of_customers(self, access, technician, second_technician, customers, super_admin):
        for org in customers:
            access.grant(technician.id, org.id, granted_by=super_admin.id)
        result = access.handoff(
            technician.id,
            second_technician.id,
            customer_org_ids=[customers[2].id],
            performed_by=super_admin.id,
        )
        assert result.summary["transferred"] == 1
        assert len(access.list_technician_access(technician.id, status="active")) == 2

    def test_nothing_to_transfer(self, access, technician, second_technician, super_admin):
        with pytest.raises(NotFoundError):
            access.handoff(technician.id, second_technician.id, performed_by=super_admin.id)

    def test_same_technician(self, access, technician, super_admin):
        with pytest.raises(ValidationError):
            access.handoff(technician.id, technician.id, performed_by=super_admin.id)

    def test_failure_rolls_back(self, access, store, technician, second_technician, customers, super_admin, monkeypatch):
        for org in customers:
            access.grant(technician.id, org.id, granted_by=super_admin.id)
        audit_before = store.count_audit(AuditQuery())
        real_create = store.create_access
        calls = {"n": 0}

        def _flaky_create(record):
            calls["n"] += 1
            if calls["n"] == 2:
                raise ConstraintViolation("simulated conflict", {"record": record.id})
            return real_create(record)

        monkeypatch.setattr(store, "create_access", _flaky_create)
        with pytest.raises(TransactionFailureError):
            access.handoff(technician.id, second_technician.id, performed_by=super_admin.id)

        assert len(access.list_technician_access(technician.id, status="active")) == 3
        assert access.list_technician_access(second_technician.id) == []
        assert store.count_audit(AuditQuery()) == audit_before


def test_deleted_technician_cannot_receive(access, directory, technician, provider, customers, super_admin):
    access.grant(technician.id, customers[0].id, granted_by=super_admin.id)
    departed = directory.create_user(
        provider.id, "gone@acme.example", "Gone", "Away", "technician", STRONG_PASSWORD
    )
    asyncio.run(directory.delete_user(departed.id, deleted_by=super_admin.id))
    with pytest.raises(NotFoundError):
        access.handoff(technician.id, departed.id, performed_by=super_admin.id)
