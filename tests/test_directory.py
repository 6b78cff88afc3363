"""Tests for organization and user management."""

import pytest

from mssaccess.service.errors import (
    ConflictError,
    NotFoundError,
    TokenRevokedError,
    ValidationError,
)
from mssaccess.service.tokens import Identity
from mssaccess.storage.models import AuditQuery

from conftest import STRONG_PASSWORD


async def _login_pair(tokens, store, user):
    org = store.get_organization(user.org_id)
    return await tokens.issue_pair(Identity.from_records(user, org))


class TestOrganizations:
    def test_create_is_audited(self, directory, store, provider):
        assert provider.type == "mss_provider"
        assert provider.status == "active"
        entries, _ = store.query_audit(AuditQuery(action_type="organization_create"))
        assert entries[0].resource_id == provider.id
        assert entries[0].action_data["organization_type"] == "mss_provider"

    def test_single_provider(self, directory, provider):
        with pytest.raises(ConflictError):
            directory.create_organization("Other MSSP", "mss_provider")

    def test_duplicate_name(self, directory, customer):
        with pytest.raises(ConflictError):
            directory.create_organization("  globex ", "customer")

    def test_invalid_input(self, directory):
        with pytest.raises(ValidationError):
            directory.create_organization("   ", "customer")
        with pytest.raises(ValidationError):
            directory.create_organization("Partner Co", "partner")

    def test_settings_validated(self, directory):
        with pytest.raises(ValidationError) as exc:
            directory.create_organization(
                "Strict Co", "customer", settings={"session_timeout_minutes": 1, "colour": "red"}
            )
        assert len(exc.value.detail["errors"]) == 2

    def test_update_merges_settings(self, directory, customer, super_admin):
        directory.update_organization(
            customer.id, {"settings": {"timezone": "UTC"}}, updated_by=super_admin.id
        )
        updated = directory.update_organization(
            customer.id,
            {"settings": {"require_mfa": True}, "name": "Globex Corp"},
            updated_by=super_admin.id,
        )
        assert updated.settings == {"timezone": "UTC", "require_mfa": True}
        assert updated.name == "Globex Corp"

    def test_update_rejects_unknown_fields(self, directory, customer, super_admin):
        with pytest.raises(ValidationError):
            directory.update_organization(customer.id, {"type": "mss_provider"}, updated_by=super_admin.id)
        with pytest.raises(ValidationError):
            directory.update_organization(customer.id, {"status": "deleted"}, updated_by=super_admin.id)

    def test_list_filters(self, directory, provider, customer):
        rows, total = directory.list_organizations(org_type="customer")
        assert total == 1
        assert rows[0].id == customer.id
        with pytest.raises(ValidationError):
            directory.list_organizations(limit=501)

    @pytest.mark.asyncio
    async def test_delete_revokes_sessions_and_grants(
        self, directory, access, tokens, store, customer, customer_user, technician, super_admin
    ):
        grant = access.grant(technician.id, customer.id, granted_by=super_admin.id)
        pair = await _login_pair(tokens, store, customer_user)

        await directory.delete_organization(customer.id, deleted_by=super_admin.id)

        assert store.get_organization(customer.id).status == "deleted"
        assert store.get_user(customer_user.id).status == "deleted"
        assert store.get_access(grant.id).status == "revoked"
        with pytest.raises(TokenRevokedError):
            await tokens.verify(pair.access_token)
        with pytest.raises(NotFoundError):
            directory.get_organization(customer.id)

    @pytest.mark.asyncio
    async def test_provider_cannot_be_deleted(self, directory, provider, super_admin):
        with pytest.raises(ValidationError):
            await directory.delete_organization(provider.id, deleted_by=super_admin.id)


class TestUsers:
    def test_create_user(self, directory, passwords, store, customer_user):
        stored = store.get_user(customer_user.id)
        assert stored.email == "bob@globex.example"
        assert passwords.verify_password(stored.password_hash, STRONG_PASSWORD)
        assert store.count_audit(AuditQuery(action_type="user_create")) == 1

    def test_email_is_normalized_and_unique(self, directory, customer, customer_user):
        with pytest.raises(ConflictError):
            directory.create_user(
                customer.id,
                " BOB@globex.example ",
                "Robert",
                "Dup",
                "report_viewer",
                STRONG_PASSWORD,
            )

    def test_role_must_match_org_type(self, directory, customer, provider):
        with pytest.raises(ValidationError):
            directory.create_user(
                customer.id, "x@globex.example", "X", "Y", "technician", STRONG_PASSWORD
            )
        with pytest.raises(ValidationError):
            directory.create_user(
                provider.id, "y@acme.example", "X", "Y", "basic_user", STRONG_PASSWORD
            )

    def test_invalid_fields_and_weak_password(self, directory, customer):
        with pytest.raises(ValidationError) as exc:
            directory.create_user(customer.id, "not-an-email", "", "", "basic_user", STRONG_PASSWORD)
        assert len(exc.value.detail["errors"]) == 3
        with pytest.raises(ValidationError):
            directory.create_user(customer.id, "w@globex.example", "W", "K", "basic_user", "weak")

    @pytest.mark.asyncio
    async def test_name_update_keeps_sessions(self, directory, tokens, store, customer_user, super_admin):
        pair = await _login_pair(tokens, store, customer_user)
        updated = await directory.update_user(
            customer_user.id, {"first_name": "Robert"}, updated_by=customer_user.id
        )
        assert updated.first_name == "Robert"
        assert (await tokens.verify(pair.access_token)).user_id == customer_user.id

    @pytest.mark.asyncio
    async def test_role_change_revokes_sessions(self, directory, tokens, store, customer_user, super_admin):
        pair = await _login_pair(tokens, store, customer_user)
        await directory.update_user(customer_user.id, {"role": "report_viewer"}, updated_by=super_admin.id)
        with pytest.raises(TokenRevokedError):
            await tokens.verify(pair.access_token)

    @pytest.mark.asyncio
    async def test_suspension_revokes_sessions(self, directory, tokens, store, customer_user, super_admin):
        pair = await _login_pair(tokens, store, customer_user)
        await directory.update_user(customer_user.id, {"status": "suspended"}, updated_by=super_admin.id)
        with pytest.raises(TokenRevokedError):
            await tokens.verify(pair.access_token)

    @pytest.mark.asyncio
    async def test_update_validation(self, directory, customer_user, super_admin):
        with pytest.raises(ValidationError):
            await directory.update_user(customer_user.id, {"email": "x@y.z"}, updated_by=super_admin.id)
        with pytest.raises(ValidationError):
            await directory.update_user(customer_user.id, {"status": "deleted"}, updated_by=super_admin.id)
        with pytest.raises(ValidationError):
            await directory.update_user(customer_user.id, {"role": "super_admin"}, updated_by=super_admin.id)

    @pytest.mark.asyncio
    async def test_delete_user_revokes_grants(self, directory, access, store, customer, technician, super_admin):
        grant = access.grant(technician.id, customer.id, granted_by=super_admin.id)
        await directory.delete_user(technician.id, deleted_by=super_admin.id)
        assert store.get_access(grant.id).status == "revoked"
        with pytest.raises(NotFoundError):
            directory.get_user(technician.id)
        assert store.count_audit(AuditQuery(action_type="user_delete")) == 1

    @pytest.mark.asyncio
    async def test_cannot_delete_self(self, directory, super_admin):
        with pytest.raises(ValidationError):
            await directory.delete_user(super_admin.id, deleted_by=super_admin.id)
