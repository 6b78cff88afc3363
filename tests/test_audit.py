"""Tests for the audit trail: append validation, queries and reporting."""

from datetime import datetime, timedelta, timezone

import pytest

from mssaccess.service.audit import AuditEvent, RequestContext, email_digest
from mssaccess.service.errors import ValidationError
from mssaccess.service.record_validation import RecordValidationError
from mssaccess.storage.models import AuditQuery

ORG_ID = "org-1"


def _event(**overrides):
    base = dict(
        action_type="data_view",
        resource_type="report",
        description="Viewed report",
        user_id="user-1",
        organization_id=ORG_ID,
    )
    base.update(overrides)
    return AuditEvent(**base)


class TestAppend:
    def test_append_persists_entry(self, audit, store):
        entry_id = audit.append(_event(ip_address="10.0.0.9"))
        stored = store.audit_logs[entry_id]
        assert stored.action_description == "Viewed report"
        assert stored.ip_address == "10.0.0.9"
        assert stored.compliance_relevant is True
        assert stored.timestamp.tzinfo is not None

    def test_user_required_unless_system_event(self, audit):
        with pytest.raises(ValidationError) as exc:
            audit.append(_event(user_id=None))
        assert "user_id is required" in exc.value.detail["errors"][0]
        assert audit.append(_event(user_id=None, system_event=True))

    def test_required_fields_and_risk(self, audit):
        with pytest.raises(ValidationError) as exc:
            audit.append(_event(action_type=" ", description="", risk_level="severe"))
        assert len(exc.value.detail["errors"]) == 3

    def test_detail_schema_enforced(self, audit):
        with pytest.raises(RecordValidationError):
            audit.append(_event(action_type="login_success", detail={"method": "carrier-pigeon"}))

    def test_login_failure_hides_email(self, audit, store):
        audit.log_login(
            success=False,
            user_id=None,
            organization_id=None,
            email="Someone@Example.com",
            context=RequestContext(ip_address="203.0.113.5"),
        )
        (entry,) = store.audit_logs.values()
        assert entry.action_type == "login_failed"
        assert entry.risk_level == "medium"
        assert entry.action_data["email_digest"] == email_digest("someone@example.com")
        assert "Someone@Example.com" not in str(entry.action_data)

    def test_unknown_mapped_event(self, audit):
        with pytest.raises(ValidationError):
            audit.log_access_action(
                "teleport",
                user_id="user-1",
                organization_id="org-1",
                access_id=None,
                description="nope",
                detail={},
            )


class TestQuery:
    def test_filters(self, audit):
        audit.append(_event())
        audit.append(_event(user_id="user-2", risk_level="high"))
        audit.append(_event(organization_id="org-2"))
        page = audit.query(AuditQuery(organization_id="org-1"))
        assert page.total == 2
        assert audit.query(AuditQuery(risk_level="high")).entries[0].user_id == "user-2"
        assert audit.query(AuditQuery(user_id="user-1", organization_id="org-2")).total == 1

    def test_newest_first_and_paging(self, audit):
        for i in range(5):
            audit.append(_event(description=f"event {i}"))
        page = audit.query(AuditQuery(limit=2, offset=1))
        assert page.total == 5
        assert len(page.entries) == 2
        stamps = [e.timestamp for e in audit.query(AuditQuery()).entries]
        assert stamps == sorted(stamps, reverse=True)

    def test_limit_is_capped(self, audit):
        audit.append(_event())
        assert audit.query(AuditQuery(limit=50_000)).limit == 1000

    def test_invalid_filters(self, audit):
        with pytest.raises(ValidationError):
            audit.query(AuditQuery(limit=0))
        with pytest.raises(ValidationError):
            audit.query(AuditQuery(offset=-1))
        with pytest.raises(ValidationError):
            audit.query(AuditQuery(risk_level="apocalyptic"))


class TestReports:
    def test_stats(self, audit):
        audit.append(_event(risk_level="high"))
        audit.append(_event(action_type="data_export", resource_type="audit_log"))
        audit.append(_event(compliance_relevant=False))
        stats = audit.stats(ORG_ID)
        assert stats["total_logs"] == 3
        assert stats["compliance_logs"] == 2
        assert stats["recent_logs"] == 3
        assert stats["risk_levels"] == {"low": 2, "medium": 0, "high": 1, "critical": 0}
        assert stats["top_actions"][0] == {"action_type": "data_view", "count": 2}

    def test_compliance_report_sections(self, audit):
        audit.append(_event(action_type="user_create", resource_type="user", detail={"role": "admin"}))
        audit.append(
            _event(
                action_type="security_event_account_locked",
                resource_type="security",
                detail={"event_type": "account_locked"},
                risk_level="high",
            )
        )
        audit.append(_event(compliance_relevant=False))
        report = audit.compliance_report(ORG_ID)
        summary = report["summary"]
        assert summary["total_compliance_logs"] == 2
        assert summary["user_accounts"] == 1
        assert summary["security_events"] == 1
        assert summary["data_access"] == 0
        assert summary["high_risk_events"] == 1
        assert [e.action_type for e in report["details"]["user_management"]] == ["user_create"]

    def test_user_activity_summary(self, audit):
        audit.append(_event())
        audit.append(_event(risk_level="critical"))
        audit.append(_event(user_id="someone-else"))
        summary = audit.user_activity_summary("user-1", days=7)
        assert summary["total_actions"] == 2
        assert summary["risky_sessions"] == 1
        assert summary["last_activity"] is not None
        with pytest.raises(ValidationError):
            audit.user_activity_summary("user-1", days=0)


class TestCleanup:
    def test_cleanup_keeps_compliance_rows(self, audit, store):
        old = datetime.now(timezone.utc) - timedelta(days=400)
        stale = audit.append(_event(compliance_relevant=False))
        kept = audit.append(_event())
        recent = audit.append(_event(compliance_relevant=False))
        store.audit_logs[stale].timestamp = old
        store.audit_logs[kept].timestamp = old

        assert audit.cleanup_old_logs(retention_days=365) == 1
        assert stale not in store.audit_logs
        assert {kept, recent} <= set(store.audit_logs)

    def test_cleanup_uses_configured_retention(self, audit, store, settings):
        entry = audit.append(_event(compliance_relevant=False))
        store.audit_logs[entry].timestamp = datetime.now(timezone.utc) - timedelta(
            days=settings.audit_retention_days - 1
        )
        assert audit.cleanup_old_logs() == 0
        with pytest.raises(ValidationError):
            audit.cleanup_old_logs(retention_days=0)
