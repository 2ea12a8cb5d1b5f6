"""
Tests for the consent service facade
"""

from datetime import timedelta

import pytest

from consent_gov.consent.models import (
    AuditAction,
    ConsentStatus,
    GrantState,
    RiskCategory,
    RiskEventType,
)
from consent_gov.consent.policy import DATA_FIELDS
from consent_gov.exceptions import ConflictError, NotFoundError, ValidationError
from support import PURPOSE, FakeClock, audit_actions, make_service, register


class TestServiceRegistry:
    """Test requesting service registration"""

    def setup_method(self):
        self.service = make_service(FakeClock())

    def test_register_defaults_to_medium(self):
        registered = self.service.register_service("Campus Map")

        assert registered.risk_category == RiskCategory.MEDIUM
        assert registered.is_active
        assert self.service.get_service(registered.id) == registered

    def test_register_accepts_category_names(self):
        registered = self.service.register_service("Tutor Match", risk_category="HIGH")
        assert registered.risk_category == RiskCategory.HIGH

    def test_duplicate_name_conflicts(self):
        self.service.register_service("Campus Map")

        with pytest.raises(ConflictError):
            self.service.register_service("Campus Map")

    @pytest.mark.parametrize("name", ["", "   ", None, "x" * 201])
    def test_invalid_name(self, name):
        with pytest.raises(ValidationError) as exc_info:
            self.service.register_service(name)
        assert exc_info.value.field == "name"

    def test_invalid_category(self):
        with pytest.raises(ValidationError) as exc_info:
            self.service.register_service("Campus Map", risk_category="extreme")
        assert exc_info.value.field == "risk_category"

    def test_unknown_service(self):
        with pytest.raises(NotFoundError):
            self.service.get_service("svc_missing")
        with pytest.raises(NotFoundError):
            self.service.set_service_active("svc_missing", False)

    def test_deactivation(self):
        active = register(self.service, name="Active App")
        inactive = register(self.service, name="Retired App")
        self.service.set_service_active(inactive, False)

        assert {s.id for s in self.service.list_services()} == {active, inactive}
        assert [s.id for s in self.service.list_services(active_only=True)] == [active]

        self.service.set_service_active(inactive, True)
        self.service.create_request("student_1", inactive, ["email"], PURPOSE, 7)


class TestAccessAudit:
    """Test that every access decision is audited"""

    def setup_method(self):
        self.clock = FakeClock()
        self.service = make_service(self.clock)
        self.service_id = register(self.service)

    def _approve(self, fields):
        created = self.service.create_request("student_1", self.service_id, fields, PURPOSE, 7)
        return self.service.respond(created.request.id, "student_1", "approve").grant

    def test_denied_without_grant(self):
        result = self.service.check_field_access("student_1", self.service_id, "email")

        assert not result.allowed
        assert AuditAction.ACCESS_DENIED in audit_actions(self.service, "student_1")

    def test_field_outside_grant(self):
        self._approve(["email"])
        result = self.service.check_field_access("student_1", self.service_id, "gpa")

        assert not result.allowed
        assert AuditAction.FIELD_ACCESS_DENIED in audit_actions(self.service, "student_1")

    def test_allowed_access(self):
        grant = self._approve(["email"])

        assert self.service.check_access("student_1", self.service_id, "email")
        logs = self.service.list_audit_logs("student_1", limit=100)
        allowed = [log for log in logs if log.action == AuditAction.ACCESS_ALLOWED]
        assert len(allowed) == 1
        assert allowed[0].grant_id == grant.id
        assert allowed[0].metadata["field"] == "email"

    def test_multi_field_audit(self):
        self._approve(["email"])
        result = self.service.check_multi_field_access("student_1", self.service_id,
                                                       ["email", "ssn"])

        assert result.denied_fields == ["ssn"]
        logs = self.service.list_audit_logs("student_1", limit=100)
        denied = [log for log in logs if log.action == AuditAction.FIELD_ACCESS_DENIED]
        assert denied[0].metadata["denied_fields"] == ["ssn"]

    def test_multi_field_requires_fields(self):
        with pytest.raises(ValidationError):
            self.service.check_multi_field_access("student_1", self.service_id, [])

    def test_invalid_inputs(self):
        with pytest.raises(ValidationError):
            self.service.check_field_access("", self.service_id, "email")
        with pytest.raises(ValidationError):
            self.service.check_field_access("student_1", self.service_id, "")


class TestRevocation:
    """Test revocation through the facade"""

    def setup_method(self):
        self.clock = FakeClock()
        self.service = make_service(self.clock)
        self.service_id = register(self.service, category=RiskCategory.HIGH)
        created = self.service.create_request("student_1", self.service_id,
                                              ["email", "gpa"], PURPOSE, 30)
        self.grant = self.service.respond(created.request.id, "student_1", "approve").grant
        self.service.drain_risk_events()

    def test_revoke_audits_and_emits_event(self):
        result = self.service.revoke(self.grant.id, "student_1", "Graduated")

        assert result.grant.state == GrantState.REVOKED
        assert result.risk_event.type == RiskEventType.CONSENT_REVOKED
        assert result.risk_event.impact == 5
        assert [e.type for e in self.service.drain_risk_events()] == [
            RiskEventType.CONSENT_REVOKED
        ]

        logs = self.service.list_audit_logs("student_1", limit=100)
        revoked = [log for log in logs if log.action == AuditAction.GRANT_REVOKED]
        assert len(revoked) == 1
        assert revoked[0].metadata["reason"] == "Graduated"
        assert revoked[0].grant_id == self.grant.id

    def test_revoked_grant_denies_access(self):
        self.service.revoke(self.grant.id, "student_1", "Graduated")

        assert not self.service.check_access("student_1", self.service_id, "email")
        assert self.service.get_accessible_fields("student_1", self.service_id) == []
        assert self.service.list_active_grants("student_1") == []

    def test_new_request_after_revocation(self):
        self.service.revoke(self.grant.id, "student_1", "Graduated")
        created = self.service.create_request("student_1", self.service_id, ["email"], PURPOSE, 7)
        result = self.service.respond(created.request.id, "student_1", "approve")

        assert result.superseded_grants == []
        assert self.service.check_access("student_1", self.service_id, "email")


class TestHistory:
    """Test filtered and paginated history"""

    def setup_method(self):
        self.clock = FakeClock()
        self.service = make_service(self.clock)
        self.request_ids = []
        for i in range(5):
            service_id = register(self.service, name=f"Service {i}")
            created = self.service.create_request("student_1", service_id, ["email"], PURPOSE, 7)
            self.request_ids.append(created.request.id)
            self.clock.advance(minutes=1)
        self.service.respond(self.request_ids[0], "student_1", "deny")
        self.service.respond(self.request_ids[1], "student_1", "approve")

    def test_default_page(self):
        page = self.service.list_history("student_1")

        assert [r.id for r in page.data] == list(reversed(self.request_ids))
        assert page.pagination.total == 5
        assert page.pagination.total_pages == 1
        assert page.pagination.has_more is False

    def test_pagination(self):
        first = self.service.list_history("student_1", pagination={
            "page": 1, "limit": 2, "sort_by": "created_at", "sort_order": "ASC",
        })
        last = self.service.list_history("student_1", pagination={"page": 3, "limit": 2,
                                                                  "sort_order": "asc"})

        assert [r.id for r in first.data] == self.request_ids[:2]
        assert first.pagination.total_pages == 3
        assert first.pagination.has_more is True
        assert [r.id for r in last.data] == self.request_ids[4:]
        assert last.pagination.has_more is False

    def test_status_filter(self):
        pending = self.service.list_history("student_1", {"status": "pending"})
        assert pending.pagination.total == 3
        assert all(r.status == ConsentStatus.PENDING for r in pending.data)

        answered = self.service.list_history("student_1", {"status": ["approved", "denied"]})
        assert {r.id for r in answered.data} == set(self.request_ids[:2])

    def test_time_filter(self):
        start = FakeClock().now
        page = self.service.list_history("student_1", {
            "created_after": start + timedelta(minutes=3),
        })
        assert {r.id for r in page.data} == set(self.request_ids[3:])

        page = self.service.list_history("student_1", {
            "created_before": start + timedelta(minutes=1),
            "min_risk_score": 0,
            "max_risk_score": 100,
        })
        assert {r.id for r in page.data} == set(self.request_ids[:2])

    def test_empty_history(self):
        page = self.service.list_history("student_9")
        assert page.data == []
        assert page.pagination.total_pages == 0
        assert page.pagination.has_more is False

    @pytest.mark.parametrize("pagination,field", [
        ({"page": 0}, "page"),
        ({"limit": 0}, "limit"),
        ({"limit": 101}, "limit"),
        ({"sort_by": "purpose"}, "sort_by"),
        ({"sort_order": "sideways"}, "sort_order"),
        ({"page": "first"}, "pagination"),
    ])
    def test_invalid_pagination(self, pagination, field):
        with pytest.raises(ValidationError) as exc_info:
            self.service.list_history("student_1", pagination=pagination)
        assert exc_info.value.field == field

    def test_invalid_filter(self):
        with pytest.raises(ValidationError) as exc_info:
            self.service.list_history("student_1", {"min_risk_score": 60, "max_risk_score": 10})
        assert exc_info.value.field == "min_risk_score"

        with pytest.raises(ValidationError) as exc_info:
            self.service.list_history("student_1", {"status": "archived"})
        assert exc_info.value.field == "filter"


class TestAuditTrailQueries:
    """Test audit listing, security events and export"""

    def setup_method(self):
        self.clock = FakeClock()
        self.service = make_service(self.clock)
        self.service_id = register(self.service)

    def test_list_audit_logs_limit(self):
        with pytest.raises(ValidationError):
            self.service.list_audit_logs("student_1", limit=0)
        with pytest.raises(ValidationError):
            self.service.list_audit_logs("student_1", limit=1000)

    def test_record_security_event(self):
        entry = self.service.record_security_event(
            "auth_denied", "student_1", metadata={"token": "abc", "route": "/grants"}
        )

        assert entry.action == AuditAction.AUTH_DENIED
        assert entry.metadata == {"token": "[REDACTED]", "route": "/grants"}
        assert AuditAction.AUTH_DENIED in audit_actions(self.service, "student_1")

    def test_lifecycle_actions_cannot_be_recorded_externally(self):
        with pytest.raises(ValidationError):
            self.service.record_security_event(AuditAction.GRANT_REVOKED, "student_1")

    def test_export(self):
        created = self.service.create_request("student_1", self.service_id, ["email"], PURPOSE, 7)
        self.service.respond(created.request.id, "student_1", "approve")

        export = self.service.export_consent_history("student_1")

        assert export["student_id"] == "student_1"
        assert export["export_timestamp"] == self.clock().isoformat()
        assert [r["id"] for r in export["requests"]] == [created.request.id]
        assert export["requests"][0]["status"] == "approved"
        assert len(export["grants"]) == 1
        assert {a["action"] for a in export["audit_logs"]} >= {
            "request_created", "request_approved", "grant_created",
        }
        assert len(export["field_catalog"]) == len(DATA_FIELDS)

    def test_field_catalog(self):
        catalog = self.service.get_field_catalog()
        assert len(catalog) == len(DATA_FIELDS) == 21

        subset = self.service.get_field_catalog(["gpa"])
        assert [f.name for f in subset] == ["gpa"]

        with pytest.raises(ValidationError):
            self.service.get_field_catalog(["favourite_colour"])

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        service = make_service(FakeClock(), audit_flush_interval_seconds=60)
        await service.start()
        assert service.audit.running

        service_id = register(service)
        service.create_request("student_1", service_id, ["email"], PURPOSE, 7)
        await service.stop()

        assert not service.audit.running
        assert service.audit.pending == 0
        assert service.storage.list_audit_logs("student_1")
