"""
Tests for consent request creation and responses
"""

from datetime import timedelta

import pytest

from consent_gov.consent.models import (
    AuditAction,
    ConsentStatus,
    GrantState,
    RiskCategory,
    RiskEventType,
    RiskLevel,
)
from consent_gov.exceptions import ConflictError, NotFoundError, ValidationError
from support import PURPOSE, FakeClock, audit_actions, make_service, register


class TestCreateRequest:
    """Test request validation and scoring"""

    def setup_method(self):
        self.clock = FakeClock()
        self.service = make_service(self.clock)
        self.service_id = register(self.service, category=RiskCategory.MEDIUM)

    def test_create_pending_request(self):
        result = self.service.create_request(
            "student_1", self.service_id, ["email", "gpa"], PURPOSE, 30
        )

        request = result.request
        assert request.status == ConsentStatus.PENDING
        assert request.requested_fields == ["email", "gpa"]
        assert request.risk_score == result.risk_assessment.risk_score == 36
        assert request.created_at == self.clock()
        assert request.responded_at is None

        pending = self.service.list_pending("student_1")
        assert [r.id for r in pending] == [request.id]
        assert AuditAction.REQUEST_CREATED in audit_actions(self.service, "student_1")

    def test_duplicate_fields_are_collapsed(self):
        result = self.service.create_request(
            "student_1", self.service_id, ["email", "email", "gpa"], PURPOSE, 7
        )
        assert result.request.requested_fields == ["email", "gpa"]

    def test_empty_fields_rejected(self):
        """Scenario: no requested fields"""
        with pytest.raises(ValidationError) as exc_info:
            self.service.create_request("student_1", self.service_id, [], PURPOSE, 7)
        assert exc_info.value.field == "requested_fields"

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            self.service.create_request("student_1", self.service_id,
                                        ["email", "shoe_size"], PURPOSE, 7)
        assert exc_info.value.details["invalid_fields"] == ["shoe_size"]

    def test_field_cap(self):
        service = make_service(self.clock, max_requested_fields=2)
        service_id = register(service)

        with pytest.raises(ValidationError):
            service.create_request("student_1", service_id, ["email", "gpa", "major"], PURPOSE, 7)

    @pytest.mark.parametrize("duration", [0, 366, -1, 2.5, "seven", None, True])
    def test_duration_range(self, duration):
        with pytest.raises(ValidationError) as exc_info:
            self.service.create_request("student_1", self.service_id, ["email"], PURPOSE, duration)
        assert exc_info.value.field == "requested_duration"

    @pytest.mark.parametrize("purpose", ["", "too short", "x" * 1001])
    def test_purpose_length(self, purpose):
        with pytest.raises(ValidationError) as exc_info:
            self.service.create_request("student_1", self.service_id, ["email"], purpose, 7)
        assert exc_info.value.field == "purpose"

    def test_unknown_service(self):
        with pytest.raises(NotFoundError):
            self.service.create_request("student_1", "svc_missing", ["email"], PURPOSE, 7)

    def test_inactive_service(self):
        self.service.set_service_active(self.service_id, False)

        with pytest.raises(NotFoundError):
            self.service.create_request("student_1", self.service_id, ["email"], PURPOSE, 7)

    def test_second_pending_request_conflicts(self):
        first = self.service.create_request("student_1", self.service_id, ["email"], PURPOSE, 7)

        with pytest.raises(ConflictError) as exc_info:
            self.service.create_request("student_1", self.service_id, ["gpa"], PURPOSE, 7)
        assert exc_info.value.details["request_id"] == first.request.id

        # Other students are unaffected
        self.service.create_request("student_2", self.service_id, ["gpa"], PURPOSE, 7)

    def test_existing_grants_raise_score(self):
        for i in range(4):
            other = register(self.service, name=f"Other {i}")
            created = self.service.create_request("student_1", other, ["email"], PURPOSE, 7)
            self.service.respond(created.request.id, "student_1", "approve")

        result = self.service.create_request("student_1", self.service_id, ["email"], PURPOSE, 1)
        contributions = {f.category.value: f.contribution for f in result.risk_assessment.factors}
        assert contributions["permission_count"] == 2

    def test_student_risk_lookup(self):
        service = make_service(self.clock)
        service.requests.student_risk_lookup = lambda student_id: "HIGH"
        service_id = register(service)

        result = service.create_request("student_1", service_id, ["email"], PURPOSE, 1)
        categories = [f.category.value for f in result.risk_assessment.factors]
        assert "student_risk" in categories
        assert result.request.risk_score == 15

    def test_unknown_student_risk_level_is_ignored(self):
        service = make_service(self.clock)
        service.requests.student_risk_lookup = lambda student_id: "extreme"
        service_id = register(service)

        result = service.create_request("student_1", service_id, ["email"], PURPOSE, 1)
        categories = [f.category.value for f in result.risk_assessment.factors]
        assert "student_risk" not in categories
        assert result.request.risk_score == 5


class TestRespond:
    """Test approve and deny responses"""

    def setup_method(self):
        self.clock = FakeClock()
        self.service = make_service(self.clock)
        self.service_id = register(self.service, category=RiskCategory.MEDIUM)
        created = self.service.create_request(
            "student_1", self.service_id, ["email", "gpa", "phone"], PURPOSE, 30
        )
        self.request = created.request
        self.clock.advance(minutes=10)

    def test_approve_full_request(self):
        result = self.service.respond(self.request.id, "student_1", "approve")

        assert result.request.status == ConsentStatus.APPROVED
        assert result.request.responded_at == self.clock()
        assert result.request.approved_duration == 30
        assert result.request.denied_fields is None
        assert result.grant.approved_fields == ["email", "gpa", "phone"]
        assert result.grant.state == GrantState.ACTIVE
        assert result.risk_event.type == RiskEventType.CONSENT_APPROVED

        actions = audit_actions(self.service, "student_1")
        assert AuditAction.REQUEST_APPROVED in actions
        assert AuditAction.GRANT_CREATED in actions
        assert AuditAction.REQUEST_MODIFIED not in actions

    def test_approve_with_modified_fields(self):
        """Scenario: only the selected subset is granted"""
        result = self.service.respond(self.request.id, "student_1", "approve",
                                      modified_fields=["email"])

        assert result.grant.approved_fields == ["email"]
        assert result.request.denied_fields == ["gpa", "phone"]
        assert AuditAction.REQUEST_MODIFIED in audit_actions(self.service, "student_1")

    def test_approve_keeps_requested_order(self):
        result = self.service.respond(self.request.id, "student_1", "approve",
                                      modified_fields=["phone", "email"])
        assert result.grant.approved_fields == ["email", "phone"]

    def test_approve_with_denied_fields(self):
        result = self.service.respond(self.request.id, "student_1", "approve",
                                      modified_fields=["email", "gpa"],
                                      denied_fields=["gpa"])
        assert result.grant.approved_fields == ["email"]

    def test_approve_with_shorter_duration(self):
        result = self.service.respond(self.request.id, "student_1", "approve",
                                      modified_duration=7)

        assert result.request.approved_duration == 7
        assert result.grant.expires_at == self.clock() + timedelta(days=7)
        assert AuditAction.REQUEST_MODIFIED in audit_actions(self.service, "student_1")

    def test_modified_fields_must_be_subset(self):
        with pytest.raises(ValidationError) as exc_info:
            self.service.respond(self.request.id, "student_1", "approve",
                                 modified_fields=["email", "ssn"])
        assert exc_info.value.field == "modified_fields"

        with pytest.raises(ValidationError) as exc_info:
            self.service.respond(self.request.id, "student_1", "approve",
                                 denied_fields=["ssn"])
        assert exc_info.value.field == "denied_fields"

        # Rejected responses leave the request pending
        assert self.service.list_pending("student_1")[0].id == self.request.id

    def test_nothing_left_to_approve(self):
        with pytest.raises(ValidationError):
            self.service.respond(self.request.id, "student_1", "approve", modified_fields=[])

        with pytest.raises(ValidationError):
            self.service.respond(self.request.id, "student_1", "approve",
                                 denied_fields=["email", "gpa", "phone"])

    def test_invalid_modified_duration(self):
        with pytest.raises(ValidationError) as exc_info:
            self.service.respond(self.request.id, "student_1", "approve", modified_duration=400)
        assert exc_info.value.field == "modified_duration"

    def test_deny(self):
        result = self.service.respond(self.request.id, "student_1", "deny")

        assert result.request.status == ConsentStatus.DENIED
        assert result.request.denied_fields == ["email", "gpa", "phone"]
        assert result.grant is None
        assert result.risk_event.type == RiskEventType.CONSENT_DENIED
        assert self.service.grants.list_all("student_1") == []

        actions = audit_actions(self.service, "student_1")
        assert AuditAction.REQUEST_DENIED in actions
        assert AuditAction.GRANT_CREATED not in actions

    def test_deny_specific_fields(self):
        result = self.service.respond(self.request.id, "student_1", "deny",
                                      denied_fields=["gpa"])
        assert result.request.denied_fields == ["gpa"]

    def test_second_response_conflicts(self):
        """Scenario: responding to a denied request"""
        self.service.respond(self.request.id, "student_1", "deny")

        with pytest.raises(ConflictError) as exc_info:
            self.service.respond(self.request.id, "student_1", "approve")
        assert exc_info.value.current_state == ConsentStatus.DENIED.value

        with pytest.raises(ConflictError):
            self.service.respond(self.request.id, "student_1", "deny")

    def test_approved_request_cannot_be_answered_again(self):
        self.service.respond(self.request.id, "student_1", "approve")

        with pytest.raises(ConflictError):
            self.service.respond(self.request.id, "student_1", "approve")
        assert len(self.service.grants.list_all("student_1")) == 1

    def test_foreign_or_unknown_request(self):
        with pytest.raises(NotFoundError):
            self.service.respond(self.request.id, "student_2", "approve")
        with pytest.raises(NotFoundError):
            self.service.respond("req_missing", "student_1", "approve")

    def test_unknown_action(self):
        with pytest.raises(ValidationError) as exc_info:
            self.service.respond(self.request.id, "student_1", "maybe")
        assert exc_info.value.field == "action"

    def test_action_is_case_insensitive(self):
        result = self.service.respond(self.request.id, "student_1", "APPROVE")
        assert result.request.status == ConsentStatus.APPROVED

    def test_request_expires_with_its_grant(self):
        result = self.service.respond(self.request.id, "student_1", "approve", modified_duration=1)
        self.clock.advance(days=2)
        self.service.process_expired()

        request = self.service.requests.get_request(self.request.id, "student_1")
        assert request.status == ConsentStatus.EXPIRED
        assert request.updated_at == self.clock()
        assert self.service.grants.get(result.grant.id).state == GrantState.EXPIRED

        expired = self.service.list_history("student_1", {"status": "expired"})
        assert [r.id for r in expired.data] == [self.request.id]
        assert self.service.list_history("student_1", {"status": "approved"}).data == []

    def test_request_is_revoked_with_its_grant(self):
        result = self.service.respond(self.request.id, "student_1", "approve")
        self.service.revoke(result.grant.id, "student_1", "No longer needed")

        request = self.service.requests.get_request(self.request.id, "student_1")
        assert request.status == ConsentStatus.REVOKED

        revoked = self.service.list_history("student_1", {"status": "revoked"})
        assert [r.id for r in revoked.data] == [self.request.id]

    def test_revoking_an_expired_grant_revokes_its_request(self):
        result = self.service.respond(self.request.id, "student_1", "approve", modified_duration=1)
        self.clock.advance(days=2)
        self.service.process_expired()
        self.service.revoke(result.grant.id, "student_1", "Cleaning up old access")

        request = self.service.requests.get_request(self.request.id, "student_1")
        assert request.status == ConsentStatus.REVOKED

    def test_stale_approve_reports_stored_status(self, monkeypatch):
        stale = self.request
        self.service.respond(self.request.id, "student_1", "deny")
        monkeypatch.setattr(self.service.requests, "_owned_request",
                            lambda request_id, student_id: stale)

        with pytest.raises(ConflictError) as exc_info:
            self.service.respond(self.request.id, "student_1", "approve")
        assert exc_info.value.details["current_state"] == "denied"
        assert self.service.grants.list_all("student_1") == []

    def test_stale_deny_reports_stored_status(self, monkeypatch):
        stale = self.request
        self.service.respond(self.request.id, "student_1", "approve")
        monkeypatch.setattr(self.service.requests, "_owned_request",
                            lambda request_id, student_id: stale)

        with pytest.raises(ConflictError) as exc_info:
            self.service.respond(self.request.id, "student_1", "deny")
        assert exc_info.value.details["current_state"] == "approved"

    def test_risk_events_are_queued(self):
        self.service.respond(self.request.id, "student_1", "approve")

        events = self.service.drain_risk_events()
        assert [e.type for e in events] == [RiskEventType.CONSENT_APPROVED]
        assert events[0].impact == -5
        assert self.service.drain_risk_events() == []


class TestExplanationInput:
    """Test projection for the explanation generator"""

    def test_explanation_input(self):
        service = make_service(FakeClock())
        service_id = register(service, category=RiskCategory.MEDIUM)
        created = service.create_request("student_1", service_id, ["email", "gpa"], PURPOSE, 30)

        explanation = service.get_explanation_input(created.request.id)

        assert explanation.service_name == "Course Planner"
        assert explanation.service_description == "Plans courses"
        assert [f.name for f in explanation.requested_fields] == ["email", "gpa"]
        assert explanation.requested_fields[0].label == "Email Address"
        assert explanation.purpose == PURPOSE
        assert explanation.risk_score == 36
        assert explanation.risk_level == RiskLevel.MEDIUM
        assert explanation.existing_permission_count == 0
        assert explanation.student_risk_level is None

    def test_explanation_for_foreign_request(self):
        service = make_service(FakeClock())
        service_id = register(service)
        created = service.create_request("student_1", service_id, ["email"], PURPOSE, 7)

        with pytest.raises(NotFoundError):
            service.get_explanation_input(created.request.id, student_id="student_2")
