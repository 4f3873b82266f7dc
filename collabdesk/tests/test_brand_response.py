"""
Tests for the Brand Response Handler: the public deal view and decision
submission, through the service and over HTTP.
"""
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from collabdesk.core.client_info import RequestContext
from collabdesk.core.errors import InfrastructureError, LinkUnavailableError, RequestValidationError
from collabdesk.core.errors import LINK_EXPIRED_MESSAGE, LINK_INVALID_MESSAGE
from collabdesk.db.models import (
    AnalysisReport,
    AnalyticsEvent,
    AuditAction,
    BrandReplyAuditLog,
    Deal,
    ProtectionIssue,
)
from collabdesk.services.brand_response import BrandResponseService

CONTEXT = RequestContext(ip_address="203.0.113.10", user_agent="Mozilla/5.0 Chrome/120.0")

COMPLETE_ANALYSIS = {
    "keyTerms": {
        "usageRights": "6 months organic",
        "exclusivity": "None",
        "paymentSchedule": "Net 30",
        "termination": "7 days notice",
    },
    "issues": [],
}
SAFE_SCHEMA = {"payment_method": "bank_transfer", "payment_terms": "Net 30"}

NO_SUCH_COLUMN = OperationalError("SELECT", {}, Exception("no such column: deals.signed_contract_url"))


def _audit(db, deal_id):
    return (
        db.query(BrandReplyAuditLog)
        .filter(BrandReplyAuditLog.deal_id == deal_id)
        .order_by(BrandReplyAuditLog.id)
        .all()
    )


@pytest.fixture
def service(db, clock, dispatcher):
    return BrandResponseService(db, dispatcher, clock)


@pytest.fixture
def report(db, clock):
    report = AnalysisReport(analysis_json=COMPLETE_ANALYSIS)
    db.add(report)
    db.commit()
    return report


@pytest.fixture
def happy_deal(make_deal, report):
    """A deal with nothing that needs brand confirmation."""
    return make_deal(analysis_report_id=report.id, deal_schema=SAFE_SCHEMA)


# ============= DEAL VIEW =============

class TestGetDealView:
    def test_view_returns_display_fields(self, service, deal, token):
        view = service.get_deal_view(token.id, CONTEXT)

        assert view.success is True
        assert view.deal.brand_name == "Glow Labs"
        assert view.deal.response_status == "pending"
        assert view.deal.deal_amount == 1500.0
        assert view.requested_changes == []
        assert view.analysis_data is None

    def test_null_status_defaults_to_pending(self, db, service, deal, token):
        deal.brand_response_status = None
        db.commit()
        assert service.get_deal_view(token.id, CONTEXT).deal.response_status == "pending"

    def test_view_never_exposes_ids(self, service, deal, token):
        payload = service.get_deal_view(token.id, CONTEXT).model_dump_json()
        assert deal.id not in payload
        assert token.id not in payload
        assert deal.creator_id not in payload

    def test_view_records_a_viewed_entry(self, db, service, token):
        service.get_deal_view(token.id, CONTEXT)
        (entry,) = _audit(db, token.deal_id)
        assert entry.action_type == AuditAction.VIEWED.value
        assert entry.decision_version is None

    def test_requested_changes_are_ordered_by_severity_then_age(self, db, clock, service, make_deal, make_token, report):
        deal = make_deal(analysis_report_id=report.id)
        token = make_token(deal)
        issues = [
            ("Late fee missing", "warning", 0),
            ("Unlimited usage rights", "high", 1),
            ("Vague deliverables", "medium", 2),
            ("Perpetual exclusivity", "high", 3),
            ("Typo in clause 4", "low", 4),
        ]
        for title, severity, minutes in issues:
            db.add(ProtectionIssue(
                report_id=report.id,
                title=title,
                severity=severity,
                category="terms",
                description=f"{title} description",
                created_at=clock() + timedelta(minutes=minutes),
            ))
        db.commit()

        view = service.get_deal_view(token.id, CONTEXT)

        assert [c.title for c in view.requested_changes] == [
            "Unlimited usage rights",
            "Perpetual exclusivity",
            "Vague deliverables",
            "Late fee missing",
        ]
        assert set(view.requested_changes[0].model_dump()) == {"title", "severity", "category", "description"}
        assert view.analysis_data == COMPLETE_ANALYSIS

    def test_falls_back_to_safe_columns(self, service, deal, token):
        real_select = service._select_deal
        calls = []

        def flaky_select(deal_id, columns):
            calls.append(len(columns))
            if len(calls) == 1:
                raise NO_SUCH_COLUMN
            return real_select(deal_id, columns)

        with patch.object(service, "_select_deal", side_effect=flaky_select):
            view = service.get_deal_view(token.id, CONTEXT)

        assert len(calls) == 2
        assert view.success is True
        assert view.deal.brand_name == "Glow Labs"
        assert view.deal.signed_contract_url is None

    def test_serves_placeholder_when_every_read_fails(self, service, token):
        with patch.object(service, "_select_deal", side_effect=NO_SUCH_COLUMN):
            view = service.get_deal_view(token.id, CONTEXT)

        assert view.success is True
        assert view.deal.brand_name == "Collaboration"
        assert view.deal.response_status == "pending"
        assert view.deal.deal_amount is None
        assert view.requested_changes == []

    def test_view_survives_audit_failure(self, service, token):
        with patch.object(service.audit, "_write", side_effect=OperationalError("INSERT", {}, Exception("locked"))):
            view = service.get_deal_view(token.id, CONTEXT)
        assert view.success is True

    def test_revoked_token_is_rejected(self, service, deal, make_token):
        revoked = make_token(deal, revoked=True)
        with pytest.raises(LinkUnavailableError) as exc:
            service.get_deal_view(revoked.id, CONTEXT)
        assert exc.value.message == LINK_INVALID_MESSAGE


# ============= CONFIRMATION RULES =============

class TestRequiresConfirmation:
    def test_happy_path_needs_no_confirmation(self, service, happy_deal):
        assert service.requires_confirmation(happy_deal.id) is False

    def test_creator_requested_clarifications(self, db, service, happy_deal):
        happy_deal.creator_requested_clarifications = True
        db.commit()
        assert service.requires_confirmation(happy_deal.id) is True

    def test_high_or_medium_issue(self, db, service, happy_deal, report):
        db.add(ProtectionIssue(report_id=report.id, title="Unlimited usage", severity="medium"))
        db.commit()
        assert service.requires_confirmation(happy_deal.id) is True

    def test_warning_issue_alone_is_fine(self, db, service, happy_deal, report):
        db.add(ProtectionIssue(report_id=report.id, title="Minor", severity="warning"))
        db.commit()
        assert service.requires_confirmation(happy_deal.id) is False

    @pytest.mark.parametrize("term", ["usageRights", "exclusivity", "paymentSchedule", "termination"])
    def test_missing_critical_term(self, db, service, happy_deal, report, term):
        key_terms = dict(COMPLETE_ANALYSIS["keyTerms"], **{term: "Not specified"})
        report.analysis_json = {"keyTerms": key_terms, "issues": []}
        db.commit()
        assert service.requires_confirmation(happy_deal.id) is True

    def test_important_issue_in_analysis_json(self, db, service, happy_deal, report):
        report.analysis_json = dict(COMPLETE_ANALYSIS, issues=[{"title": "x", "severity": "high"}])
        db.commit()
        assert service.requires_confirmation(happy_deal.id) is True

    @pytest.mark.parametrize("schema", [
        {"payment_terms": "Net 30"},
        {"payment_method": "upi"},
        {"paymentMethod": "upi", "paymentTerms": "Unclear"},
        {"payment_method": "upi", "payment_terms": "Not specified"},
    ])
    def test_payment_risk(self, db, service, happy_deal, schema):
        happy_deal.deal_schema = schema
        db.commit()
        assert service.requires_confirmation(happy_deal.id) is True

    def test_negotiating_deal(self, db, service, happy_deal):
        happy_deal.status = "Negotiating"
        db.commit()
        assert service.requires_confirmation(happy_deal.id) is True

    def test_storage_error_defaults_to_true(self, service, happy_deal):
        with patch.object(service, "_needs_confirmation", side_effect=NO_SUCH_COLUMN):
            assert service.requires_confirmation(happy_deal.id) is True


# ============= DECISIONS =============

class TestSubmitDecision:
    def test_invalid_status_is_rejected_before_token_lookup(self, service):
        with patch.object(service.validator, "validate") as validate:
            with pytest.raises(RequestValidationError) as exc:
                service.submit_decision("anything", "maybe", context=CONTEXT)
        validate.assert_not_called()
        assert "accepted, accepted_verified, negotiating, rejected" in exc.value.message

    def test_rejection_updates_deal(self, db, clock, service, deal, token):
        result = service.submit_decision(token.id, "rejected", message="  too restrictive  ", context=CONTEXT)

        assert result.success is True
        assert result.status == "rejected"
        assert result.message == "Brand response saved successfully"
        db.refresh(deal)
        assert deal.brand_response_status == "rejected"
        assert deal.brand_response_message == "too restrictive"
        assert deal.brand_response_ip == "203.0.113.10"
        assert deal.status == "Rejected"
        assert deal.deal_execution_status is None

    def test_blank_message_and_team_are_not_stored(self, db, service, make_deal, make_token):
        deal = make_deal(brand_response_message="earlier note", brand_team_name="Growth")
        token = make_token(deal)
        service.submit_decision(token.id, "negotiating", message="   ", brand_team_name=" ", context=CONTEXT)

        db.refresh(deal)
        assert deal.brand_response_message == "earlier note"
        assert deal.brand_team_name == "Growth"
        assert deal.status == "Negotiating"

    def test_accept_sets_pending_signature_when_unset(self, db, service, deal, token):
        service.submit_decision(token.id, "accepted_verified", context=CONTEXT)
        db.refresh(deal)
        assert deal.status == "Approved"
        assert deal.deal_execution_status == "pending_signature"

    def test_accept_keeps_existing_execution_status(self, db, service, make_deal, make_token):
        deal = make_deal(deal_execution_status="completed")
        token = make_token(deal)
        service.submit_decision(token.id, "accepted_verified", context=CONTEXT)
        db.refresh(deal)
        assert deal.deal_execution_status == "completed"

    def test_first_decision_action_types(self, db, service, make_deal, make_token):
        expected = {
            "accepted": "accepted",
            "accepted_verified": "accepted",
            "negotiating": "negotiation_requested",
            "rejected": "rejected",
        }
        for status, action in expected.items():
            deal = make_deal()
            token = make_token(deal)
            service.submit_decision(token.id, status, context=CONTEXT)
            (entry,) = _audit(db, deal.id)
            assert entry.action_type == action
            assert entry.response_status == status

    def test_resubmission_is_updated_response(self, db, clock, service, deal, token):
        service.submit_decision(token.id, "negotiating", message="lower the exclusivity", context=CONTEXT)
        clock.advance(hours=2)
        service.submit_decision(token.id, "accepted", brand_team_name="Brand Team", context=CONTEXT)
        clock.advance(hours=2)
        service.submit_decision(token.id, "rejected", context=CONTEXT)

        entries = _audit(db, deal.id)
        assert [e.action_type for e in entries] == ["negotiation_requested", "updated_response", "updated_response"]
        assert [e.decision_version for e in entries] == [1, 2, 3]
        assert entries[0].optional_comment == "lower the exclusivity"
        assert entries[1].brand_team_name == "Brand Team"

    def test_accepted_verified_enqueues_invoice(self, service, dispatcher, deal, token):
        service.submit_decision(token.id, "accepted_verified", context=CONTEXT)
        assert ("invoice", deal.id) in dispatcher.calls

    def test_plain_accept_does_not_enqueue_invoice(self, service, dispatcher, deal, token):
        service.submit_decision(token.id, "accepted", context=CONTEXT)
        assert ("invoice", deal.id) not in dispatcher.calls

    @pytest.mark.parametrize("status", ["accepted", "accepted_verified"])
    def test_happy_path_accept_enqueues_contract(self, service, dispatcher, happy_deal, make_token, status):
        token = make_token(happy_deal)
        service.submit_decision(token.id, status, context=CONTEXT)
        assert ("contract", happy_deal.id) in dispatcher.calls

    def test_no_contract_when_confirmation_required(self, db, service, dispatcher, deal, token):
        deal.creator_requested_clarifications = True
        db.commit()
        service.submit_decision(token.id, "accepted", context=CONTEXT)
        assert ("contract", deal.id) not in dispatcher.calls

    @pytest.mark.parametrize("status", ["negotiating", "rejected"])
    def test_no_contract_unless_accepted(self, service, dispatcher, happy_deal, make_token, status):
        token = make_token(happy_deal)
        service.submit_decision(token.id, status, context=CONTEXT)
        assert dispatcher.calls == []

    def test_queue_outage_does_not_fail_decision(self, db, clock, failing_dispatcher, deal, token):
        service = BrandResponseService(db, failing_dispatcher, clock)
        result = service.submit_decision(token.id, "accepted_verified", context=CONTEXT)
        assert result.success is True

    def test_confirmation_required_flags_contract(self, db, service, deal, token):
        deal.creator_requested_clarifications = True
        db.commit()

        result = service.submit_decision(token.id, "accepted", context=CONTEXT)

        assert result.requires_confirmation is True
        db.refresh(deal)
        assert deal.contract_status == "AwaitingClarification"
        event = db.query(AnalyticsEvent).filter(AnalyticsEvent.deal_id == deal.id).one()
        assert event.event_type == "contract_alignment_required"
        assert event.meta_data == {"status": "accepted", "requires_confirmation": True}

    def test_happy_path_leaves_contract_status(self, db, service, happy_deal, make_token):
        token = make_token(happy_deal)
        result = service.submit_decision(token.id, "accepted", context=CONTEXT)

        assert result.requires_confirmation is False
        db.refresh(happy_deal)
        assert happy_deal.contract_status is None

    def test_expired_token_rejected_even_if_active(self, clock, service, token):
        clock.advance(days=30)
        with pytest.raises(LinkUnavailableError) as exc:
            service.submit_decision(token.id, "accepted", context=CONTEXT)
        assert exc.value.message == LINK_EXPIRED_MESSAGE
        assert exc.value.status_code == 403

    def test_save_failure_is_generic_500(self, db, service, deal, token):
        with patch.object(db, "commit", side_effect=OperationalError("UPDATE", {}, Exception("deadlock"))):
            with pytest.raises(InfrastructureError) as exc:
                service.submit_decision(token.id, "rejected", context=CONTEXT)
        assert exc.value.status_code == 500
        assert "deadlock" not in exc.value.message

    def test_audit_failure_does_not_fail_decision(self, db, service, deal, token):
        with patch.object(service.audit, "_write", side_effect=OperationalError("INSERT", {}, Exception("locked"))):
            result = service.submit_decision(token.id, "rejected", context=CONTEXT)
        assert result.status == "rejected"
        assert db.get(Deal, deal.id).brand_response_status == "rejected"


# ============= HTTP =============

class TestBrandResponseApi:
    def test_scenario_reject_then_view(self, client, token):
        response = client.post(f"/api/brand-response/{token.id}", json={"status": "rejected", "message": "too restrictive"})
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["status"] == "rejected"

        view = client.get(f"/api/brand-response/{token.id}").json()
        assert view["deal"]["response_status"] == "rejected"
        assert view["deal"]["response_message"] == "too restrictive"

    def test_revoked_token_get_is_403(self, client, deal, make_token):
        revoked = make_token(deal, revoked=True)
        response = client.get(f"/api/brand-response/{revoked.id}")
        assert response.status_code == 403
        assert response.json() == {"success": False, "error": "This link is no longer valid. Please contact the creator."}

    def test_inactive_token_post_is_rejected_regardless_of_expiry(self, client, deal, make_token):
        inactive = make_token(deal, is_active=False, expires_in=timedelta(days=-3))
        response = client.post(f"/api/brand-response/{inactive.id}", json={"status": "accepted"})
        assert response.status_code == 403
        assert response.json()["error"] == LINK_INVALID_MESSAGE

    def test_expired_token_post(self, client, clock, token):
        clock.advance(days=10)
        response = client.post(f"/api/brand-response/{token.id}", json={"status": "accepted"})
        assert response.status_code == 403
        assert response.json()["error"] == LINK_EXPIRED_MESSAGE

    def test_malformed_token_is_400(self, client):
        response = client.get("/api/brand-response/not-a-uuid")
        assert response.status_code == 400
        assert response.json() == {"success": False, "error": LINK_INVALID_MESSAGE}

    def test_unknown_token_is_404(self, client):
        response = client.get("/api/brand-response/6f1c2a3e-1b2c-4d4e-8f90-123456789abc")
        assert response.status_code == 404
        assert response.json()["error"] == LINK_INVALID_MESSAGE

    def test_invalid_status_is_400(self, client, token):
        response = client.post(f"/api/brand-response/{token.id}", json={"status": "maybe"})
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_missing_body_is_400(self, client, token):
        response = client.post(f"/api/brand-response/{token.id}", json={})
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_view_dedup_over_http(self, client, db, clock, token):
        client.get(f"/api/brand-response/{token.id}")
        clock.advance(minutes=59)
        client.get(f"/api/brand-response/{token.id}")
        assert len([e for e in _audit(db, token.deal_id) if e.action_type == "viewed"]) == 1

        clock.advance(minutes=2)
        client.get(f"/api/brand-response/{token.id}")
        assert len([e for e in _audit(db, token.deal_id) if e.action_type == "viewed"]) == 2

    def test_forwarded_ip_is_hashed_in_audit(self, client, db, token):
        client.post(
            f"/api/brand-response/{token.id}",
            json={"status": "negotiating"},
            headers={"X-Forwarded-For": "198.51.100.23, 10.0.0.1"},
        )
        (entry,) = _audit(db, token.deal_id)
        assert entry.ip_address_partial == "198.51.100.xxx"

    def test_debug_endpoint_in_development(self, client, token):
        response = client.get(f"/api/brand-response/debug/{token.id}")
        assert response.status_code == 200
        body = response.json()
        assert body["token_data"]["deal_id"] == token.deal_id
        assert body["validation"] == "VALID"

    def test_debug_endpoint_disabled_in_production(self, client, token, monkeypatch):
        from collabdesk.core.config import settings

        monkeypatch.setattr(settings, "ENVIRONMENT", "production")
        response = client.get(f"/api/brand-response/debug/{token.id}")
        assert response.status_code == 403
        assert response.json()["success"] is False
