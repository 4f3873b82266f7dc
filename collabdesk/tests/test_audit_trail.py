"""
Unit tests for the brand reply audit trail.

Covers view de-duplication, per-deal decision versioning, IP handling and
the best-effort failure contract.
"""
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from collabdesk.core.client_info import RequestContext
from collabdesk.db.models import BrandReplyAuditLog
from collabdesk.services.audit_trail import ACTION_SOURCE, AuditMetadata, AuditTrail

CONTEXT = RequestContext(ip_address="192.168.1.42", user_agent="Mozilla/5.0 (Macintosh) Safari/605.1")


def _entries(db, deal_id, action_type=None):
    query = db.query(BrandReplyAuditLog).filter(BrandReplyAuditLog.deal_id == deal_id)
    if action_type:
        query = query.filter(BrandReplyAuditLog.action_type == action_type)
    return query.order_by(BrandReplyAuditLog.id).all()


class TestViewDeduplication:
    def test_second_view_within_window_is_skipped(self, db, clock, token):
        trail = AuditTrail(db, clock)
        trail.record(token.id, token.deal_id, "viewed", CONTEXT)
        clock.advance(minutes=59)
        trail.record(token.id, token.deal_id, "viewed", CONTEXT)

        assert len(_entries(db, token.deal_id, "viewed")) == 1

    def test_view_after_window_is_written(self, db, clock, token):
        trail = AuditTrail(db, clock)
        trail.record(token.id, token.deal_id, "viewed", CONTEXT)
        clock.advance(minutes=59)
        trail.record(token.id, token.deal_id, "viewed", CONTEXT)
        clock.advance(minutes=2)
        trail.record(token.id, token.deal_id, "viewed", CONTEXT)

        assert len(_entries(db, token.deal_id, "viewed")) == 2

    def test_dedup_is_per_token(self, db, clock, deal, make_token):
        first, second = make_token(deal), make_token(deal)
        trail = AuditTrail(db, clock)
        trail.record(first.id, deal.id, "viewed", CONTEXT)
        trail.record(second.id, deal.id, "viewed", CONTEXT)

        assert len(_entries(db, deal.id, "viewed")) == 2

    def test_views_never_carry_a_version(self, db, clock, token):
        trail = AuditTrail(db, clock)
        trail.record(token.id, token.deal_id, "accepted", CONTEXT)
        trail.record(token.id, token.deal_id, "viewed", CONTEXT)

        (view,) = _entries(db, token.deal_id, "viewed")
        assert view.decision_version is None

    def test_decisions_are_never_deduplicated(self, db, clock, token):
        trail = AuditTrail(db, clock)
        trail.record(token.id, token.deal_id, "negotiation_requested", CONTEXT)
        trail.record(token.id, token.deal_id, "updated_response", CONTEXT)

        assert len(_entries(db, token.deal_id)) == 2


class TestDecisionVersioning:
    def test_sequential_decisions_are_numbered_from_one(self, db, clock, token):
        trail = AuditTrail(db, clock)
        actions = ["negotiation_requested", "updated_response", "updated_response", "updated_response"]
        for action in actions:
            trail.record(token.id, token.deal_id, action, CONTEXT)
            clock.advance(seconds=30)

        versions = [e.decision_version for e in _entries(db, token.deal_id)]
        assert versions == [1, 2, 3, 4]

    def test_versions_are_per_deal(self, db, clock, make_deal, make_token):
        first_deal, second_deal = make_deal(), make_deal(brand_name="Other")
        first_token, second_token = make_token(first_deal), make_token(second_deal)
        trail = AuditTrail(db, clock)

        trail.record(first_token.id, first_deal.id, "accepted", CONTEXT)
        trail.record(first_token.id, first_deal.id, "updated_response", CONTEXT)
        trail.record(second_token.id, second_deal.id, "rejected", CONTEXT)

        assert [e.decision_version for e in _entries(db, second_deal.id)] == [1]

    def test_version_collision_is_retried(self, db, clock, token):
        trail = AuditTrail(db, clock)
        trail.record(token.id, token.deal_id, "accepted", CONTEXT)

        # Simulate a concurrent writer that read the same max before us
        with patch.object(trail, "_next_decision_version", side_effect=[1, 2]):
            trail.record(token.id, token.deal_id, "updated_response", CONTEXT)

        versions = [e.decision_version for e in _entries(db, token.deal_id)]
        assert versions == [1, 2]


class TestEntryContents:
    def test_entry_fields(self, db, clock, token):
        AuditTrail(db, clock).record(
            token.id,
            token.deal_id,
            "rejected",
            CONTEXT,
            AuditMetadata(response_status="rejected", brand_team_name="Growth", optional_comment="too restrictive"),
        )

        (entry,) = _entries(db, token.deal_id)
        assert entry.reply_token_id == token.id
        assert entry.action_source == ACTION_SOURCE
        assert entry.ip_address_partial == "192.168.1.xxx"
        assert len(entry.ip_address_hash) == 16
        assert "192.168.1.42" not in entry.ip_address_hash
        assert entry.user_agent == CONTEXT.user_agent
        assert entry.response_status == "rejected"
        assert entry.brand_team_name == "Growth"
        assert entry.optional_comment == "too restrictive"

    def test_ipv6_has_no_partial(self, db, clock, token):
        AuditTrail(db, clock).record(token.id, token.deal_id, "viewed", RequestContext(ip_address="2001:db8::1"))

        (entry,) = _entries(db, token.deal_id)
        assert entry.ip_address_partial is None
        assert entry.ip_address_hash is not None

    def test_history_is_in_write_order(self, db, clock, token):
        trail = AuditTrail(db, clock)
        trail.record(token.id, token.deal_id, "viewed", CONTEXT)
        clock.advance(minutes=5)
        trail.record(token.id, token.deal_id, "accepted", CONTEXT)

        assert [e.action_type for e in trail.history(token.deal_id)] == ["viewed", "accepted"]


class TestFailureContract:
    """Audit failures must never reach the caller."""

    def test_storage_failure_is_swallowed(self, db, clock, token):
        trail = AuditTrail(db, clock)
        with patch.object(db, "commit", side_effect=OperationalError("INSERT", {}, Exception("disk full"))):
            assert trail.record(token.id, token.deal_id, "accepted", CONTEXT) is None

        # Session is still usable afterwards
        trail.record(token.id, token.deal_id, "accepted", CONTEXT)
        assert len(_entries(db, token.deal_id)) == 1

    def test_unknown_action_is_swallowed(self, db, clock, token):
        assert AuditTrail(db, clock).record(token.id, token.deal_id, "teleported", CONTEXT) is None
        assert _entries(db, token.deal_id) == []
