"""
Shared fixtures.

Tests run against in-memory SQLite through the same SQLAlchemy models,
with a controllable clock and recording fakes for the job queue and email.
"""
import os

# Must be set before anything imports collabdesk.core.config
os.environ["DEBUG"] = "true"
os.environ["ENVIRONMENT"] = "test"
os.environ["SECRET_KEY"] = "test-secret-key-0123456789abcdef0123456789abcdef0123456789abcdef"
os.environ["DATABASE_URL"] = "sqlite://"

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from collabdesk.core.dependencies import get_clock, get_dispatcher, get_email_client
from collabdesk.core.security import create_access_token
from collabdesk.db import models
from collabdesk.db.session import Base, SessionLocal, engine, get_db
from collabdesk.services.email_client import EmailResult
from collabdesk.workers.jobs import JobDispatcher


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class RecordingDispatcher(JobDispatcher):
    def __init__(self, fail: bool = False):
        self.calls = []
        self.fail = fail

    def _record(self, name, deal_id):
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.calls.append((name, deal_id))

    def enqueue_invoice_generation(self, deal_id):
        self._record("invoice", deal_id)

    def enqueue_contract_generation(self, deal_id):
        self._record("contract", deal_id)

    def enqueue_brand_signed_emails(self, deal_id):
        self._record("brand_signed_emails", deal_id)

    def enqueue_creator_signed_emails(self, deal_id):
        self._record("creator_signed_emails", deal_id)


class StubEmailClient:
    def __init__(self, succeed: bool = True):
        self.sent = []
        self.succeed = succeed

    def send_email(self, to, subject, html):
        self.sent.append({"to": to, "subject": subject, "html": html})
        if self.succeed:
            return EmailResult(success=True, email_id=f"email-{len(self.sent)}")
        return EmailResult(success=False, error="provider down")


# ============= INFRASTRUCTURE =============

@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def failing_dispatcher():
    return RecordingDispatcher(fail=True)


@pytest.fixture
def email_client():
    return StubEmailClient()


@pytest.fixture
def failing_email_client():
    return StubEmailClient(succeed=False)


@pytest.fixture
def client(db, clock, dispatcher, email_client):
    from collabdesk.main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_email_client] = lambda: email_client
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


# ============= FACTORIES =============

@pytest.fixture
def creator(db):
    creator = models.Creator(
        id=str(uuid.uuid4()),
        email="maya@example.com",
        first_name="Maya",
        last_name="Rao",
    )
    db.add(creator)
    db.commit()
    return creator


@pytest.fixture
def make_deal(db, creator):
    def _make(**fields):
        values = {
            "creator_id": creator.id,
            "brand_name": "Glow Labs",
            "brand_email": "partnerships@glowlabs.com",
            "deal_amount": 1500.0,
            "deliverables": '["1x Reel on Instagram", "2x Story"]',
            "deal_type": "paid",
            "brand_response_status": "pending",
            "creator_requested_clarifications": False,
        }
        values.update(fields)
        deal = models.Deal(**values)
        db.add(deal)
        db.commit()
        return deal
    return _make


@pytest.fixture
def deal(make_deal):
    return make_deal()


@pytest.fixture
def make_token(db, clock):
    def _make(deal, expires_in=timedelta(days=7), is_active=True, revoked=False):
        token = models.ReplyToken(
            id=str(uuid.uuid4()),
            deal_id=deal.id,
            is_active=is_active,
            expires_at=clock() + expires_in if expires_in is not None else None,
            revoked_at=clock() if revoked else None,
            created_at=clock(),
        )
        db.add(token)
        db.commit()
        return token
    return _make


@pytest.fixture
def token(deal, make_token):
    return make_token(deal)


@pytest.fixture
def auth_headers(creator):
    return {"Authorization": f"Bearer {create_access_token({'sub': creator.id})}"}
