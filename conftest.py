"""
Pytest configuration and shared fixtures.

Environment variables are set before any connect_sms import so the cached
settings, and the engine built from them, point at the test database.
Twilio is replaced by FakeSmsProvider through a dependency override.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import List, Optional

os.environ["DATABASE_URL"] = os.environ.get("TEST_DATABASE_URL", "sqlite:///./test_connect_sms.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ["TWILIO_ACCOUNT_SID"] = ""
os.environ["TWILIO_AUTH_TOKEN"] = ""

import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from connect_sms.config import get_settings
get_settings.cache_clear()

from connect_sms import models  # noqa: E402,F401  registers tables
from connect_sms.main import app  # noqa: E402
from connect_sms.models import Church, Member, Visitor  # noqa: E402
from connect_sms.sms_provider import ProviderMessage, SmsProviderError, get_sms_provider  # noqa: E402
from connect_sms.storage import Base, SessionLocal, engine  # noqa: E402


CHURCH_NUMBER = "+15550001111"
BASE_TIME = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)


class FakeSmsProvider:
    """In-memory stand-in for TwilioSmsProvider."""

    def __init__(self):
        self.from_number = CHURCH_NUMBER
        self.history: List[ProviderMessage] = []
        self.sent: List[ProviderMessage] = []
        self.error: Optional[str] = None

    def add_history(self, sid: str, from_: str, to: str, body: str, minutes: int = 0) -> ProviderMessage:
        message = ProviderMessage(
            sid=sid,
            body=body,
            from_=from_,
            to=to,
            direction="inbound" if to == CHURCH_NUMBER else "outbound-api",
            status="received" if to == CHURCH_NUMBER else "delivered",
            date_sent=BASE_TIME + timedelta(minutes=minutes),
        )
        self.history.append(message)
        return message

    def send(self, to: str, body: str) -> ProviderMessage:
        if self.error:
            raise SmsProviderError(self.error)
        message = ProviderMessage(
            sid=f"SMout{len(self.sent) + 1}",
            body=body,
            from_=self.from_number,
            to=to,
            direction="outbound-api",
            status="queued",
            date_sent=None,
        )
        self.sent.append(message)
        return message

    def list_messages(self, to=None, from_=None, limit=20) -> List[ProviderMessage]:
        if self.error:
            raise SmsProviderError(self.error)
        matches = [
            m for m in self.history
            if (to is None or m.to == to) and (from_ is None or m.from_ == from_)
        ]
        return matches[:limit]


@pytest.fixture
def sms_provider() -> FakeSmsProvider:
    return FakeSmsProvider()


@pytest.fixture(scope="function")
def client(sms_provider):
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)
    app.dependency_overrides[get_sms_provider] = lambda: sms_provider

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(client):
    """Session on the same database the client writes to."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def add_church(db, church_id: str, minutes: int = 0) -> Church:
    church = Church(id=church_id, name=church_id, created_at=BASE_TIME + timedelta(minutes=minutes))
    db.add(church)
    db.commit()
    return church


def add_member(db, member_id: str, church_id: str, phone: str) -> Member:
    member = Member(id=member_id, church_id=church_id, phone=phone, name=member_id)
    db.add(member)
    db.commit()
    return member


def add_visitor(db, visitor_id: str, church_id: str, phone: str) -> Visitor:
    visitor = Visitor(id=visitor_id, church_id=church_id, phone=phone, name=visitor_id)
    db.add(visitor)
    db.commit()
    return visitor
