"""
Pytest configuration and shared fixtures.

Environment variables are set here before any bridgechat import so the
module-level settings, engine and app pick up the test configuration.
"""

import os

os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["TWILIO_ACCOUNT_SID"] = "ACtest00000000000000000000000000"
os.environ["TWILIO_AUTH_TOKEN"] = "test-auth-token"
os.environ["TWILIO_WEBHOOK_URL"] = "https://bridgechat.test/webhooks/twilio/sms"
os.environ["TWILIO_STATUS_CALLBACK_URL"] = "https://bridgechat.test/webhooks/twilio/status"
os.environ["AUTH_JWT_SECRET"] = "test-jwt-secret"
os.environ["SERVICE_ROLE_KEY"] = "test-service-role-key"

import pytest
from fastapi.testclient import TestClient
from jose import jwt

# Clear settings cache before any app imports to ensure test env vars are used
from bridgechat.config import get_settings
get_settings.cache_clear()

from bridgechat import models  # noqa: E402,F401
from bridgechat import repositories  # noqa: E402
from bridgechat.carrier import SendResult  # noqa: E402
from bridgechat.credentials import UserCredential  # noqa: E402
from bridgechat.domain import SmsParticipantRef  # noqa: E402
from bridgechat.errors import GatewayError  # noqa: E402
from bridgechat.main import app, get_gateway  # noqa: E402
from bridgechat.storage import SessionLocal, Base, engine  # noqa: E402


OWNER_ID = "user-owner"
OWNER_EMAIL = "owner@example.com"
ROUTING_NUMBER = "+14155550100"
SMS_NUMBER = "+14155550111"


class FakeGateway:
    """
    In-memory SmsGateway.

    `outcomes` maps a destination number to the carrier status string to
    return, or to an exception to raise. Unlisted numbers get `default`.
    """

    def __init__(self, default: str = "queued"):
        self.default = default
        self.outcomes = {}
        self.calls = []

    def send_sms(self, from_number, to_number, body, status_callback=None):
        self.calls.append({
            "from": from_number,
            "to": to_number,
            "body": body,
            "status_callback": status_callback,
        })
        outcome = self.outcomes.get(to_number, self.default)
        if isinstance(outcome, Exception):
            raise outcome
        return SendResult(sid=f"SM{len(self.calls):032d}", status=outcome)


def make_token(user_id: str = OWNER_ID, email: str = OWNER_EMAIL, **claims) -> str:
    payload = {"sub": user_id, "email": email, **claims}
    return jwt.encode(payload, os.environ["AUTH_JWT_SECRET"], algorithm="HS256")


def auth_headers(user_id: str = OWNER_ID, email: str = OWNER_EMAIL) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, email)}"}


@pytest.fixture(scope="function")
def db():
    """Fresh schema and a session for each test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture(scope="function")
def client(db, gateway):
    """Test client wired to the fake gateway."""
    app.dependency_overrides[get_gateway] = lambda: gateway
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def owner(db):
    repositories.ensure_profile(db, OWNER_ID, OWNER_EMAIL, "Alice")
    return UserCredential(user_id=OWNER_ID)


@pytest.fixture
def group(db, owner):
    """A group owned by `owner`, bound to ROUTING_NUMBER."""
    return repositories.create_group(db, owner, "Family", ROUTING_NUMBER)


def add_sms_member(db, owner, group_id: str, phone: str = SMS_NUMBER, name: str = "Bob"):
    participant, _ = repositories.find_or_create_sms_participant(db, owner, phone, name)
    repositories.add_member(db, group_id, SmsParticipantRef(sms_participant_id=participant.id))
    return participant


@pytest.fixture
def sms_member(db, owner, group):
    return add_sms_member(db, owner, group.id)


def gateway_failure(message: str = "Carrier API error: HTTP 400") -> GatewayError:
    return GatewayError(message)
