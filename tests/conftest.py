"""
Pytest Configuration and Shared Fixtures

In-memory SQLite store, a scriptable payment gateway and a FastAPI
TestClient wired to both.
"""

import os
import sys
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

# Backend modules use flat imports
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "backend"))

import auth  # noqa: E402
from config import Settings  # noqa: E402
from database import init_db  # noqa: E402
from payment_gateway import CheckoutSession, SessionResult  # noqa: E402
from user_db import Plan, User  # noqa: E402

# bcrypt's minimum cost keeps the suite fast
auth.pwd_context.update(bcrypt__rounds=4)

WEBHOOK_SECRET = "whsec_test"


# ============================================================================
# PAYMENT GATEWAY
# ============================================================================

class FakeGateway:
    """Records calls; results and failures are set per test."""
    provider = "demo"

    def __init__(self):
        self.created = []
        self.results = {}
        self.retrieve_calls = 0
        self.fail_create = None
        self.fail_retrieve = None

    def create_checkout_session(self, amount, currency, buyer_info, callback_url, reference_id):
        if self.fail_create is not None:
            raise self.fail_create
        handle = f"plink_test_{len(self.created) + 1}"
        self.created.append({
            "amount": amount, "currency": currency, "buyer_info": buyer_info,
            "callback_url": callback_url, "reference_id": reference_id, "handle": handle,
        })
        return CheckoutSession(session_handle=handle, redirect_url=f"https://rzp.io/i/{handle}")

    def retrieve_session_result(self, session_handle):
        self.retrieve_calls += 1
        if self.fail_retrieve is not None:
            raise self.fail_retrieve
        return self.results.get(
            session_handle,
            SessionResult(succeeded=True, provider_status="PAID",
                          provider_metadata={"paymentId": "pay_123", "method": "card"}),
        )

    def decline(self, handle, status="EXPIRED"):
        self.results[handle] = SessionResult(succeeded=False, provider_status=status)

    def hold(self, handle, status="CREATED"):
        """Link exists but the customer has not paid yet."""
        self.results[handle] = SessionResult(succeeded=False, provider_status=status, pending=True)

    def settle(self, handle):
        self.results.pop(handle, None)


# ============================================================================
# DATABASE
# ============================================================================

@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return init_db(engine=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(session_factory):
    """Create a user in its own session and return its id."""
    counter = {"n": 0}

    def _make(plan=Plan.free, email=None, password="secret123", name="Test User", **fields):
        counter["n"] += 1
        with session_factory() as s:
            user = auth.create_user(s, email or f"user{counter['n']}@acme.io", password, name)
            user.plan = plan
            for key, value in fields.items():
                setattr(user, key, value)
            s.commit()
            return user.id

    return _make


@pytest.fixture
def load(session_factory):
    """Fresh read of a row, independent of any session the app used."""
    def _load(model, ident):
        with session_factory() as s:
            return s.get(model, ident)
    return _load


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


# ============================================================================
# FASTAPI TEST CLIENT
# ============================================================================

@pytest.fixture
def settings():
    return Settings(
        jwt_secret_key="test-secret",
        frontend_url="https://app.acme.io",
        razorpay_webhook_secret=WEBHOOK_SECRET,
        rate_limit_enabled=False,
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def app(settings, session_factory, gateway):
    from main import create_app
    return create_app(settings, session_factory=session_factory, gateway=gateway)


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient
    return TestClient(app)


@pytest.fixture
def auth_headers(app, session_factory):
    def _headers(user_id):
        with session_factory() as s:
            user = s.get(User, user_id)
            token = app.state.token_issuer.issue(user.id, user.email)
        return {"Authorization": f"Bearer {token}"}
    return _headers
