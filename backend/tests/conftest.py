import os
# Override DATABASE_URL before any app imports to avoid PostgreSQL driver requirement
os.environ["DATABASE_URL"] = "sqlite:///./test.db"
# Keep external integrations disabled by default for unit/API tests. Individual
# tests can opt-in by monkeypatching settings.
os.environ["MVP_DISABLE_STRIPE"] = "true"
os.environ["MVP_DISABLE_CELERY"] = "true"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["LEDGER_RETRY_BACKOFF_SECONDS"] = "0.002"

import hashlib
import hmac
import json
import time
import uuid
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from credit_engine.components.billing_events.gateway import WebhookGateway
from credit_engine.components.ledger.reconciliation import ReconciliationJob
from credit_engine.components.ledger.reservations import ReservationManager
from credit_engine.components.ledger.store import LedgerStore
from credit_engine.components.subscriptions.state_machine import SubscriptionStateMachine
from credit_engine.main import app
from credit_engine.models.credit_account import CreditAccount
from credit_engine.models.user import User
from credit_engine.platform.database import Base, SessionLocal, engine
from credit_engine.platform.middleware import _rate_limit_store

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(scope="function")
def db():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    yield db
    db.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db):
    # Clear in-memory rate limit state between tests to prevent 429 bleed-through
    _rate_limit_store.clear()
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    _rate_limit_store.clear()


@pytest.fixture
def store(db):
    return LedgerStore(SessionLocal, max_retries=50, retry_backoff_seconds=0.001)


@pytest.fixture
def reservations(store):
    return ReservationManager(store)


@pytest.fixture
def machine(store):
    return SubscriptionStateMachine(store)


@pytest.fixture
def gateway(store, machine):
    return WebhookGateway(store, machine, webhook_secret=WEBHOOK_SECRET, tolerance_seconds=300)


@pytest.fixture
def job(store, reservations):
    return ReconciliationJob(store, reservations)


# ---------------------------------------------------------------------------
# Account seeding
# ---------------------------------------------------------------------------


@pytest.fixture
def seed_account(db):
    """Write pool state directly, bypassing the ledger. Returns the account id."""

    def _seed(
        account_id: int,
        *,
        allocated: int = 0,
        used: int = 0,
        rollover: int = 0,
        purchased: int = 0,
        reset_at: datetime | None = None,
        rollover_expires_at: datetime | None = None,
    ) -> int:
        session = SessionLocal()
        try:
            account = session.get(CreditAccount, account_id)
            if account is None:
                account = CreditAccount(account_id=account_id, lifetime_earned=0, lifetime_spent=0)
                session.add(account)
            account.monthly_allocated = allocated
            account.monthly_used = used
            account.monthly_reset_at = reset_at
            account.rollover_amount = rollover
            account.rollover_expires_at = rollover_expires_at
            account.purchased_amount = purchased
            account.recompute_balance()
            session.commit()
        finally:
            session.close()
        return account_id

    return _seed


# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def auth_headers(client):
    """Register and log in a user. Returns ``(headers, user_id)``."""

    def _auth(email: str | None = None, password: str = "TestPass123!"):
        email = email or f"user-{uuid.uuid4().hex[:10]}@test.com"
        reg = client.post(
            "/api/v1/auth/register",
            json={"email": email, "password": password, "full_name": "Test User"},
        )
        assert reg.status_code == 201, f"Registration failed: {reg.text}"
        login = client.post(
            "/api/v1/auth/jwt/login",
            data={"username": email, "password": password},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        assert login.status_code == 200, f"Login failed: {login.text}"
        return {"Authorization": f"Bearer {login.json()['access_token']}"}, reg.json()["id"]

    return _auth


@pytest.fixture
def user_by_email(db):
    def _get(email: str):
        session = SessionLocal()
        try:
            return session.query(User).filter(User.email == email).first()
        finally:
            session.close()

    return _get


# ---------------------------------------------------------------------------
# Stripe webhook helpers
# ---------------------------------------------------------------------------


def sign_stripe_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a ``Stripe-Signature`` header the way Stripe signs deliveries."""
    timestamp = int(time.time()) if timestamp is None else int(timestamp)
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def build_event(event_type: str, obj: dict, *, event_id: str | None = None, created: int | None = None) -> dict:
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()) if created is None else int(created),
        "data": {"object": obj},
    }


def subscription_object(
    account_id: int,
    *,
    status: str = "active",
    period_end: int,
    subscription_id: str = "sub_test_1",
    customer_id: str = "cus_test_1",
    price_id: str = "price_plus_monthly",
    cancel_at_period_end: bool = False,
) -> dict:
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "current_period_end": period_end,
        "cancel_at_period_end": cancel_at_period_end,
        "metadata": {"account_id": str(account_id)},
        "items": {"data": [{"price": {"id": price_id}, "current_period_end": period_end}]},
    }


def invoice_object(
    *,
    period_end: int,
    subscription_id: str = "sub_test_1",
    customer_id: str = "cus_test_1",
    price_id: str = "price_plus_monthly",
) -> dict:
    return {
        "id": f"in_{uuid.uuid4().hex[:12]}",
        "object": "invoice",
        "customer": customer_id,
        "subscription": subscription_id,
        "lines": {"data": [{"period": {"end": period_end}, "price": {"id": price_id}}]},
    }


@pytest.fixture
def stripe_helpers():
    """Event builders and the signing helper, as a namespace for tests."""

    class _Helpers:
        secret = WEBHOOK_SECRET
        sign = staticmethod(sign_stripe_payload)
        event = staticmethod(build_event)
        subscription = staticmethod(subscription_object)
        invoice = staticmethod(invoice_object)

        @staticmethod
        def encode(event: dict) -> tuple[bytes, str]:
            raw = json.dumps(event).encode("utf-8")
            return raw, sign_stripe_payload(raw)

    return _Helpers


@pytest.fixture
def post_webhook(client, monkeypatch, stripe_helpers):
    """Enable Stripe and return a function that signs and posts one event."""
    from credit_engine.domains.billing_webhooks import webhook_routes

    monkeypatch.setattr(webhook_routes.settings, "MVP_DISABLE_STRIPE", False)
    monkeypatch.setattr(webhook_routes.settings, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)

    def _post(event: dict, *, signature: str | None = None):
        raw, header = stripe_helpers.encode(event)
        return client.post(
            "/api/v1/webhooks/stripe",
            content=raw,
            headers={"Stripe-Signature": signature or header, "Content-Type": "application/json"},
        )

    return _post
