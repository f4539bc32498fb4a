"""Credit balance, history, packages and subscription endpoints."""

from datetime import datetime, timedelta, timezone

from credit_engine.components.subscriptions.state_machine import SUBSCRIPTION_CREATED, SubscriptionEvent
from credit_engine.deps import get_stripe_service


class FakeStripeService:
    def __init__(self, *, fail_payment=False, fail_cancel=False):
        self.fail_payment = fail_payment
        self.fail_cancel = fail_cancel
        self.calls = []

    def create_customer(self, account_id, email):
        self.calls.append(("create_customer", account_id, email))
        return {"success": True, "customer_id": "cus_fake_1"}

    def create_credit_payment_intent(self, account_id, package, customer_id=None):
        self.calls.append(("create_credit_payment_intent", account_id, package["package_id"], customer_id))
        if self.fail_payment:
            return {"success": False, "payment_intent_id": "", "client_secret": ""}
        return {"success": True, "payment_intent_id": "pi_fake_1", "client_secret": "pi_fake_1_secret"}

    def set_cancel_at_period_end(self, subscription_id, flag):
        self.calls.append(("set_cancel_at_period_end", subscription_id, flag))
        return {"success": not self.fail_cancel, "subscription_id": subscription_id}


def _activate(machine, account_id):
    now = datetime.now(timezone.utc)
    machine.apply(
        SubscriptionEvent(
            type=SUBSCRIPTION_CREATED,
            account_id=account_id,
            occurred_at=now,
            event_id="evt_activate",
            status="active",
            external_subscription_id="sub_api_1",
            external_customer_id="cus_api_1",
            price_id="price_plus_monthly",
            current_period_end=now + timedelta(days=30),
        )
    )


# ---------------------------------------------------------------------------
# Balance and history
# ---------------------------------------------------------------------------


def test_endpoints_require_auth(client):
    assert client.get("/api/v1/credits/balance").status_code == 401
    assert client.get("/api/v1/credits/transactions").status_code == 401
    assert client.get("/api/v1/subscriptions/me").status_code == 401


def test_new_user_starts_with_signup_bonus(client, auth_headers):
    headers, user_id = auth_headers()
    resp = client.get("/api/v1/credits/balance", headers=headers)

    assert resp.status_code == 200
    data = resp.json()
    assert data["account_id"] == user_id
    assert data["balance"] == 5
    assert data["purchased"]["amount"] == 5
    assert data["monthly"] == {"allocated": 0, "used": 0, "remaining": 0, "reset_at": None}
    assert data["rollover"]["amount"] == 0


def test_transaction_history(client, auth_headers, store, reservations):
    headers, user_id = auth_headers()
    _ = reservations.reserve(user_id, 2, description="summary call")

    resp = client.get("/api/v1/credits/transactions", headers=headers)

    assert resp.status_code == 200
    page = resp.json()
    assert page["total"] == 2
    assert [item["kind"] for item in page["items"]] == ["spend", "grant"]
    assert page["items"][0]["delta"] == -2
    assert page["items"][0]["balance_after"] == 3
    assert page["items"][0]["breakdown"] == {"monthly": 0, "rollover": 0, "purchased": -2}

    filtered = client.get("/api/v1/credits/transactions?kind=grant&limit=1", headers=headers).json()
    assert filtered["total"] == 1
    assert filtered["limit"] == 1
    assert filtered["items"][0]["description"] == "Signup bonus"


def test_transaction_history_rejects_unknown_kind(client, auth_headers):
    headers, _ = auth_headers()
    resp = client.get("/api/v1/credits/transactions?kind=bogus", headers=headers)
    assert resp.status_code == 422


def test_users_only_see_their_own_ledger(client, auth_headers, store):
    alice, alice_id = auth_headers()
    bob, _ = auth_headers()
    store.admin_adjust(alice_id, 40, "purchased", "support credit")

    assert client.get("/api/v1/credits/balance", headers=alice).json()["balance"] == 45
    assert client.get("/api/v1/credits/balance", headers=bob).json()["balance"] == 5
    assert client.get("/api/v1/credits/transactions", headers=bob).json()["total"] == 1


# ---------------------------------------------------------------------------
# Packages and purchases
# ---------------------------------------------------------------------------


def test_list_packages(client):
    resp = client.get("/api/v1/credits/packages")
    assert resp.status_code == 200
    packages = {p["package_id"]: p for p in resp.json()}
    assert set(packages) == {"small", "medium", "large"}
    assert packages["small"]["credits"] == 100
    assert packages["small"]["amount_minor"] == 500
    assert packages["small"]["currency"] == "usd"


def test_purchase_unknown_package(client, auth_headers):
    headers, _ = auth_headers()
    resp = client.post("/api/v1/credits/purchase", json={"package_id": "huge"}, headers=headers)
    assert resp.status_code == 404


def test_purchase_with_stripe_disabled(client, auth_headers):
    headers, _ = auth_headers()
    resp = client.post("/api/v1/credits/purchase", json={"package_id": "small"}, headers=headers)
    assert resp.status_code == 503


def test_purchase_creates_payment_intent(client, auth_headers, user_by_email, store):
    fake = FakeStripeService()
    client.app.dependency_overrides[get_stripe_service] = lambda: fake
    headers, user_id = auth_headers(email="buyer@test.com")

    resp = client.post("/api/v1/credits/purchase", json={"package_id": "medium"}, headers=headers)

    assert resp.status_code == 200
    data = resp.json()
    assert data["payment_intent_id"] == "pi_fake_1"
    assert data["client_secret"] == "pi_fake_1_secret"
    assert data["package"]["credits"] == 250
    assert fake.calls[0] == ("create_customer", user_id, "buyer@test.com")
    assert fake.calls[1] == ("create_credit_payment_intent", user_id, "medium", "cus_fake_1")
    assert user_by_email("buyer@test.com").stripe_customer_id == "cus_fake_1"
    # Credits arrive with the payment webhook, not here.
    assert store.snapshot(user_id).purchased.amount == 5


def test_purchase_provider_error(client, auth_headers):
    client.app.dependency_overrides[get_stripe_service] = lambda: FakeStripeService(fail_payment=True)
    headers, _ = auth_headers()
    resp = client.post("/api/v1/credits/purchase", json={"package_id": "small"}, headers=headers)
    assert resp.status_code == 502


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


def test_subscription_defaults_to_none(client, auth_headers):
    headers, user_id = auth_headers()
    resp = client.get("/api/v1/subscriptions/me", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "none"
    assert resp.json()["account_id"] == user_id


def test_cancel_requires_active_subscription(client, auth_headers):
    headers, _ = auth_headers()
    resp = client.post("/api/v1/subscriptions/me/cancel", headers=headers)
    assert resp.status_code == 409


def test_cancel_and_resume(client, auth_headers, machine):
    fake = FakeStripeService()
    client.app.dependency_overrides[get_stripe_service] = lambda: fake
    headers, user_id = auth_headers()
    _activate(machine, user_id)

    cancel = client.post("/api/v1/subscriptions/me/cancel", headers=headers)
    assert cancel.status_code == 200
    assert cancel.json()["cancel_at_period_end"] is True
    assert cancel.json()["status"] == "active"

    resume = client.post("/api/v1/subscriptions/me/resume", headers=headers)
    assert resume.json()["cancel_at_period_end"] is False
    assert fake.calls == [
        ("set_cancel_at_period_end", "sub_api_1", True),
        ("set_cancel_at_period_end", "sub_api_1", False),
    ]


def test_cancel_reverted_when_provider_fails(client, auth_headers, machine):
    client.app.dependency_overrides[get_stripe_service] = lambda: FakeStripeService(fail_cancel=True)
    headers, user_id = auth_headers()
    _activate(machine, user_id)

    resp = client.post("/api/v1/subscriptions/me/cancel", headers=headers)

    assert resp.status_code == 502
    assert machine.get(user_id).cancel_at_period_end is False


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["database"] is True
