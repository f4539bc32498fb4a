"""End-to-end: subscribe, spend through a reservation, renew, cancel."""

import time

import pytest

from credit_engine.components.ledger.reconciliation import ReconciliationJob
from credit_engine.components.ledger.reservations import ReservationManager
from credit_engine.components.ledger.store import LedgerStore


def _balance(client, headers):
    resp = client.get("/api/v1/credits/balance", headers=headers)
    assert resp.status_code == 200
    return resp.json()


@pytest.mark.e2e
def test_subscription_spend_and_cancellation(client, auth_headers, post_webhook, stripe_helpers):
    headers, user_id = auth_headers()
    store = LedgerStore()
    manager = ReservationManager(store)
    now = int(time.time())
    period_end = now + 30 * 86400

    # Subscribe: 200 monthly credits on top of the signup bonus.
    resp = post_webhook(
        stripe_helpers.event(
            "customer.subscription.created",
            stripe_helpers.subscription(user_id, period_end=period_end),
            created=now - 100,
        )
    )
    assert resp.json()["outcome"] == "applied"
    assert _balance(client, headers)["balance"] == 205

    # Metered call: reserve 10, the pools drop immediately, commit keeps them down.
    reservation = manager.reserve(user_id, 10, description="completion")
    assert (reservation.from_monthly, reservation.from_purchased) == (10, 0)
    assert _balance(client, headers)["balance"] == 195
    manager.commit(reservation.reservation_id)
    assert _balance(client, headers)["balance"] == 195

    # A failed call costs nothing.
    with pytest.raises(TimeoutError):
        with manager.metered(user_id, 20):
            raise TimeoutError("upstream model timed out")
    assert _balance(client, headers)["balance"] == 195

    # Renewal invoice: 190 unused monthly credits roll over, capped at the allocation.
    next_end = period_end + 30 * 86400
    resp = post_webhook(
        stripe_helpers.event(
            "invoice.paid",
            stripe_helpers.invoice(period_end=next_end),
            created=now - 50,
        )
    )
    assert resp.json()["outcome"] == "applied"
    balance = _balance(client, headers)
    assert balance["monthly"]["remaining"] == 200
    assert balance["rollover"]["amount"] == 190
    assert balance["purchased"]["amount"] == 5
    assert balance["balance"] == 395

    # Cancellation discards monthly credits; rollover and purchased remain.
    resp = post_webhook(
        stripe_helpers.event(
            "customer.subscription.deleted",
            stripe_helpers.subscription(user_id, status="canceled", period_end=next_end),
            created=now,
        )
    )
    assert resp.json()["outcome"] == "applied"
    balance = _balance(client, headers)
    assert balance["monthly"]["allocated"] == 0
    assert balance["balance"] == 195
    assert client.get("/api/v1/subscriptions/me", headers=headers).json()["status"] == "canceled"

    # Nothing pending is left for the sweep.
    report = ReconciliationJob(store, manager).run()
    assert report.reservations_expired == 0
    assert report.failures == []

    history = client.get("/api/v1/credits/transactions?limit=200", headers=headers).json()
    kinds = [item["kind"] for item in history["items"]]
    assert kinds.count("grant") == 3
    assert kinds.count("spend") == 2
    assert kinds.count("refund") == 1
    assert history["items"][0]["balance_after"] == 195


@pytest.mark.e2e
def test_purchase_journey(client, auth_headers, post_webhook, stripe_helpers):
    headers, user_id = auth_headers()
    intent = {
        "id": "pi_journey",
        "object": "payment_intent",
        "amount": 2000,
        "currency": "usd",
        "metadata": {"type": "credit_purchase", "account_id": str(user_id), "package_id": "large"},
    }

    resp = post_webhook(stripe_helpers.event("payment_intent.succeeded", intent))

    assert resp.json()["outcome"] == "applied"
    assert _balance(client, headers)["purchased"]["amount"] == 605

    resp = post_webhook(
        stripe_helpers.event(
            "charge.refunded",
            {"id": "ch_journey", "payment_intent": "pi_journey", "amount": 2000, "amount_refunded": 2000},
        )
    )
    assert resp.json()["outcome"] == "applied"
    assert _balance(client, headers)["balance"] == 5
