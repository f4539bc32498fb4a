"""Unit tests for the reconciliation sweep."""

from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from credit_engine.components.ledger.prioritizer import PoolBreakdown
from credit_engine.components.ledger.reservations import ReservationManager
from credit_engine.models.enums import LedgerKind, ReservationStatus
from credit_engine.models.ledger_transaction import LedgerTransaction
from credit_engine.platform.database import SessionLocal
from credit_engine.shared.utils import add_one_month, ensure_utc


def _kinds(account_id):
    db = SessionLocal()
    try:
        rows = db.execute(
            select(LedgerTransaction.kind)
            .where(LedgerTransaction.account_id == account_id)
            .order_by(LedgerTransaction.id)
        ).scalars()
        return [kind for kind in rows]
    finally:
        db.close()


def test_monthly_reset_moves_unused_into_rollover(store, job, seed_account):
    now = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
    seed_account(1, allocated=200, used=80, purchased=10, reset_at=now - timedelta(hours=1))

    report = job.run(now=now)

    assert report.accounts_reset == 1
    assert report.credits_rolled_over == 120
    snapshot = store.snapshot(1)
    assert snapshot.monthly.used == 0
    assert snapshot.monthly.remaining == 200
    assert snapshot.rollover.amount == 120
    assert ensure_utc(snapshot.rollover.expires_at) == datetime(2026, 11, 18, 12, 0, tzinfo=timezone.utc)
    assert ensure_utc(snapshot.monthly.reset_at) == datetime(2026, 11, 18, 11, 0, tzinfo=timezone.utc)
    assert snapshot.balance == 330
    assert _kinds(1) == [LedgerKind.ROLLOVER, LedgerKind.MONTHLY_RESET]


def test_rollover_never_exceeds_allocation(store, job, seed_account):
    now = datetime(2026, 10, 18, tzinfo=timezone.utc)
    # 300 carried from earlier plus 200 unused this period: 500 unused in total.
    seed_account(
        2,
        allocated=200,
        rollover=300,
        reset_at=now - timedelta(days=65),
        rollover_expires_at=now + timedelta(days=5),
    )

    for _ in range(3):
        job.run(now=now)
        assert store.snapshot(2).rollover.amount <= 200

    snapshot = store.snapshot(2)
    assert snapshot.rollover.amount == 200
    assert snapshot.monthly.remaining == 200
    assert snapshot.balance == 400


def test_reset_not_due_is_untouched(store, job, seed_account):
    now = datetime(2026, 10, 18, tzinfo=timezone.utc)
    seed_account(3, allocated=200, used=5, reset_at=now + timedelta(days=1))

    report = job.run(now=now)

    assert report.accounts_reset == 0
    assert store.snapshot(3).monthly.used == 5
    assert _kinds(3) == []


def test_expired_reservation_is_restored_exactly(store, seed_account):
    from credit_engine.components.ledger.reconciliation import ReconciliationJob

    seed_account(4, allocated=5, rollover=50, purchased=25)
    manager = ReservationManager(store, ttl_seconds=1)
    reservation = manager.reserve(4, 70)
    assert (reservation.from_monthly, reservation.from_rollover, reservation.from_purchased) == (5, 50, 15)

    report = ReconciliationJob(store, manager).run(now=datetime.now(timezone.utc) + timedelta(minutes=5))

    assert report.reservations_expired == 1
    assert manager.get(reservation.reservation_id).status == ReservationStatus.EXPIRED
    snapshot = store.snapshot(4)
    assert snapshot.monthly.remaining == 5
    assert snapshot.rollover.amount == 50
    assert snapshot.purchased.amount == 25


def test_reservation_sweep_skips_live_reservations(store, job, reservations, seed_account):
    seed_account(5, allocated=20)
    reservation = reservations.reserve(5, 3)

    report = job.run_reservation_sweep(now=datetime.now(timezone.utc))

    assert report.reservations_expired == 0
    assert reservations.get(reservation.reservation_id).status == ReservationStatus.PENDING


def test_rollover_expiry_zeroes_pool(store, job, seed_account):
    now = datetime(2026, 10, 18, tzinfo=timezone.utc)
    seed_account(6, rollover=40, purchased=2, rollover_expires_at=now - timedelta(seconds=1))

    report = job.run(now=now)

    assert report.rollovers_expired == 1
    assert report.credits_expired == 40
    snapshot = store.snapshot(6)
    assert snapshot.rollover.amount == 0
    assert snapshot.rollover.expires_at is None
    assert snapshot.balance == 2
    assert _kinds(6) == [LedgerKind.EXPIRE]


def test_failure_on_one_account_does_not_abort_sweep(store, job, seed_account, monkeypatch):
    now = datetime(2026, 10, 18, tzinfo=timezone.utc)
    seed_account(7, allocated=100, reset_at=now - timedelta(days=1))
    seed_account(8, allocated=100, used=100, reset_at=now - timedelta(days=1))

    original = job.reset_account

    def flaky(account_id, when):
        if account_id == 7:
            raise RuntimeError("boom")
        return original(account_id, when)

    monkeypatch.setattr(job, "reset_account", flaky)
    report = job.run(now=now)

    assert report.accounts_reset == 1
    assert report.failures and report.failures[0]["ref"] == "7"
    assert store.snapshot(8).monthly.used == 0


def test_renewal_grant_after_reset_keeps_spending_in_the_period(store, job):
    period_one = datetime(2026, 9, 1, tzinfo=timezone.utc)
    period_two = add_one_month(period_one)
    store.grant_monthly(1, 200, period_one)
    store.debit(1, 30, PoolBreakdown(from_monthly=30), related_reservation_id="before-reset")

    job.run(now=period_one + timedelta(hours=1))
    store.debit(1, 50, PoolBreakdown(from_monthly=50), related_reservation_id="after-reset")
    entry = store.grant_monthly(1, 200, period_two)

    assert entry.delta == 0
    snapshot = store.snapshot(1)
    assert snapshot.monthly.allocated == 200
    assert snapshot.monthly.used == 50
    assert snapshot.rollover.amount == 170
    assert snapshot.balance == 320
    assert ensure_utc(snapshot.monthly.reset_at) == period_two
    assert store.grant_monthly(1, 200, period_two).id == entry.id


def test_plan_change_after_reset_only_moves_the_allocation(store, job):
    period_one = datetime(2026, 9, 1, tzinfo=timezone.utc)
    store.grant_monthly(1, 200, period_one)
    job.run(now=period_one + timedelta(hours=1))
    store.debit(1, 50, PoolBreakdown(from_monthly=50), related_reservation_id="after-reset")

    entry = store.grant_monthly(1, 300, add_one_month(period_one))

    assert entry.delta == 100
    assert entry.metadata["previous_allocation"] == 200
    snapshot = store.snapshot(1)
    assert snapshot.monthly.allocated == 300
    assert snapshot.monthly.used == 50
    assert snapshot.monthly.remaining == 250
