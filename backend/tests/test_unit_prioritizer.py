"""Unit tests for spend-priority allocation across credit pools."""

from types import SimpleNamespace

import pytest

from credit_engine.components.ledger.errors import InsufficientCredits
from credit_engine.components.ledger.prioritizer import PoolBreakdown, allocate
from credit_engine.schemas.credits import CreditAccountSnapshot, MonthlyPool, PurchasedPool, RolloverPool


def _account(monthly=0, rollover=0, purchased=0):
    return SimpleNamespace(monthly_remaining=monthly, rollover_amount=rollover, purchased_amount=purchased)


def test_monthly_then_rollover_then_purchased():
    breakdown = allocate(10, _account(monthly=5, rollover=50, purchased=25))
    assert breakdown == PoolBreakdown(from_monthly=5, from_rollover=5, from_purchased=0)


def test_monthly_covers_whole_debit():
    breakdown = allocate(10, _account(monthly=200, rollover=50, purchased=25))
    assert breakdown == PoolBreakdown(from_monthly=10)


def test_falls_through_to_purchased_when_earlier_pools_empty():
    breakdown = allocate(30, _account(monthly=0, rollover=10, purchased=25))
    assert breakdown == PoolBreakdown(from_monthly=0, from_rollover=10, from_purchased=20)


def test_exact_balance_drains_all_pools():
    breakdown = allocate(80, _account(monthly=5, rollover=50, purchased=25))
    assert breakdown.total == 80
    assert (breakdown.from_monthly, breakdown.from_rollover, breakdown.from_purchased) == (5, 50, 25)


def test_insufficient_reports_required_and_available():
    with pytest.raises(InsufficientCredits) as exc_info:
        allocate(81, _account(monthly=5, rollover=50, purchased=25))
    assert exc_info.value.required == 81
    assert exc_info.value.available == 80


@pytest.mark.parametrize("amount", [0, -3])
def test_non_positive_amount_rejected(amount):
    with pytest.raises(ValueError):
        allocate(amount, _account(monthly=10))


def test_accepts_snapshot():
    snapshot = CreditAccountSnapshot(
        account_id=1,
        balance=17,
        monthly=MonthlyPool(allocated=10, used=8, remaining=2),
        rollover=RolloverPool(amount=5),
        purchased=PurchasedPool(amount=10),
    )
    breakdown = allocate(9, snapshot)
    assert breakdown == PoolBreakdown(from_monthly=2, from_rollover=5, from_purchased=2)


def test_breakdown_deltas_are_signed():
    breakdown = PoolBreakdown(from_monthly=1, from_rollover=2, from_purchased=3)
    assert breakdown.as_deltas() == {"monthly": -1, "rollover": -2, "purchased": -3}
    assert breakdown.as_deltas(1) == {"monthly": 1, "rollover": 2, "purchased": 3}
