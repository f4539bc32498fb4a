"""Split a debit across credit pools in spend-priority order."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from .errors import InsufficientCredits


@dataclass(frozen=True)
class PoolBreakdown:
    from_monthly: int = 0
    from_rollover: int = 0
    from_purchased: int = 0

    @property
    def total(self) -> int:
        return self.from_monthly + self.from_rollover + self.from_purchased

    def as_deltas(self, sign: int = -1) -> Dict[str, int]:
        return {
            "monthly": sign * self.from_monthly,
            "rollover": sign * self.from_rollover,
            "purchased": sign * self.from_purchased,
        }

    @classmethod
    def from_reservation(cls, reservation: Any) -> "PoolBreakdown":
        return cls(
            from_monthly=int(reservation.from_monthly or 0),
            from_rollover=int(reservation.from_rollover or 0),
            from_purchased=int(reservation.from_purchased or 0),
        )


def available_by_pool(account: Any) -> tuple[int, int, int]:
    """Return (monthly remaining, rollover, purchased) for an ORM account or a snapshot."""
    monthly = max(0, int(account.monthly_remaining or 0))
    rollover = max(0, int(account.rollover_amount or 0))
    purchased = max(0, int(account.purchased_amount or 0))
    return monthly, rollover, purchased


def allocate(amount: int, account: Any) -> PoolBreakdown:
    """Carve ``amount`` out of monthly, then rollover, then purchased.

    A later pool is only touched once every earlier pool is exhausted.
    Raises ``InsufficientCredits`` when the pools together hold less than
    ``amount``; the account is never mutated.
    """
    amount = int(amount)
    if amount <= 0:
        raise ValueError("amount must be positive")

    monthly, rollover, purchased = available_by_pool(account)
    available = monthly + rollover + purchased
    if available < amount:
        raise InsufficientCredits(required=amount, available=available)

    remaining = amount
    take_monthly = min(remaining, monthly)
    remaining -= take_monthly
    take_rollover = min(remaining, rollover)
    remaining -= take_rollover
    take_purchased = min(remaining, purchased)

    return PoolBreakdown(
        from_monthly=take_monthly,
        from_rollover=take_rollover,
        from_purchased=take_purchased,
    )
