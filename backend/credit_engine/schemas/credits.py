from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, ConfigDict

from ..models.enums import CreditPool, LedgerKind, ReservationStatus


class MonthlyPool(BaseModel):
    allocated: int
    used: int
    remaining: int
    reset_at: Optional[datetime] = None


class RolloverPool(BaseModel):
    amount: int
    expires_at: Optional[datetime] = None


class PurchasedPool(BaseModel):
    amount: int


class CreditAccountSnapshot(BaseModel):
    """Point-in-time view of an account's pools; detached from the session."""

    account_id: int
    balance: int
    monthly: MonthlyPool
    rollover: RolloverPool
    purchased: PurchasedPool
    lifetime_earned: int = 0
    lifetime_spent: int = 0
    version: int = 0

    # Attribute names the spend prioritizer reads, so snapshots and ORM rows are interchangeable.
    @property
    def monthly_remaining(self) -> int:
        return self.monthly.remaining

    @property
    def rollover_amount(self) -> int:
        return self.rollover.amount

    @property
    def purchased_amount(self) -> int:
        return self.purchased.amount

    @classmethod
    def from_account(cls, account) -> "CreditAccountSnapshot":
        allocated = int(account.monthly_allocated or 0)
        used = int(account.monthly_used or 0)
        return cls(
            account_id=account.account_id,
            balance=int(account.balance or 0),
            monthly=MonthlyPool(
                allocated=allocated,
                used=used,
                remaining=allocated - used,
                reset_at=account.monthly_reset_at,
            ),
            rollover=RolloverPool(
                amount=int(account.rollover_amount or 0),
                expires_at=account.rollover_expires_at,
            ),
            purchased=PurchasedPool(amount=int(account.purchased_amount or 0)),
            lifetime_earned=int(account.lifetime_earned or 0),
            lifetime_spent=int(account.lifetime_spent or 0),
            version=int(account.version or 0),
        )


class ReservationRead(BaseModel):
    reservation_id: str
    account_id: int
    amount_reserved: int
    from_monthly: int
    from_rollover: int
    from_purchased: int
    status: ReservationStatus
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="reservation_metadata")
    created_at: Optional[datetime] = None
    expires_at: datetime
    resolved_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class LedgerTransactionRead(BaseModel):
    id: int
    account_id: int
    delta: int
    balance_after: int
    kind: LedgerKind
    pool: Optional[CreditPool] = None
    breakdown: Optional[Dict[str, int]] = None
    related_reservation_id: Optional[str] = None
    related_event_id: Optional[str] = None
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="entry_metadata")
    created_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class TransactionPage(BaseModel):
    items: List[LedgerTransactionRead]
    total: int
    limit: int
    offset: int


class CreditPackage(BaseModel):
    package_id: str
    credits: int
    amount_minor: int
    currency: str
    label: str


class CreditPurchaseRequest(BaseModel):
    package_id: str = Field(min_length=1, max_length=64)


class CreditPurchaseResponse(BaseModel):
    package: CreditPackage
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
