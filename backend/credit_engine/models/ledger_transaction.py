from sqlalchemy import CheckConstraint, Column, DateTime, Integer, JSON, String, UniqueConstraint, event
from sqlalchemy.sql import func

from ..platform.database import Base
from .enums import CreditPool, LedgerKind, value_enum


class LedgerTransaction(Base):
    """Immutable audit entry; one row per balance-affecting operation."""

    __tablename__ = "ledger_transactions"
    __table_args__ = (
        UniqueConstraint("related_reservation_id", "kind", name="uq_ledger_transactions_reservation_kind"),
        UniqueConstraint("related_event_id", "kind", name="uq_ledger_transactions_event_kind"),
        CheckConstraint("balance_after >= 0", name="ck_ledger_transactions_balance_after_nonneg"),
    )

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, index=True, nullable=False)
    delta = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    kind = Column(value_enum(LedgerKind), nullable=False, index=True)
    pool = Column(value_enum(CreditPool), nullable=True)
    # {"monthly": -5, "rollover": -5, "purchased": 0}
    breakdown = Column(JSON, nullable=True)
    related_reservation_id = Column(String(36), nullable=True, index=True)
    related_event_id = Column(String, nullable=True, index=True)
    description = Column(String, nullable=True)
    entry_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)


class ImmutableLedgerError(RuntimeError):
    pass


@event.listens_for(LedgerTransaction, "before_update")
def _refuse_update(mapper, connection, target):
    raise ImmutableLedgerError(f"ledger transaction {target.id} is append-only")


@event.listens_for(LedgerTransaction, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise ImmutableLedgerError(f"ledger transaction {target.id} is append-only")
