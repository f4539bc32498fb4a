from sqlalchemy import CheckConstraint, Column, DateTime, Integer
from sqlalchemy.sql import func

from ..platform.database import Base


class CreditAccount(Base):
    """Per-user credit balance split across monthly, rollover and purchased pools."""

    __tablename__ = "credit_accounts"
    __table_args__ = (
        CheckConstraint("monthly_allocated >= 0", name="ck_credit_accounts_monthly_allocated_nonneg"),
        CheckConstraint("monthly_used >= 0", name="ck_credit_accounts_monthly_used_nonneg"),
        CheckConstraint("monthly_used <= monthly_allocated", name="ck_credit_accounts_monthly_used_le_allocated"),
        CheckConstraint("rollover_amount >= 0", name="ck_credit_accounts_rollover_nonneg"),
        CheckConstraint("purchased_amount >= 0", name="ck_credit_accounts_purchased_nonneg"),
        CheckConstraint(
            "balance = (monthly_allocated - monthly_used) + rollover_amount + purchased_amount",
            name="ck_credit_accounts_balance_sum",
        ),
    )

    # Same value as the owning user's id.
    account_id = Column(Integer, primary_key=True, autoincrement=False)

    monthly_allocated = Column(Integer, nullable=False, default=0)
    monthly_used = Column(Integer, nullable=False, default=0)
    monthly_reset_at = Column(DateTime(timezone=True), nullable=True, index=True)

    rollover_amount = Column(Integer, nullable=False, default=0)
    rollover_expires_at = Column(DateTime(timezone=True), nullable=True, index=True)

    purchased_amount = Column(Integer, nullable=False, default=0)

    balance = Column(Integer, nullable=False, default=0)
    lifetime_earned = Column(Integer, nullable=False, default=0)
    lifetime_spent = Column(Integer, nullable=False, default=0)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __mapper_args__ = {"version_id_col": version}

    @property
    def monthly_remaining(self) -> int:
        return int(self.monthly_allocated or 0) - int(self.monthly_used or 0)

    def pool_total(self) -> int:
        return self.monthly_remaining + int(self.rollover_amount or 0) + int(self.purchased_amount or 0)

    def recompute_balance(self) -> int:
        self.balance = self.pool_total()
        return self.balance
