from sqlalchemy import CheckConstraint, Column, DateTime, Index, Integer, JSON, String
from sqlalchemy.sql import func

from ..platform.database import Base
from .enums import ReservationStatus, value_enum


class Reservation(Base):
    """Two-phase hold on credits bracketing one metered external call."""

    __tablename__ = "reservations"
    __table_args__ = (
        CheckConstraint("amount_reserved > 0", name="ck_reservations_amount_positive"),
        CheckConstraint(
            "amount_reserved = from_monthly + from_rollover + from_purchased",
            name="ck_reservations_breakdown_sum",
        ),
        Index("ix_reservations_status_expires_at", "status", "expires_at"),
    )

    reservation_id = Column(String(36), primary_key=True)
    account_id = Column(Integer, index=True, nullable=False)
    amount_reserved = Column(Integer, nullable=False)
    from_monthly = Column(Integer, nullable=False, default=0)
    from_rollover = Column(Integer, nullable=False, default=0)
    from_purchased = Column(Integer, nullable=False, default=0)
    status = Column(value_enum(ReservationStatus), nullable=False, default=ReservationStatus.PENDING)
    description = Column(String, nullable=True)
    reservation_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
