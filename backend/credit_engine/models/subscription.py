from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from ..platform.database import Base
from .enums import SubscriptionStatus, value_enum


class Subscription(Base):
    __tablename__ = "subscriptions"

    account_id = Column(Integer, primary_key=True, autoincrement=False)
    status = Column(value_enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.NONE)
    external_subscription_id = Column(String, unique=True, index=True, nullable=True)
    external_customer_id = Column(String, index=True, nullable=True)
    plan_price_id = Column(String, nullable=True)
    monthly_allocation = Column(Integer, nullable=False, default=0)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    # Creation time of the newest billing event applied; older deliveries are stale.
    last_event_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
