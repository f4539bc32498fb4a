from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

from ..models.enums import SubscriptionStatus


class SubscriptionRead(BaseModel):
    account_id: int
    status: SubscriptionStatus
    external_subscription_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    plan_price_id: Optional[str] = None
    monthly_allocation: int = 0
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    last_event_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class WebhookAck(BaseModel):
    status: str
    event_id: Optional[str] = None
    outcome: Optional[str] = None
