from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from ..platform.database import Base


class WebhookEvent(Base):
    """Dedup record for billing processor deliveries."""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    external_event_id = Column(String, unique=True, index=True, nullable=False)
    type = Column(String, nullable=False)
    received_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)
    # applied | duplicate | stale | rejected | ignored
    outcome = Column(String, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
