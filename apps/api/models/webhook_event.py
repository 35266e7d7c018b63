"""ProcessedWebhookEvent model: claimed external event ids."""

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from database import Base


class ProcessedWebhookEvent(Base):
    """One row per external event id whose grant has been claimed."""

    __tablename__ = "processed_webhook_events"

    event_id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False)
    email = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
