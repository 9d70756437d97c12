"""ProcessedWebhookEvent model: idempotency record for payment events."""

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from database import Base


class ProcessedWebhookEvent(Base):
    """Marks a payment-provider event as applied. Never updated or deleted."""

    __tablename__ = "processed_webhook_events"

    event_id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False)
    processed_by = Column(String, nullable=True)
    processed_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
