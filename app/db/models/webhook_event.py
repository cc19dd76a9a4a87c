"""WebhookEvent model: Durable dedup record for inbound MercadoPago notifications."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from app.db.base import Base


class WebhookEvent(Base):
    """One row per logical webhook event; the unique webhook_id is the concurrency gate."""

    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    webhook_id = Column(String(255), unique=True, nullable=False, index=True)

    event_type = Column(String(100), nullable=False, index=True)
    action = Column(String(100), nullable=True)
    payment_id = Column(String(255), nullable=True, index=True)  # data.id of the notification

    # pending | completed | failed
    status = Column(String(20), nullable=False, default="pending", index=True)
    result_status = Column(String(100), nullable=True)  # payment_approved, payment_refunded, ...
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=1)

    raw_data = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent(webhook_id='{self.webhook_id}', status='{self.status}')>"
