"""Subscription model: One contiguous paid period for one user."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Numeric, String

from app.db.base import Base


class Subscription(Base):
    """Historical rows are retained; at most one row per user is ``active``."""

    __tablename__ = "subscriptions"
    __table_args__ = (Index("ix_subscriptions_user_id_status", "user_id", "status"),)

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)

    plan_type = Column(String(20), nullable=False)  # starter | pro
    status = Column(String(20), nullable=False, default="active")  # active | cancelled | expired

    started_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    expires_at = Column(DateTime(timezone=True), nullable=True)

    # MercadoPago
    mercadopago_payment_id = Column(String(255), nullable=True, index=True)
    mercadopago_subscription_id = Column(String(255), nullable=True, index=True)
    last_payment_amount = Column(Numeric(10, 2), nullable=True)
    last_payment_date = Column(DateTime(timezone=True), nullable=True)
    payment_method = Column(String(50), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"plan_type='{self.plan_type}', status='{self.status}')>"
        )
