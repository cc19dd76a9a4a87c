"""Profile model: User record carrying the cached current plan."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Integer, String

from app.db.base import Base


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True)  # identity provider user id
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)

    # Cache of the ledger's active plan: free | starter | pro. Written only by ProfilePlanProjector.
    plan = Column(String(20), nullable=False, default="free")
    subscription_status = Column(String(20), nullable=True)
    last_payment_id = Column(String(255), nullable=True)

    generations_used = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
