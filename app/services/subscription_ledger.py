"""SubscriptionLedger: The source of truth for a user's paid periods.

Every method works inside the caller's session and never commits, so the
reconciliation pipeline can span ledger and profile writes in one transaction.
Callers hold the user's UserLock across any read-modify-write.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.db.models.subscription import Subscription
from app.domain.payments import PaymentRef, SubscriptionStatus
from app.domain.plans import PlanType, parse_plan

logger = structlog.get_logger(__name__)


def _as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class SubscriptionLedger:
    """Owns every write to the subscriptions table."""

    def __init__(
        self,
        period_days: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.period = timedelta(days=period_days or get_settings().subscription_period_days)
        self._clock = clock or (lambda: datetime.now(UTC))

    async def _active_rows(self, session: AsyncSession, user_id: str) -> list[Subscription]:
        result = await session.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id, Subscription.status == SubscriptionStatus.ACTIVE)
            .order_by(Subscription.started_at.desc(), Subscription.created_at.desc())
            .with_for_update()
        )
        return list(result.scalars().all())

    async def get_active(
        self,
        session: AsyncSession,
        user_id: str,
        now: datetime | None = None,
    ) -> Subscription | None:
        """Return the user's single live active subscription, if any.

        Applies lazy expiry: active rows past ``expires_at`` are marked expired.
        If several unexpired active rows exist, the newest wins and the rest are
        cancelled, restoring the one-active-row invariant.
        """
        now = now or self._clock()
        live: list[Subscription] = []
        changed = False

        for row in await self._active_rows(session, user_id):
            expires_at = _as_utc(row.expires_at)
            if expires_at is not None and expires_at <= now:
                row.status = SubscriptionStatus.EXPIRED
                row.updated_at = now
                changed = True
                logger.info("subscription_expired", user_id=user_id, subscription_id=row.id, plan=row.plan_type)
            else:
                live.append(row)

        for extra in live[1:]:
            extra.status = SubscriptionStatus.CANCELLED
            extra.updated_at = now
            changed = True
            logger.warning(
                "subscription_duplicate_active_cancelled",
                user_id=user_id,
                subscription_id=extra.id,
                kept_subscription_id=live[0].id,
            )

        if changed:
            await session.flush()
        return live[0] if live else None

    async def upsert_active_period(
        self,
        session: AsyncSession,
        user_id: str,
        plan_type: PlanType,
        payment: PaymentRef,
    ) -> Subscription:
        """Start or extend the user's active period by one billing period from now.

        Updates the existing active row in place, otherwise inserts a new one.
        """
        now = self._clock()
        expires_at = now + self.period
        subscription = await self.get_active(session, user_id, now)

        if subscription is None:
            subscription = Subscription(
                user_id=user_id,
                plan_type=plan_type.value,
                status=SubscriptionStatus.ACTIVE,
                started_at=now,
                expires_at=expires_at,
            )
            session.add(subscription)
            logger.info("subscription_created", user_id=user_id, plan=plan_type.value, payment_id=payment.payment_id)
        else:
            logger.info(
                "subscription_extended",
                user_id=user_id,
                subscription_id=subscription.id,
                old_plan=subscription.plan_type,
                plan=plan_type.value,
                payment_id=payment.payment_id,
            )
            subscription.plan_type = plan_type.value
            subscription.expires_at = expires_at

        subscription.mercadopago_payment_id = payment.payment_id
        if payment.provider_subscription_id:
            subscription.mercadopago_subscription_id = payment.provider_subscription_id
        subscription.last_payment_amount = payment.amount
        subscription.last_payment_date = payment.approved_at or now
        subscription.payment_method = payment.payment_method
        subscription.updated_at = now

        await session.flush()
        return subscription

    async def cancel(self, session: AsyncSession, user_id: str) -> int:
        """Cancel the user's active subscription.

        Returns:
            Number of rows cancelled; 0 when nothing was active (no-op)
        """
        now = self._clock()
        active = await self.get_active(session, user_id, now)
        if active is None:
            logger.info("subscription_cancel_noop", user_id=user_id)
            return 0

        active.status = SubscriptionStatus.CANCELLED
        active.updated_at = now
        await session.flush()
        logger.info("subscription_cancelled", user_id=user_id, subscription_id=active.id, plan=active.plan_type)
        return 1

    async def current_plan(self, session: AsyncSession, user_id: str) -> PlanType:
        active = await self.get_active(session, user_id)
        if active is None:
            return PlanType.FREE
        return parse_plan(active.plan_type) or PlanType.FREE

    async def list_for_user(self, session: AsyncSession, user_id: str) -> list[Subscription]:
        result = await session.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
        )
        return list(result.scalars().all())
