"""ProfilePlanProjector: Mirrors the ledger's current plan onto profiles.plan."""

from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import ProfileNotFoundError
from app.core.locking import UserLock
from app.db.models.profile import Profile
from app.domain.plans import PAID_PLANS, PlanType
from app.services.subscription_ledger import SubscriptionLedger

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PlanCorrection:
    user_id: str
    old_plan: str
    new_plan: PlanType

    @property
    def changed(self) -> bool:
        return self.old_plan != self.new_plan.value


class ProfilePlanProjector:
    """Keeps the cached plan on the profile consistent with the ledger.

    ``project`` runs inside the caller's transaction. ``fix``/``reconcile``
    own their transaction and take the user lock themselves.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: SubscriptionLedger,
        user_lock: UserLock,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.user_lock = user_lock

    async def project(
        self,
        session: AsyncSession,
        user_id: str,
        plan: PlanType,
        payment_id: str | None = None,
    ) -> Profile:
        """Write ``plan`` onto the profile.

        Raises:
            ProfileNotFoundError: If no profile row exists for user_id
        """
        profile = await session.get(Profile, user_id, with_for_update=True)
        if profile is None:
            raise ProfileNotFoundError(user_id)

        profile.plan = plan.value
        profile.subscription_status = "active" if plan in PAID_PLANS else "cancelled"
        if payment_id:
            profile.last_payment_id = payment_id
        profile.updated_at = datetime.now(UTC)

        await session.flush()
        logger.info("profile_plan_projected", user_id=user_id, plan=plan.value, payment_id=payment_id)
        return profile

    async def fix(self, user_id: str) -> PlanCorrection:
        """Re-derive the plan from the ledger and correct the profile if it drifted."""
        async with self.user_lock.hold(user_id):
            async with self.session_factory() as session:
                profile = await session.get(Profile, user_id, with_for_update=True)
                if profile is None:
                    raise ProfileNotFoundError(user_id)

                plan = await self.ledger.current_plan(session, user_id)
                correction = PlanCorrection(user_id=user_id, old_plan=profile.plan, new_plan=plan)

                if correction.changed:
                    profile.plan = plan.value
                    profile.subscription_status = "active" if plan in PAID_PLANS else "cancelled"
                    profile.updated_at = datetime.now(UTC)
                    logger.warning(
                        "profile_plan_drift_corrected",
                        user_id=user_id,
                        old_plan=correction.old_plan,
                        new_plan=plan.value,
                    )

                # Persists lazy expiry even when the plan itself did not change
                await session.commit()
                return correction

    async def reconcile(self, user_id: str) -> PlanType:
        return (await self.fix(user_id)).new_plan

    async def profile_ids(self) -> list[str]:
        async with self.session_factory() as session:
            result = await session.execute(select(Profile.id).order_by(Profile.created_at))
            return list(result.scalars().all())

    async def reconcile_all(self) -> int:
        """Reconcile every profile.

        Returns:
            Number of profiles whose plan was corrected
        """
        corrected = 0
        for user_id in await self.profile_ids():
            if (await self.fix(user_id)).changed:
                corrected += 1

        logger.info("profile_plans_reconciled", corrected=corrected)
        return corrected
