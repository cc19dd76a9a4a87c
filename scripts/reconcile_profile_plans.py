"""Re-derive every profile's plan from the subscription ledger and repair drift."""

import asyncio

from app.core.config import get_settings
from app.core.locking import UserLock
from app.db import close_db, close_redis, get_redis, get_session_factory, init_db, init_redis
from app.services.profile_projector import ProfilePlanProjector
from app.services.subscription_ledger import SubscriptionLedger


async def main() -> None:
    settings = get_settings()
    await init_db()
    await init_redis()

    projector = ProfilePlanProjector(
        get_session_factory(),
        SubscriptionLedger(period_days=settings.subscription_period_days),
        UserLock(get_redis(), ttl=settings.user_lock_ttl_seconds, wait_timeout=settings.user_lock_wait_seconds),
    )

    user_ids = await projector.profile_ids()
    print(f"Checking {len(user_ids)} profile(s)...")

    corrected = 0
    for user_id in user_ids:
        correction = await projector.fix(user_id)
        if correction.changed:
            corrected += 1
            print(f"  {user_id} | {correction.old_plan} -> {correction.new_plan.value}")

    print(f"\nCorrected {corrected} profile(s).")

    await close_redis()
    await close_db()


if __name__ == "__main__":
    asyncio.run(main())
