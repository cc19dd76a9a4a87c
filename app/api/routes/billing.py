"""Billing routes: Plan status, self-service plan repair and cancellation."""

import structlog
from fastapi import APIRouter, Depends, HTTPException

from app.api.routes.webhooks import get_reconciliation_service
from app.core.auth import AuthUser, require_auth
from app.core.exceptions import LockTimeoutError, ProfileNotFoundError
from app.schemas.billing import (
    BillingStatusResponse,
    CancelResponse,
    ReconcileResponse,
    SubscriptionOut,
)
from app.services.reconciliation_service import ReconciliationService

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/billing/status", response_model=BillingStatusResponse)
async def get_billing_status(
    user: AuthUser = Depends(require_auth),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Return the user's plan, active subscription and history.

    The profile is reconciled against the ledger first, so an expired period
    is reported as free even if no webhook ever arrived.
    """
    try:
        plan = await service.projector.reconcile(user.user_id)
    except ProfileNotFoundError:
        raise HTTPException(status_code=404, detail="Profile not found")
    except LockTimeoutError:
        raise HTTPException(status_code=503, detail="Billing is busy for this user, retry shortly")

    async with service.session_factory() as session:
        active = await service.ledger.get_active(session, user.user_id)
        history = await service.ledger.list_for_user(session, user.user_id)

    return BillingStatusResponse(
        plan=plan.value,
        has_subscription=active is not None,
        subscription=SubscriptionOut.model_validate(active) if active is not None else None,
        history=[SubscriptionOut.model_validate(row) for row in history],
    )


@router.post("/billing/reconcile", response_model=ReconcileResponse)
async def reconcile_plan(
    user: AuthUser = Depends(require_auth),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Re-derive the user's plan from the ledger and repair the profile."""
    try:
        correction = await service.projector.fix(user.user_id)
    except ProfileNotFoundError:
        raise HTTPException(status_code=404, detail="Profile not found")
    except LockTimeoutError:
        raise HTTPException(status_code=503, detail="Billing is busy for this user, retry shortly")

    logger.info(
        "billing_plan_reconciled",
        user_id=user.user_id,
        old_plan=correction.old_plan,
        new_plan=correction.new_plan.value,
    )
    return ReconcileResponse(
        old_plan=correction.old_plan,
        new_plan=correction.new_plan.value,
        changed=correction.changed,
    )


@router.post("/billing/cancel", response_model=CancelResponse)
async def cancel_subscription(
    user: AuthUser = Depends(require_auth),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Cancel the active subscription and drop the user to the free plan."""
    async with service.session_factory() as session:
        active = await service.ledger.get_active(session, user.user_id)
        await session.commit()
    if active is None:
        raise HTTPException(status_code=404, detail="No active subscription")

    try:
        cancelled = await service.deactivate(user.user_id)
    except ProfileNotFoundError:
        raise HTTPException(status_code=404, detail="Profile not found")
    except LockTimeoutError:
        raise HTTPException(status_code=503, detail="Billing is busy for this user, retry shortly")

    logger.info("billing_subscription_cancelled_by_user", user_id=user.user_id, cancelled=cancelled)
    return CancelResponse(cancelled=cancelled, plan="free")
