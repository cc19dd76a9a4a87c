"""ReconciliationService: Turns a MercadoPago notification into subscription state.

Pipeline for one delivery:
    received -> signature_checked -> deduplicated -> resolved
             -> ledger_updated -> completed
with ``failed`` reachable from any step after deduplication. Failed records
answer 500 so the provider redelivers, and the redelivery reclaims the record.
"""

import json
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar

import structlog
from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import get_settings
from app.core.exceptions import (
    BillingError,
    CompensationError,
    UserResolutionError,
    WebhookSecretNotConfiguredError,
)
from app.core.locking import UserLock
from app.db.base import get_session_factory
from app.db.models.profile import Profile
from app.db.redis import get_redis
from app.domain.payments import (
    PAYMENT_APPROVED,
    PAYMENT_PENDING,
    PAYMENT_REJECTED,
    PAYMENT_REVERSED,
    EventType,
    PaymentEvent,
    PaymentRef,
    ReconciliationState,
)
from app.domain.plans import PlanResolver, PlanType, parse_external_reference
from app.domain.signature import SignatureVerifier
from app.integrations.mercadopago import MercadoPagoClient
from app.schemas.billing import WebhookNotification
from app.services.profile_projector import ProfilePlanProjector
from app.services.subscription_ledger import SubscriptionLedger
from app.services.webhook_dedup_service import WebhookDeduplicator, build_webhook_id

logger = structlog.get_logger(__name__)

T = TypeVar("T")

PREAPPROVAL_EVENT_TYPES = frozenset(
    {EventType.SUBSCRIPTION_PREAPPROVAL, EventType.SUBSCRIPTION_AUTHORIZED_PAYMENT}
)


@dataclass(frozen=True)
class WebhookOutcome:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


def _ack(status: str) -> WebhookOutcome:
    return WebhookOutcome(200, {"received": True, "status": status})


def _error(status_code: int, error: str) -> WebhookOutcome:
    return WebhookOutcome(status_code, {"received": False, "error": error})


class ReconciliationService:
    """Coordinates verification, dedup, resolution and the ledger/profile transaction."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        user_lock: UserLock,
        provider: MercadoPagoClient,
        verifier: SignatureVerifier,
        ledger: SubscriptionLedger | None = None,
        plan_resolver: PlanResolver | None = None,
    ):
        """Initialize with dependency injection.

        Args:
            session_factory: SQLAlchemy async session factory
            user_lock: Per-user Redis lock serialising ledger writes
            provider: MercadoPago client used to re-fetch resources
            verifier: Webhook signature verifier
            ledger: Subscription ledger (default period from settings)
            plan_resolver: Plan resolver (default price bands)
        """
        self.session_factory = session_factory
        self.user_lock = user_lock
        self.provider = provider
        self.verifier = verifier
        self.ledger = ledger or SubscriptionLedger()
        self.plan_resolver = plan_resolver or PlanResolver()
        self.deduplicator = WebhookDeduplicator(session_factory)
        self.projector = ProfilePlanProjector(session_factory, self.ledger, user_lock)

    # ── Webhook entry point ─────────────────────────────────────────

    async def process(self, headers: Mapping[str, str], raw_body: bytes) -> WebhookOutcome:
        """Handle one webhook delivery. Never raises."""
        try:
            return await self._process(headers, raw_body)
        except Exception as exc:
            logger.exception("webhook_unexpected_error", error=str(exc), error_type=type(exc).__name__)
            return _error(500, "internal_error")

    async def _process(self, headers: Mapping[str, str], raw_body: bytes) -> WebhookOutcome:
        try:
            payload = json.loads(raw_body)
            notification = WebhookNotification.model_validate(payload)
        except (ValueError, ValidationError) as exc:
            logger.warning("webhook_payload_invalid", error=str(exc)[:200])
            return _error(400, "invalid_payload")

        log = logger.bind(event_type=notification.type, data_id=notification.data.id, action=notification.action)
        log.info("webhook_state_changed", state=ReconciliationState.RECEIVED)

        try:
            authentic = self.verifier.verify(headers, notification.data.id)
        except WebhookSecretNotConfiguredError:
            log.error("webhook_secret_not_configured")
            return _error(503, "webhook_not_configured")
        if not authentic:
            return _error(401, "invalid_signature")
        log.info("webhook_state_changed", state=ReconciliationState.SIGNATURE_CHECKED)

        webhook_id = build_webhook_id(notification, headers)
        log = log.bind(webhook_id=webhook_id)

        try:
            registration = await self.deduplicator.register(webhook_id, notification, raw_data=payload)
        except SQLAlchemyError as exc:
            log.error("webhook_registration_failed", error=str(exc))
            return _error(500, "registration_failed")

        if not registration.registered:
            return _ack(registration.outcome.value)
        log.info("webhook_state_changed", state=ReconciliationState.DEDUPLICATED, attempt=registration.attempts)

        try:
            result_status = await self._dispatch(notification)
        except Exception as exc:
            log.error(
                "webhook_state_changed",
                state=ReconciliationState.FAILED,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            await self._record_failure(webhook_id, exc)
            return _error(500, "processing_failed")

        await self.deduplicator.mark_completed(webhook_id, result_status)
        log.info("webhook_state_changed", state=ReconciliationState.COMPLETED, result_status=result_status)
        return _ack(result_status)

    async def _record_failure(self, webhook_id: str, exc: Exception) -> None:
        result_status = "compensation_failed" if isinstance(exc, CompensationError) else "processing_failed"
        try:
            await self.deduplicator.mark_failed(webhook_id, result_status, f"{type(exc).__name__}: {exc}")
        except SQLAlchemyError as mark_exc:
            logger.error("webhook_mark_failed_error", webhook_id=webhook_id, error=str(mark_exc))

    # ── Dispatch ────────────────────────────────────────────────────

    async def _dispatch(self, notification: WebhookNotification) -> str:
        if notification.type == EventType.PAYMENT:
            return await self._handle_payment(notification.data.id)
        if notification.type in PREAPPROVAL_EVENT_TYPES:
            return await self._handle_preapproval(notification)

        logger.info("webhook_type_not_processed", event_type=notification.type)
        return "webhook_type_not_processed"

    async def _handle_payment(self, payment_id: str) -> str:
        event = await self.provider.get_payment(payment_id)
        log = logger.bind(payment_id=event.resource_id, payment_status=event.status)

        if event.status in PAYMENT_APPROVED:
            plan = self.plan_resolver.identify_plan(event.metadata, event.external_reference, event.amount)
            user_id = await self.resolve_user(event)
            log.info("webhook_state_changed", state=ReconciliationState.RESOLVED, user_id=user_id, plan=plan.value)
            await self.activate(user_id, plan, PaymentRef.from_event(event))
            return "payment_approved"

        if event.status in PAYMENT_PENDING:
            log.info("payment_pending")
            return "payment_pending"

        if event.status in PAYMENT_REJECTED:
            log.info("payment_rejected")
            return "payment_failed"

        if event.status in PAYMENT_REVERSED:
            user_id = await self.resolve_user(event)
            log.info("webhook_state_changed", state=ReconciliationState.RESOLVED, user_id=user_id)
            await self.deactivate(user_id, payment_id=event.resource_id)
            return "payment_refunded"

        log.warning("payment_status_unhandled")
        return "unhandled_status"

    async def _handle_preapproval(self, notification: WebhookNotification) -> str:
        event = await self.provider.get_preapproval(notification.data.id, notification.type)
        action = notification.action or ""
        log = logger.bind(preapproval_id=event.resource_id, preapproval_status=event.status, action=action)

        if action == "created" or event.status == "authorized":
            plan = self.plan_resolver.identify_plan(event.metadata, event.external_reference, event.amount)
            user_id = await self.resolve_user(event)
            log.info("webhook_state_changed", state=ReconciliationState.RESOLVED, user_id=user_id, plan=plan.value)
            await self.activate(user_id, plan, PaymentRef.from_event(event))
            return "subscription_activated"

        if action == "cancelled" or event.status == "cancelled":
            user_id = await self.resolve_user(event)
            log.info("webhook_state_changed", state=ReconciliationState.RESOLVED, user_id=user_id)
            await self.deactivate(user_id)
            return "subscription_cancelled"

        log.info("preapproval_action_unhandled")
        return "unhandled_action"

    # ── User resolution ─────────────────────────────────────────────

    async def resolve_user(self, event: PaymentEvent) -> str:
        """Map a payment event to a profile id.

        Tries, in order: ``metadata["user_id"]``, the user part of the external
        reference (matched against profiles.id), then the payer email.

        Raises:
            UserResolutionError: If no signal matches an existing profile
        """
        async with self.session_factory() as session:
            metadata_user = event.metadata.get("user_id")
            if metadata_user and await session.get(Profile, str(metadata_user)) is not None:
                return str(metadata_user)

            _, reference_user = parse_external_reference(event.external_reference)
            if reference_user and await session.get(Profile, reference_user) is not None:
                return reference_user

            if event.payer_email:
                result = await session.execute(
                    select(Profile.id).where(func.lower(Profile.email) == event.payer_email.strip().lower())
                )
                user_id = result.scalar_one_or_none()
                if user_id is not None:
                    logger.info("user_resolved_by_email", user_id=user_id)
                    return user_id

        raise UserResolutionError(
            f"No profile for payment {event.resource_id} "
            f"(metadata_user={metadata_user!r}, reference={event.external_reference!r})"
        )

    # ── Ledger + profile transitions ────────────────────────────────

    async def activate(self, user_id: str, plan: PlanType, payment: PaymentRef) -> None:
        """Start or extend the user's paid period and project the plan."""

        async def apply(session: AsyncSession) -> None:
            await self.ledger.upsert_active_period(session, user_id, plan, payment)
            await self.projector.project(session, user_id, plan, payment_id=payment.payment_id)

        await self._transition(user_id, apply)

    async def deactivate(self, user_id: str, payment_id: str | None = None) -> int:
        """Cancel the user's active subscription and project the free plan.

        Returns:
            Number of subscription rows cancelled
        """

        async def apply(session: AsyncSession) -> int:
            cancelled = await self.ledger.cancel(session, user_id)
            await self.projector.project(session, user_id, PlanType.FREE, payment_id=payment_id)
            return cancelled

        return await self._transition(user_id, apply)

    async def _transition(self, user_id: str, apply: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run a ledger write followed by the profile projection atomically.

        Holds the user's lock for the whole transaction. Any failure rolls the
        transaction back, undoing the ledger write.

        Raises:
            CompensationError: If the rollback itself fails
        """
        async with self.user_lock.hold(user_id):
            async with self.session_factory() as session:
                try:
                    result = await apply(session)
                    await session.commit()
                except Exception as exc:
                    try:
                        await session.rollback()
                    except Exception as rollback_exc:
                        logger.critical(
                            "ledger_profile_compensation_failed",
                            user_id=user_id,
                            error=str(exc),
                            rollback_error=str(rollback_exc),
                        )
                        raise CompensationError(user_id, rollback_exc) from exc
                    log_error = logger.warning if isinstance(exc, BillingError) else logger.error
                    log_error("ledger_profile_transition_rolled_back", user_id=user_id, error=str(exc))
                    raise

        logger.info("webhook_state_changed", state=ReconciliationState.LEDGER_UPDATED, user_id=user_id)
        return result


def build_reconciliation_service() -> ReconciliationService:
    """Wire the service from settings and the initialized DB/Redis pools."""
    settings = get_settings()
    return ReconciliationService(
        session_factory=get_session_factory(),
        user_lock=UserLock(
            get_redis(),
            ttl=settings.user_lock_ttl_seconds,
            wait_timeout=settings.user_lock_wait_seconds,
        ),
        provider=MercadoPagoClient(),
        verifier=SignatureVerifier(settings.mercadopago_webhook_secret),
        ledger=SubscriptionLedger(period_days=settings.subscription_period_days),
    )
