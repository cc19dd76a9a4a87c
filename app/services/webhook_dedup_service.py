"""WebhookDeduplicator: Durable at-most-once gate for inbound notifications."""

import hashlib
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models.webhook_event import WebhookEvent
from app.domain.payments import WebhookStatus
from app.domain.signature import SIGNATURE_HEADER, normalize_headers, parse_signature_header
from app.schemas.billing import WebhookNotification

logger = structlog.get_logger(__name__)

WEBHOOK_ID_PREFIX = "mp_"
MAX_ERROR_LENGTH = 2000


class RegistrationOutcome(StrEnum):
    REGISTERED = "registered"
    ALREADY_PROCESSED = "already_processed"
    ALREADY_PROCESSING = "already_processing"


@dataclass(frozen=True)
class RegistrationResult:
    outcome: RegistrationOutcome
    attempts: int = 1

    @property
    def registered(self) -> bool:
        return self.outcome == RegistrationOutcome.REGISTERED


def _event_timestamp(date_created: str | None) -> str | None:
    """Epoch seconds of the notification's ``date_created``, as a string."""
    if not date_created:
        return None
    try:
        created = datetime.fromisoformat(date_created.strip().replace("Z", "+00:00"))
    except ValueError:
        return date_created.strip() or None
    if created.tzinfo is None:
        created = created.replace(tzinfo=UTC)
    return str(int(created.timestamp()))


def build_webhook_id(notification: WebhookNotification, headers: Mapping[str, str]) -> str:
    """Stable identity for a logical webhook event.

    ``mp_<id>`` when the notification carries its own id. Otherwise
    ``mp_<type>_<data.id>_<suffix>``, where the suffix is the event's own
    ``date_created`` (identical on every provider retry). The signature ``ts``
    is used only when the body has no creation date, and a digest of the body
    when neither is present.
    """
    if notification.id:
        return f"{WEBHOOK_ID_PREFIX}{notification.id}"

    base = f"{WEBHOOK_ID_PREFIX}{notification.type}_{notification.data.id}"

    created = _event_timestamp(notification.date_created)
    if created is not None:
        return f"{base}_{created}"

    parts = parse_signature_header(normalize_headers(headers).get(SIGNATURE_HEADER))
    if parts is not None:
        return f"{base}_{parts.raw_ts}"

    digest = hashlib.sha256(notification.model_dump_json().encode("utf-8")).hexdigest()[:16]
    return f"{base}_{digest}"


class WebhookDeduplicator:
    """Registers webhook identities so each is processed at most once.

    The unique constraint on ``webhook_events.webhook_id`` is the only gate:
    concurrent deliveries race on the INSERT and exactly one wins.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def register(
        self,
        webhook_id: str,
        notification: WebhookNotification,
        raw_data: dict | None = None,
    ) -> RegistrationResult:
        """Claim a webhook id for processing.

        Returns:
            REGISTERED if this caller now owns processing (new record, or a
            failed record reclaimed for retry), ALREADY_PROCESSED if a completed
            record exists, ALREADY_PROCESSING otherwise.

        Raises:
            SQLAlchemyError: Any database failure other than the unique-key conflict.
        """
        async with self.session_factory() as session:
            try:
                session.add(
                    WebhookEvent(
                        webhook_id=webhook_id,
                        event_type=notification.type,
                        action=notification.action,
                        payment_id=notification.data.id,
                        status=WebhookStatus.PENDING,
                        attempts=1,
                        raw_data=raw_data if raw_data is not None else notification.model_dump(mode="json"),
                    )
                )
                await session.commit()
                logger.info("webhook_registered", webhook_id=webhook_id, event_type=notification.type)
                return RegistrationResult(RegistrationOutcome.REGISTERED)
            except IntegrityError:
                await session.rollback()

            row = (
                await session.execute(
                    select(WebhookEvent.status, WebhookEvent.attempts).where(WebhookEvent.webhook_id == webhook_id)
                )
            ).one_or_none()

            if row is None:
                # Conflicting insert not visible yet; treat as in flight
                logger.info("webhook_duplicate_in_flight", webhook_id=webhook_id)
                return RegistrationResult(RegistrationOutcome.ALREADY_PROCESSING)

            status, attempts = row
            if status == WebhookStatus.COMPLETED:
                logger.info("webhook_duplicate_ignored", webhook_id=webhook_id, status=status)
                return RegistrationResult(RegistrationOutcome.ALREADY_PROCESSED, attempts=attempts)

            if status == WebhookStatus.FAILED:
                result = await session.execute(
                    update(WebhookEvent)
                    .where(
                        WebhookEvent.webhook_id == webhook_id,
                        WebhookEvent.status == WebhookStatus.FAILED,
                    )
                    .values(
                        status=WebhookStatus.PENDING,
                        attempts=WebhookEvent.attempts + 1,
                        error_message=None,
                        updated_at=datetime.now(UTC),
                    )
                )
                await session.commit()
                if result.rowcount == 1:
                    logger.info("webhook_failed_record_reclaimed", webhook_id=webhook_id, attempt=attempts + 1)
                    return RegistrationResult(RegistrationOutcome.REGISTERED, attempts=attempts + 1)

            logger.info("webhook_duplicate_in_flight", webhook_id=webhook_id)
            return RegistrationResult(RegistrationOutcome.ALREADY_PROCESSING, attempts=attempts)

    async def mark_completed(self, webhook_id: str, result_status: str) -> None:
        await self._finish(webhook_id, WebhookStatus.COMPLETED, result_status, None)
        logger.info("webhook_completed", webhook_id=webhook_id, result_status=result_status)

    async def mark_failed(self, webhook_id: str, result_status: str, error: str) -> None:
        """Record a failure; the record becomes reclaimable by the next redelivery."""
        await self._finish(webhook_id, WebhookStatus.FAILED, result_status, error[:MAX_ERROR_LENGTH])
        logger.warning("webhook_failed", webhook_id=webhook_id, result_status=result_status, error=error)

    async def get(self, webhook_id: str) -> WebhookEvent | None:
        async with self.session_factory() as session:
            result = await session.execute(select(WebhookEvent).where(WebhookEvent.webhook_id == webhook_id))
            return result.scalar_one_or_none()

    async def _finish(
        self,
        webhook_id: str,
        status: WebhookStatus,
        result_status: str,
        error: str | None,
    ) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(WebhookEvent)
                .where(WebhookEvent.webhook_id == webhook_id)
                .values(
                    status=status,
                    result_status=result_status,
                    error_message=error,
                    updated_at=datetime.now(UTC),
                )
            )
            await session.commit()
