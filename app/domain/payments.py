"""Payment event and lifecycle state definitions.

Pure domain types shared by the provider client, the ledger and the
reconciliation pipeline.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import StrEnum


class WebhookStatus(StrEnum):
    """Lifecycle of a WebhookEvent row. Only COMPLETED is terminal."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SubscriptionStatus(StrEnum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class ReconciliationState(StrEnum):
    """Pipeline states a webhook moves through inside one delivery."""

    RECEIVED = "received"
    SIGNATURE_CHECKED = "signature_checked"
    DEDUPLICATED = "deduplicated"
    RESOLVED = "resolved"
    LEDGER_UPDATED = "ledger_updated"
    COMPLETED = "completed"
    FAILED = "failed"


class EventType(StrEnum):
    PAYMENT = "payment"
    SUBSCRIPTION_PREAPPROVAL = "subscription_preapproval"
    SUBSCRIPTION_AUTHORIZED_PAYMENT = "subscription_authorized_payment"


# MercadoPago payment statuses grouped by the ledger action they trigger
PAYMENT_APPROVED = frozenset({"approved"})
PAYMENT_PENDING = frozenset({"pending", "in_process", "authorized"})
PAYMENT_REJECTED = frozenset({"rejected", "cancelled"})
PAYMENT_REVERSED = frozenset({"refunded", "charged_back"})


@dataclass(frozen=True)
class PaymentEvent:
    """A provider resource reduced to the fields reconciliation needs.

    Always built from the provider's API response, never from the webhook body.
    """

    event_type: str
    resource_id: str
    status: str
    payer_email: str | None = None
    amount: Decimal | None = None
    external_reference: str | None = None
    metadata: dict = field(default_factory=dict)
    payment_method: str | None = None
    approved_at: datetime | None = None
    provider_subscription_id: str | None = None


@dataclass(frozen=True)
class PaymentRef:
    """Payment details recorded on the ledger row."""

    payment_id: str
    amount: Decimal | None = None
    payment_method: str | None = None
    approved_at: datetime | None = None
    provider_subscription_id: str | None = None

    @classmethod
    def from_event(cls, event: PaymentEvent) -> "PaymentRef":
        return cls(
            payment_id=event.resource_id,
            amount=event.amount,
            payment_method=event.payment_method,
            approved_at=event.approved_at,
            provider_subscription_id=event.provider_subscription_id,
        )
