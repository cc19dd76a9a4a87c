"""Pydantic schemas for MercadoPago webhooks, provider resources and billing responses."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.domain.payments import EventType, PaymentEvent

# ── Inbound webhook ─────────────────────────────────────────────────


class WebhookData(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    id: str = Field(min_length=1)


class WebhookNotification(BaseModel):
    """Body of a MercadoPago notification: ``{type, action, data: {id}, id?}``."""

    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    type: str = Field(min_length=1)
    action: str | None = None
    data: WebhookData
    id: str | None = None
    live_mode: bool | None = None
    date_created: str | None = None


class WebhookAck(BaseModel):
    received: bool = True
    status: str
    message: str | None = None


# ── Provider resources (GET /v1/payments/{id}, GET /preapproval/{id}) ──


class MercadoPagoPayer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str | None = None


class MercadoPagoPayment(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str
    status: str
    status_detail: str | None = None
    payer: MercadoPagoPayer | None = None
    transaction_amount: Decimal | None = None
    external_reference: str | None = None
    metadata: dict[str, Any] | None = None
    payment_method_id: str | None = None
    date_approved: datetime | None = None

    def to_event(self) -> PaymentEvent:
        return PaymentEvent(
            event_type=EventType.PAYMENT,
            resource_id=self.id,
            status=self.status,
            payer_email=self.payer.email if self.payer else None,
            amount=self.transaction_amount,
            external_reference=self.external_reference,
            metadata=self.metadata or {},
            payment_method=self.payment_method_id,
            approved_at=self.date_approved,
        )


class AutoRecurring(BaseModel):
    model_config = ConfigDict(extra="ignore")

    transaction_amount: Decimal | None = None
    frequency: int | None = None
    frequency_type: str | None = None


class MercadoPagoAuthorizedPayment(BaseModel):
    """One recurring charge of a preapproval (GET /authorized_payments/{id})."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str
    preapproval_id: str | None = None
    status: str | None = None


class MercadoPagoPreapproval(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str
    status: str | None = None
    payer_email: str | None = None
    external_reference: str | None = None
    reason: str | None = None
    auto_recurring: AutoRecurring | None = None

    def to_event(self, event_type: str = EventType.SUBSCRIPTION_PREAPPROVAL) -> PaymentEvent:
        return PaymentEvent(
            event_type=event_type,
            resource_id=self.id,
            status=self.status or "",
            payer_email=self.payer_email,
            amount=self.auto_recurring.transaction_amount if self.auto_recurring else None,
            external_reference=self.external_reference,
            payment_method="subscription",
            provider_subscription_id=self.id,
        )


# ── Billing API responses ───────────────────────────────────────────


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    plan_type: str
    status: str
    started_at: datetime
    expires_at: datetime | None
    mercadopago_payment_id: str | None = None
    last_payment_amount: Decimal | None = None


class BillingStatusResponse(BaseModel):
    plan: str
    has_subscription: bool
    subscription: SubscriptionOut | None
    history: list[SubscriptionOut]


class ReconcileResponse(BaseModel):
    old_plan: str
    new_plan: str
    changed: bool


class CancelResponse(BaseModel):
    cancelled: int
    plan: str
