"""MercadoPago Integration: fetch the authoritative payment resources.

Webhook bodies only carry an id. Everything reconciliation decides on (status,
payer, amount, external reference) is read back from the provider API:
- GET /v1/payments/{id} for payment notifications
- GET /preapproval/{id} for subscription (preapproval) notifications
- GET /authorized_payments/{id}, then its preapproval, for recurring charges
"""

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from app.core.config import get_settings
from app.core.exceptions import (
    ProviderError,
    ProviderResourceNotFoundError,
    ProviderUnavailableError,
)
from app.domain.payments import EventType, PaymentEvent
from app.schemas.billing import MercadoPagoAuthorizedPayment, MercadoPagoPayment, MercadoPagoPreapproval

logger = structlog.get_logger(__name__)

MAX_ATTEMPTS = 3


def _log_retry(retry_state) -> None:
    logger.warning(
        "mercadopago_request_retrying",
        attempt=retry_state.attempt_number,
        sleep_seconds=retry_state.next_action.sleep,
        error=str(retry_state.outcome.exception()),
    )


class MercadoPagoClient:
    """Client for the MercadoPago REST API (read-only)."""

    def __init__(
        self,
        access_token: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_wait: wait_base | None = None,
    ):
        """Initialize MercadoPago client.

        Args:
            access_token: Bearer token; defaults to settings.mercadopago_access_token
            base_url: API root; defaults to settings.mercadopago_api_url
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests inject a MockTransport)
            retry_wait: Optional tenacity wait strategy between attempts
        """
        settings = get_settings()
        self.access_token = access_token if access_token is not None else settings.mercadopago_access_token
        self.base_url = (base_url or settings.mercadopago_api_url).rstrip("/")
        self.timeout = timeout or settings.mercadopago_timeout_seconds
        self._transport = transport
        self.retry_wait = retry_wait if retry_wait is not None else wait_exponential(multiplier=0.5, min=0.5, max=4)

    async def get_payment(self, payment_id: str) -> PaymentEvent:
        """Fetch a payment and reduce it to a PaymentEvent."""
        data = await self._get(f"/v1/payments/{payment_id}", resource="payment", resource_id=payment_id)
        payment = MercadoPagoPayment.model_validate(data)
        logger.info("mercadopago_payment_fetched", payment_id=payment.id, status=payment.status)
        return payment.to_event()

    async def get_preapproval(
        self,
        resource_id: str,
        event_type: str = EventType.SUBSCRIPTION_PREAPPROVAL,
    ) -> PaymentEvent:
        """Fetch a preapproval (recurring subscription) and reduce it to a PaymentEvent.

        For ``subscription_authorized_payment`` notifications ``resource_id`` is
        an authorized payment (one recurring charge); its ``preapproval_id`` is
        looked up first.
        """
        preapproval_id = resource_id
        if event_type == EventType.SUBSCRIPTION_AUTHORIZED_PAYMENT:
            data = await self._get(
                f"/authorized_payments/{resource_id}", resource="authorized_payment", resource_id=resource_id
            )
            charge = MercadoPagoAuthorizedPayment.model_validate(data)
            if not charge.preapproval_id:
                raise ProviderError(f"Authorized payment {resource_id} has no preapproval_id")
            preapproval_id = charge.preapproval_id
            logger.info(
                "mercadopago_authorized_payment_fetched",
                authorized_payment_id=charge.id,
                preapproval_id=preapproval_id,
                status=charge.status,
            )

        data = await self._get(f"/preapproval/{preapproval_id}", resource="preapproval", resource_id=preapproval_id)
        preapproval = MercadoPagoPreapproval.model_validate(data)
        logger.info("mercadopago_preapproval_fetched", preapproval_id=preapproval.id, status=preapproval.status)
        return preapproval.to_event(event_type)

    async def _get(self, endpoint: str, resource: str, resource_id: str) -> dict:
        """Authenticated GET with retries on transient failures.

        Raises:
            ProviderResourceNotFoundError: 404
            ProviderUnavailableError: Transport error, 5xx or 429 after all attempts
            ProviderError: Any other non-2xx response, or no access token configured
        """
        if not self.access_token:
            raise ProviderError("MercadoPago access token not configured")

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type((httpx.TransportError, ProviderUnavailableError)),
                stop=stop_after_attempt(MAX_ATTEMPTS),
                wait=self.retry_wait,
                reraise=True,
                before_sleep=_log_retry,
            ):
                with attempt:
                    return await self._request(endpoint, resource, resource_id)
        except httpx.TransportError as exc:
            raise ProviderUnavailableError(f"MercadoPago request failed: {exc}") from exc
        raise ProviderUnavailableError("MercadoPago request exhausted retries")

    async def _request(self, endpoint: str, resource: str, resource_id: str) -> dict:
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
        }

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.get(f"{self.base_url}{endpoint}", headers=headers)

        if response.status_code == 404:
            raise ProviderResourceNotFoundError(resource, resource_id)
        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderUnavailableError(
                f"MercadoPago returned {response.status_code} for {resource} {resource_id}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise ProviderError(
                f"MercadoPago returned {response.status_code} for {resource} {resource_id}: {response.text[:200]}",
                status_code=response.status_code,
            )

        return response.json()
