"""MercadoPago webhook endpoint."""

import structlog
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from app.services.reconciliation_service import ReconciliationService, build_reconciliation_service

logger = structlog.get_logger(__name__)

router = APIRouter()

ALLOWED_HEADERS = "Content-Type, x-signature, x-request-id"


def get_reconciliation_service() -> ReconciliationService:
    """Dependency that provides the ReconciliationService.

    Override this dependency in tests via app.dependency_overrides.
    """
    return build_reconciliation_service()


@router.post("/mercadopago/webhook")
async def mercadopago_webhook(
    request: Request,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Receive a MercadoPago notification.

    The raw body is passed through untouched; parsing, signature verification
    and dedup all happen in the service so every outcome maps to a status code.
    """
    raw_body = await request.body()
    outcome = await service.process(request.headers, raw_body)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)


@router.options("/mercadopago/webhook")
async def mercadopago_webhook_preflight():
    return Response(
        status_code=200,
        headers={
            "Access-Control-Allow-Methods": "POST, OPTIONS",
            "Access-Control-Allow-Headers": ALLOWED_HEADERS,
        },
    )
