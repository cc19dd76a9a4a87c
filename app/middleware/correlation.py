"""Correlation ID middleware for webhook and API tracing.

MercadoPago sends an ``x-request-id`` with every notification; the same value
is part of the signed manifest. Using it as the correlation id ties our logs
for a delivery to the provider's own delivery log.
"""

import uuid

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id
from fastapi import FastAPI

REQUEST_ID_HEADER = "X-Request-ID"


def setup_correlation_middleware(app: FastAPI) -> None:
    """Add correlation ID middleware to the FastAPI app.

    An incoming X-Request-ID (the provider's request id on webhooks) is kept
    verbatim and echoed on the response; otherwise a UUID4 is generated.
    """
    app.add_middleware(
        CorrelationIdMiddleware,
        header_name=REQUEST_ID_HEADER,
        generator=lambda: str(uuid.uuid4()),
        validator=None,  # provider ids are not UUIDs
        transformer=lambda a: a,
    )


def get_correlation_id() -> str | None:
    """Return the current request's correlation ID, or None outside a request."""
    return correlation_id.get(None)


__all__ = ["REQUEST_ID_HEADER", "setup_correlation_middleware", "get_correlation_id"]
