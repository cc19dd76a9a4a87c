"""MercadoPago webhook signature verification.

The ``x-signature`` header carries ``ts=<unix seconds>,v1=<hex hmac>``. The
HMAC-SHA256 is computed over the manifest
``id:<data.id>;request-id:<x-request-id>;ts:<ts>;`` with the shared webhook
secret. A correct HMAC is not enough: the timestamp must also be within
SIGNATURE_TOLERANCE_SECONDS of now, so captured deliveries cannot be replayed.
"""

import hashlib
import hmac
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

import structlog

from app.core.exceptions import WebhookSecretNotConfiguredError

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "x-signature"
REQUEST_ID_HEADER = "x-request-id"

# Replay window
SIGNATURE_TOLERANCE_SECONDS = 300

# Timestamps above this are milliseconds (year 5138 in seconds)
_MILLISECONDS_THRESHOLD = 10**11


@dataclass(frozen=True)
class SignatureParts:
    ts: int  # seconds
    raw_ts: str  # as sent; part of the signed manifest
    v1: str


def normalize_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Lower-case header names so lookups are case-insensitive."""
    return {str(k).lower(): str(v) for k, v in headers.items()}


def parse_signature_header(value: str | None) -> SignatureParts | None:
    """Parse ``ts=...,v1=...``; None if either part is missing or malformed."""
    if not value:
        return None

    parts: dict[str, str] = {}
    for item in value.split(","):
        key, sep, val = item.partition("=")
        if not sep:
            continue
        parts[key.strip().lower()] = val.strip()

    ts_raw = parts.get("ts")
    v1 = parts.get("v1")
    if not ts_raw or not v1 or not ts_raw.isdigit():
        return None
    try:
        bytes.fromhex(v1)
    except ValueError:
        return None

    ts = int(ts_raw)
    if ts >= _MILLISECONDS_THRESHOLD:
        ts //= 1000
    return SignatureParts(ts=ts, raw_ts=ts_raw, v1=v1.lower())


def build_manifest(data_id: str, request_id: str, ts: int | str) -> str:
    """Canonical string the provider signs."""
    resource_id = str(data_id)
    if resource_id.isalnum():
        resource_id = resource_id.lower()
    return f"id:{resource_id};request-id:{request_id};ts:{ts};"


def compute_signature(secret: str, data_id: str, request_id: str, ts: int | str) -> str:
    manifest = build_manifest(data_id, request_id, ts)
    return hmac.new(secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()


class SignatureVerifier:
    """Validates that a webhook came from MercadoPago and is fresh."""

    def __init__(self, secret: str, clock: Callable[[], float] = time.time):
        self._secret = secret
        self._clock = clock

    def verify(self, headers: Mapping[str, str], data_id: str) -> bool:
        """Return True only if the signature is authentic and fresh.

        Raises:
            WebhookSecretNotConfiguredError: If no shared secret is configured.
                Unsigned input is never accepted silently.
        """
        if not self._secret:
            raise WebhookSecretNotConfiguredError()

        try:
            normalized = normalize_headers(headers)
            parts = parse_signature_header(normalized.get(SIGNATURE_HEADER))
            request_id = normalized.get(REQUEST_ID_HEADER, "")
            if parts is None or not request_id or not data_id:
                logger.warning("webhook_signature_malformed", has_request_id=bool(request_id))
                return False

            skew = abs(self._clock() - parts.ts)
            if skew > SIGNATURE_TOLERANCE_SECONDS:
                logger.warning("webhook_signature_stale", skew_seconds=int(skew))
                return False

            expected = compute_signature(self._secret, data_id, request_id, parts.raw_ts)
            if not hmac.compare_digest(expected, parts.v1):
                logger.warning("webhook_signature_mismatch", data_id=data_id)
                return False

            return True
        except Exception as exc:
            logger.warning("webhook_signature_verification_error", error=str(exc), error_type=type(exc).__name__)
            return False
