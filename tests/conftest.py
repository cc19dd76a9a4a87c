"""Shared test fixtures: SQLite ledger database, fake Redis, fake MercadoPago."""

import time
from decimal import Decimal

import pytest
from fakeredis import FakeAsyncRedis
from sqlalchemy.ext.asyncio import create_async_engine

from app.core.exceptions import ProviderResourceNotFoundError
from app.core.locking import UserLock
from app.db.base import build_session_factory, create_tables
from app.db.models.profile import Profile
from app.domain.payments import EventType, PaymentEvent
from app.domain.signature import SignatureVerifier, compute_signature
from app.services.reconciliation_service import ReconciliationService
from app.services.subscription_ledger import SubscriptionLedger

WEBHOOK_SECRET = "test-webhook-secret"


class FakeMercadoPago:
    """In-memory stand-in for MercadoPagoClient.

    Register resources with ``add_payment`` / ``add_preapproval``; unknown ids
    raise ProviderResourceNotFoundError like a real 404.
    """

    def __init__(self):
        self.payments: dict[str, PaymentEvent] = {}
        self.preapprovals: dict[str, PaymentEvent] = {}
        self.calls: list[tuple[str, str]] = []
        self.error: Exception | None = None

    def add_payment(
        self,
        payment_id: str,
        status: str = "approved",
        payer_email: str | None = "u@example.com",
        amount: str | None = "149.90",
        external_reference: str | None = None,
        metadata: dict | None = None,
    ) -> PaymentEvent:
        event = PaymentEvent(
            event_type=EventType.PAYMENT,
            resource_id=payment_id,
            status=status,
            payer_email=payer_email,
            amount=Decimal(amount) if amount is not None else None,
            external_reference=external_reference,
            metadata=metadata or {},
            payment_method="pix",
        )
        self.payments[payment_id] = event
        return event

    def add_preapproval(
        self,
        preapproval_id: str,
        status: str = "authorized",
        payer_email: str | None = "u@example.com",
        amount: str | None = "49.90",
        external_reference: str | None = None,
    ) -> PaymentEvent:
        event = PaymentEvent(
            event_type=EventType.SUBSCRIPTION_PREAPPROVAL,
            resource_id=preapproval_id,
            status=status,
            payer_email=payer_email,
            amount=Decimal(amount) if amount is not None else None,
            external_reference=external_reference,
            payment_method="subscription",
            provider_subscription_id=preapproval_id,
        )
        self.preapprovals[preapproval_id] = event
        return event

    async def get_payment(self, payment_id: str) -> PaymentEvent:
        self.calls.append(("payment", payment_id))
        if self.error is not None:
            raise self.error
        if payment_id not in self.payments:
            raise ProviderResourceNotFoundError("payment", payment_id)
        return self.payments[payment_id]

    async def get_preapproval(self, preapproval_id: str, event_type: str = EventType.SUBSCRIPTION_PREAPPROVAL) -> PaymentEvent:
        self.calls.append(("preapproval", preapproval_id))
        if self.error is not None:
            raise self.error
        if preapproval_id not in self.preapprovals:
            raise ProviderResourceNotFoundError("preapproval", preapproval_id)
        return self.preapprovals[preapproval_id]


def signed_headers(
    data_id: str,
    request_id: str = "req-123",
    ts: int | None = None,
    secret: str = WEBHOOK_SECRET,
) -> dict[str, str]:
    """Headers MercadoPago would send for a notification about ``data_id``."""
    ts = int(time.time()) if ts is None else ts
    v1 = compute_signature(secret, data_id, request_id, ts)
    return {
        "x-signature": f"ts={ts},v1={v1}",
        "x-request-id": request_id,
        "content-type": "application/json",
    }


@pytest.fixture
async def db_engine(tmp_path):
    """File-backed SQLite engine so concurrent sessions use separate connections.

    Also installs the engine as the global session factory for code that calls
    get_session_factory().
    """
    import app.db.base as db_mod

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}", echo=False)
    await create_tables(engine)

    db_mod._engine = engine
    db_mod._session_factory = build_session_factory(engine)

    yield engine

    db_mod._engine = None
    db_mod._session_factory = None
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
async def redis():
    """Provide fakeredis async client."""
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def user_lock(redis):
    return UserLock(redis, ttl=30, wait_timeout=5.0, poll_interval=0.01)


@pytest.fixture
def provider():
    return FakeMercadoPago()


@pytest.fixture
def ledger():
    return SubscriptionLedger(period_days=30)


@pytest.fixture
def service(session_factory, user_lock, provider, ledger):
    return ReconciliationService(
        session_factory=session_factory,
        user_lock=user_lock,
        provider=provider,
        verifier=SignatureVerifier(WEBHOOK_SECRET),
        ledger=ledger,
    )


@pytest.fixture
def make_profile(session_factory):
    """Factory fixture: insert a profile row and return it."""

    async def _make(user_id: str = "u1", email: str = "u@example.com", plan: str = "free") -> Profile:
        async with session_factory() as session:
            profile = Profile(id=user_id, email=email, name=user_id, plan=plan)
            session.add(profile)
            await session.commit()
            return profile

    return _make


@pytest.fixture
async def profile_u1(make_profile):
    return await make_profile("u1", "u@example.com")


@pytest.fixture
def sign():
    """Factory fixture: build signed webhook headers for a data id."""
    return signed_headers
