"""HTTP tests for the authenticated billing routes: status, reconcile, cancel."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select

from app.db.models.profile import Profile
from app.db.models.subscription import Subscription

pytestmark = pytest.mark.integration


async def _add_active(session_factory, user_id: str = "u1", plan: str = "pro", expires_in_days: int = 20):
    now = datetime.now(UTC)
    async with session_factory() as session:
        session.add(
            Subscription(
                user_id=user_id,
                plan_type=plan,
                status="active",
                started_at=now - timedelta(days=10),
                expires_at=now + timedelta(days=expires_in_days),
                mercadopago_payment_id="p1",
            )
        )
        await session.commit()


class TestAuthRequired:
    @pytest.mark.parametrize(
        "method,path",
        [("get", "/api/billing/status"), ("post", "/api/billing/reconcile"), ("post", "/api/billing/cancel")],
    )
    async def test_missing_token_401(self, client, method, path):
        response = await client.request(method.upper(), path)

        assert response.status_code == 401
        assert "debug_id" in response.json()


class TestBillingStatus:
    async def test_free_user(self, client, authed_as, profile_u1):
        authed_as("u1")

        response = await client.get("/api/billing/status")

        assert response.status_code == 200
        data = response.json()
        assert data["plan"] == "free"
        assert data["has_subscription"] is False
        assert data["subscription"] is None
        assert data["history"] == []

    async def test_paid_user_reconciled_from_ledger(self, client, authed_as, session_factory, profile_u1):
        await _add_active(session_factory, plan="starter")
        authed_as("u1")

        response = await client.get("/api/billing/status")

        data = response.json()
        assert data["plan"] == "starter"
        assert data["has_subscription"] is True
        assert data["subscription"]["plan_type"] == "starter"
        assert len(data["history"]) == 1

    async def test_unknown_profile_404(self, client, authed_as, db_engine):
        authed_as("ghost")

        response = await client.get("/api/billing/status")

        assert response.status_code == 404


class TestReconcile:
    async def test_reports_correction(self, client, authed_as, make_profile):
        await make_profile("u1", "u@example.com", plan="pro")
        authed_as("u1")

        response = await client.post("/api/billing/reconcile")

        assert response.status_code == 200
        assert response.json() == {"old_plan": "pro", "new_plan": "free", "changed": True}

    async def test_no_change(self, client, authed_as, profile_u1):
        authed_as("u1")

        response = await client.post("/api/billing/reconcile")

        assert response.json()["changed"] is False


class TestCancel:
    async def test_cancels_and_projects_free(self, client, authed_as, session_factory, make_profile):
        await make_profile("u1", "u@example.com", plan="pro")
        await _add_active(session_factory, plan="pro")
        authed_as("u1")

        response = await client.post("/api/billing/cancel")

        assert response.status_code == 200
        assert response.json() == {"cancelled": 1, "plan": "free"}
        async with session_factory() as session:
            profile = await session.get(Profile, "u1")
            subs = (await session.execute(select(Subscription))).scalars().all()
        assert profile.plan == "free"
        assert [s.status for s in subs] == ["cancelled"]

    async def test_no_active_subscription_404(self, client, authed_as, profile_u1):
        authed_as("u1")

        response = await client.post("/api/billing/cancel")

        assert response.status_code == 404
