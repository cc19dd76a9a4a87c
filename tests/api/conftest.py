"""API-specific test fixtures."""

import pytest
from httpx import ASGITransport, AsyncClient

from app.api.routes.webhooks import get_reconciliation_service
from app.core.auth import AuthUser, require_auth


def override_auth(user: AuthUser):
    """Dependency override factory for require_auth."""

    async def _override():
        return user

    return _override


@pytest.fixture
def test_app(service):
    """FastAPI app wired to the test ReconciliationService (SQLite + fakeredis)."""
    from app.main import create_app

    app = create_app()
    app.dependency_overrides[get_reconciliation_service] = lambda: service
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
async def client(test_app):
    """In-process HTTP client; lifespan is not run, the fixtures own DB and Redis."""
    async with AsyncClient(transport=ASGITransport(app=test_app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def authed_as(test_app):
    """Authenticate every request as the given user id."""

    def _auth(user_id: str = "u1") -> AuthUser:
        user = AuthUser(user_id=user_id, claims={"sub": user_id})
        test_app.dependency_overrides[require_auth] = override_auth(user)
        return user

    return _auth
