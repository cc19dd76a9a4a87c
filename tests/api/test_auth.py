"""Tests for Supabase JWT authentication."""

import time
from unittest.mock import MagicMock

import jwt as pyjwt
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from app.core.auth import decode_supabase_jwt, require_auth
from app.core.config import get_settings

pytestmark = pytest.mark.unit

_SECRET = "super-secret-jwt-token-with-at-least-32-characters"


@pytest.fixture(autouse=True)
def supabase_settings(monkeypatch):
    settings = get_settings()
    monkeypatch.setattr(settings, "supabase_jwt_secret", _SECRET)
    monkeypatch.setattr(settings, "supabase_jwt_audience", "authenticated")
    monkeypatch.setattr(settings, "supabase_url", "https://abc.supabase.co")
    return settings


def _token(secret: str = _SECRET, **overrides) -> str:
    now = int(time.time())
    payload = {
        "sub": "u1",
        "aud": "authenticated",
        "iss": "https://abc.supabase.co/auth/v1",
        "email": "u@example.com",
        "iat": now,
        "exp": now + 3600,
    }
    payload.update(overrides)
    payload = {k: v for k, v in payload.items() if v is not None}
    return pyjwt.encode(payload, secret, algorithm="HS256")


def _creds(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


class TestDecode:
    def test_valid_token(self):
        user = decode_supabase_jwt(_token())

        assert user.user_id == "u1"
        assert user.email == "u@example.com"

    def test_expired(self):
        with pytest.raises(HTTPException) as exc_info:
            decode_supabase_jwt(_token(exp=int(time.time()) - 10))
        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "Token expired"

    def test_wrong_secret(self):
        with pytest.raises(HTTPException) as exc_info:
            decode_supabase_jwt(_token(secret="another-secret-that-is-long-enough-too"))
        assert exc_info.value.status_code == 401

    def test_wrong_audience(self):
        with pytest.raises(HTTPException) as exc_info:
            decode_supabase_jwt(_token(aud="anon"))
        assert exc_info.value.status_code == 401

    def test_missing_sub(self):
        with pytest.raises(HTTPException) as exc_info:
            decode_supabase_jwt(_token(sub=None))
        assert exc_info.value.status_code == 401

    def test_unconfigured_secret_is_500(self, supabase_settings, monkeypatch):
        monkeypatch.setattr(supabase_settings, "supabase_jwt_secret", "")

        with pytest.raises(HTTPException) as exc_info:
            decode_supabase_jwt(_token())
        assert exc_info.value.status_code == 500


class TestRequireAuth:
    async def test_sets_request_user(self):
        request = MagicMock()

        user = await require_auth(request, _creds(_token()))

        assert user.user_id == "u1"
        assert request.state.user_id == "u1"

    async def test_missing_credentials(self):
        with pytest.raises(HTTPException) as exc_info:
            await require_auth(MagicMock(), None)
        assert exc_info.value.status_code == 401

    async def test_issuer_mismatch(self):
        with pytest.raises(HTTPException) as exc_info:
            await require_auth(MagicMock(), _creds(_token(iss="https://evil.supabase.co/auth/v1")))
        assert exc_info.value.status_code == 401
