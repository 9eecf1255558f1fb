"""Tests for Bearer token resolution via Microsoft Graph."""

import json
from unittest.mock import AsyncMock, patch

import httpx
import jwt
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from intuneget.api.dependencies import get_current_user
from intuneget.services.graph_service import GraphIdentity

SIGNING_KEY = "unit-test-signing-key-with-enough-bytes"


def _credentials(claims: dict | None = None, raw: str | None = None) -> HTTPAuthorizationCredentials:
    token = raw if raw is not None else jwt.encode(claims or {}, SIGNING_KEY, algorithm="HS256")
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


@pytest.fixture
def redis():
    client = AsyncMock()
    client.get.return_value = None
    with patch("intuneget.api.dependencies.get_redis_client", return_value=client):
        yield client


class TestGetCurrentUser:
    @patch("intuneget.api.dependencies.graph_service.get_me", new_callable=AsyncMock)
    async def test_resolves_and_caches(self, mock_get_me, redis):
        mock_get_me.return_value = GraphIdentity(user_id="oid-1", email="admin@contoso.com")

        user = await get_current_user(credentials=_credentials({"tid": "tenant-1", "oid": "oid-1"}))

        assert user.user_id == "oid-1"
        assert user.tenant_id == "tenant-1"
        assert user.email == "admin@contoso.com"
        key, payload = redis.set.await_args.args
        assert key.startswith("ig:identity:")
        assert json.loads(payload) == {"user_id": "oid-1", "tenant_id": "tenant-1", "email": "admin@contoso.com"}
        assert redis.set.await_args.kwargs == {"ex": 60}

    @patch("intuneget.api.dependencies.graph_service.get_me", new_callable=AsyncMock)
    async def test_cache_hit_skips_graph(self, mock_get_me, redis):
        redis.get.return_value = json.dumps({"user_id": "oid-1", "tenant_id": "tenant-1", "email": None})

        user = await get_current_user(credentials=_credentials({"tid": "tenant-1"}))

        assert user.user_id == "oid-1"
        mock_get_me.assert_not_awaited()

    @patch("intuneget.api.dependencies.graph_service.get_me", new_callable=AsyncMock)
    async def test_missing_tenant_claim(self, mock_get_me, redis):
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(credentials=_credentials({"oid": "oid-1"}))

        assert exc_info.value.status_code == 401
        mock_get_me.assert_not_awaited()

    @patch("intuneget.api.dependencies.graph_service.get_me", new_callable=AsyncMock)
    async def test_malformed_token(self, mock_get_me, redis):
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(credentials=_credentials(raw="not-a-jwt"))

        assert exc_info.value.status_code == 401
        assert exc_info.value.headers == {"WWW-Authenticate": "Bearer"}

    @patch("intuneget.api.dependencies.graph_service.get_me", new_callable=AsyncMock)
    async def test_graph_rejects_token(self, mock_get_me, redis):
        mock_get_me.return_value = None

        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(credentials=_credentials({"tid": "tenant-1"}))

        assert exc_info.value.status_code == 401
        redis.set.assert_not_awaited()

    @patch("intuneget.api.dependencies.graph_service.get_me", new_callable=AsyncMock)
    async def test_graph_unreachable(self, mock_get_me, redis):
        mock_get_me.side_effect = httpx.ConnectError("connection refused")

        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(credentials=_credentials({"tid": "tenant-1"}))

        assert exc_info.value.status_code == 503
