"""Fixtures for router tests: an app with auth, database and catalog overridden."""

from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from intuneget.api.app import create_application
from intuneget.api.dependencies import AuthenticatedUser, get_current_user
from intuneget.catalog import get_catalog
from intuneget.db.session import get_db


@pytest.fixture
def current_user() -> AuthenticatedUser:
    return AuthenticatedUser(user_id="user-1", tenant_id="tenant-1", email="admin@contoso.com")


@pytest.fixture
def audit():
    with patch("intuneget.services.audit_service.record_action", new_callable=AsyncMock) as mock:
        yield mock


@pytest_asyncio.fixture
async def client(session_factory, file_catalog, current_user, audit) -> AsyncGenerator[AsyncClient]:
    """HTTP client against the app, authenticated as current_user."""
    app = create_application()

    async def override_auth():
        return current_user

    async def override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_current_user] = override_auth
    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_catalog] = lambda: file_catalog

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
