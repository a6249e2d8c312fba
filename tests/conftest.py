"""Pytest configuration and fixtures for mongogui tests."""

import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set test environment variables before importing mongogui modules
os.environ["JWT_SECRET"] = "test-jwt-secret-" + "j" * 32
os.environ["SESSION_SECRET"] = "test-session-secret-" + "s" * 32
os.environ["SESSION_KEY_SALT"] = "00112233445566778899aabbccddeeff"
os.environ["ENVIRONMENT"] = "test"

from mongogui.core.config import Settings, get_settings  # noqa: E402
from mongogui.services.auth import AuthService  # noqa: E402
from mongogui.services.connection import ConnectionService  # noqa: E402
from mongogui.services.manager import ServiceManager  # noqa: E402
from mongogui.services.session import SessionService  # noqa: E402

# Fixed session key so tests skip the PBKDF2 derivation
TEST_SESSION_KEY = bytes(range(32))


class FakeClock:
    """Controllable clock injected into services and stores."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime.now(UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def auth_service(settings, clock) -> AuthService:
    return AuthService(settings, clock=clock)


@pytest.fixture
def session_service(settings, clock) -> SessionService:
    return SessionService(settings, key=TEST_SESSION_KEY, clock=clock)


@pytest.fixture
def connection_service(settings, clock) -> ConnectionService:
    return ConnectionService(settings, clock=clock)


@pytest.fixture
def manager(settings, auth_service, session_service, connection_service) -> ServiceManager:
    return ServiceManager(
        settings,
        auth_service=auth_service,
        session_service=session_service,
        connection_service=connection_service,
    )


@pytest.fixture(autouse=True)
def reset_global_state():
    """Reset the ServiceManager singleton and login rate limiter around each test."""
    from mongogui.api.auth import reset_login_attempts

    ServiceManager.reset_instance()
    reset_login_attempts()
    yield
    ServiceManager.reset_instance()
    reset_login_attempts()


@pytest_asyncio.fixture
async def async_client(manager) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client for the full app, backed by the `manager` fixture."""
    from mongogui.main import create_app

    ServiceManager._instance = manager
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def login(async_client):
    """Log in with the demo credentials and return the response body."""

    async def _login(**overrides) -> dict:
        payload = {"username": "admin", "password": "admin", **overrides}
        response = await async_client.post("/auth/login", json=payload)
        assert response.status_code == 200, response.text
        return response.json()

    return _login
