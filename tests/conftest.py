import json
import os
from urllib.parse import parse_qs

from cryptography.fernet import Fernet

# Settings are loaded when application modules are imported.
TEST_ENV = {
    "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
    "ENCRYPTION_KEY": Fernet.generate_key().decode(),
    "JWT_SECRET_KEY": "test-jwt-secret",
    "SERVICE_API_KEY": "test-service-key",
    "SALESFORCE_LOGIN_URL": "https://login.salesforce.test",
    "SALESFORCE_CLIENT_ID": "abc123",
    "SALESFORCE_CLIENT_SECRET": "shh",
    "SALESFORCE_REDIRECT_URI": "https://app.example/callback",
}
for _key, _value in TEST_ENV.items():
    os.environ.setdefault(_key, _value)

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool

from auth.encryption import TokenCipher
from core.authentication import AUTH_COOKIE, generate_jwt_token
from core.config import Settings
from core.db import init_db
from core.orm import create_engine, create_session_factory
from services.credential_store import CredentialStore
from services.diagnostics import DiagnosticsService


def make_settings(**overrides) -> Settings:
    values = dict(TEST_ENV)
    values.update(overrides)
    return Settings(_env_file=None, **values)


class FakeProvider:
    """
    Serves Salesforce and Jira endpoints for httpx.MockTransport and records
    every request it receives.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], httpx.Response] = {}

    def add(self, method: str, path: str, status_code: int = 200, body=None, html=None):
        if html is not None:
            self.routes[(method, path)] = httpx.Response(
                status_code, content=html, headers={"Content-Type": "text/html"}
            )
            return
        self.routes[(method, path)] = httpx.Response(
            status_code,
            content=json.dumps(body if body is not None else {}),
            headers={"Content-Type": "application/json"},
        )

    def form(self, index: int = -1) -> dict[str, str]:
        body = self.requests[index].content.decode()
        return {k: v[0] for k, v in parse_qs(body).items()}

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.routes.get((request.method, request.url.path))
        if response is None:
            return httpx.Response(404, json={"error": "not found"})
        return response


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def cipher(settings) -> TokenCipher:
    return TokenCipher(settings.ENCRYPTION_KEY)


@pytest_asyncio.fixture
async def engine():
    engine = create_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(engine, cipher) -> CredentialStore:
    return CredentialStore(create_session_factory(engine), cipher)


@pytest.fixture
def diagnostics(store) -> DiagnosticsService:
    return DiagnosticsService(store)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest_asyncio.fixture
async def provider_client(provider):
    async with httpx.AsyncClient(transport=httpx.MockTransport(provider.handler)) as client:
        yield client


def session_cookie(user_id: str, settings: Settings) -> dict[str, str]:
    return {AUTH_COOKIE: generate_jwt_token(user_id, settings.JWT_SECRET_KEY)}


@pytest_asyncio.fixture
async def make_client(settings, engine, provider_client):
    """
    Returns a factory for ASGI clients against a fresh app. Pass user_id to
    send a session cookie and settings to override configuration.
    """
    from main import create_app

    clients = []

    def _make(user_id: str | None = None, app_settings: Settings | None = None):
        app_settings = app_settings or settings
        app = create_app(app_settings, engine=engine, http_client=provider_client)
        client = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app),
            base_url="http://testserver",
            cookies=session_cookie(user_id, app_settings) if user_id else None,
        )
        clients.append(client)
        return client

    yield _make

    for client in clients:
        await client.aclose()
