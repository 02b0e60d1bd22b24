import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from lendingdesk.auth import TokenService
from lendingdesk.config import Settings
from lendingdesk.main import app, get_db, get_settings, get_token_service
from lendingdesk.storage import ensure_indexes


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def test_settings():
    return Settings(
        mongodb_url="mongodb://unused",
        database_name="library_test",
        rabbitmq_url=None,
        access_token_secret="test-access-secret-0123456789abcdef",
        refresh_token_secret="test-refresh-secret-0123456789abcdef",
        access_token_ttl_seconds=200,
        refresh_token_ttl_seconds=7 * 24 * 60 * 60,
        default_lending_days=14,
        environment="test",
    )


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def token_service(test_settings, clock):
    return TokenService(test_settings, clock=clock)


# backend fixtures


@pytest.fixture
async def test_db():
    db = AsyncMongoMockClient()["library_test"]
    await ensure_indexes(db)
    yield db


@pytest.fixture
def api_db():
    db = AsyncMongoMockClient()["library_api_test"]
    asyncio.run(ensure_indexes(db))
    return db


@pytest.fixture
def client(api_db, test_settings, token_service):
    app.state.testing = True
    app.state.rabbitmq_manager = None
    app.dependency_overrides[get_db] = lambda: api_db
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_token_service] = lambda: token_service
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    app.state.testing = False


LIBRARIAN = {"name": "Nimal Perera", "email": "nimal@example.com", "password": "secret123"}


@pytest.fixture
def librarian(client):
    client.post("/auth/signup", json=LIBRARIAN)
    response = client.post(
        "/auth/login",
        json={"email": LIBRARIAN["email"], "password": LIBRARIAN["password"]},
    )
    return response.json()


@pytest.fixture
def auth_headers(librarian):
    return {"Authorization": f"Bearer {librarian['access_token']}"}
