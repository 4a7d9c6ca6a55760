from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from leadflow.apps.api.main import create_app
from leadflow.core.config import get_settings
from leadflow.domain.models import Base
from leadflow.persistence.db import Database
from leadflow.providers.conversions.fake import NoopConversionProvider
from leadflow.services.resilience import reset_local_locks
from leadflow.services.telemetry import reset_telemetry
from leadflow.tests.utils.fakes import FakeRedis
from leadflow.tests.utils.seed import CRON_SECRET, OCI_API_KEY


@pytest.fixture(autouse=True)
def _test_environment(monkeypatch):
    # Every test runs against in-memory sqlite and a fresh settings cache.
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite://")
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setenv("CRON_SECRET", CRON_SECRET)
    monkeypatch.setenv("OCI_API_KEY", OCI_API_KEY)
    monkeypatch.setenv("OCI_SESSION_SECRET", "oci-session-secret")
    monkeypatch.setenv("CREDENTIALS_MASTER_KEY", "credentials-master-key")
    monkeypatch.setenv("PROVIDER_BASE_URL", "noop://test")
    get_settings.cache_clear()
    reset_local_locks()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_local_locks()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
async def database(settings):
    db = Database(settings=settings)
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db
    await db.close()


@pytest.fixture
def redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def provider() -> NoopConversionProvider:
    return NoopConversionProvider()


@pytest.fixture
def app(database, redis, provider, settings):
    return create_app(database=database, redis=redis, provider=provider, settings=settings)


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
