from __future__ import annotations

from types import SimpleNamespace
import time
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from leadflow.apps.api import rate_limit
from leadflow.apps.api.main import create_app
from leadflow.tests.utils.seed import create_site


def _payload(site, **extra) -> dict:
    body = {
        "s": site.public_id,
        "ec": "interaction",
        "ea": "click",
        "el": "cta",
        "url": "https://shop.test/?gclid=abc123",
        "meta": {"fp": "fp-1"},
    }
    body.update(extra)
    return body


@pytest.mark.asyncio
async def test_ingest_accepts_and_reports_quota_headers(client, database) -> None:
    site = await create_site(database, monthly_limit=10)
    response = await client.post("/v1/ingest", json=_payload(site))
    assert response.status_code == 200
    body = response.json()
    assert body["data"]["status"] == "accepted"
    assert body["data"]["billable"] is True
    assert body["data"]["session_id"]
    assert body["meta"]["request_id"]
    assert response.headers["x-leadflow-quota-remaining"] == "9"


@pytest.mark.asyncio
async def test_repeated_page_view_is_reported_as_duplicate(client, database) -> None:
    site = await create_site(database)
    payload = _payload(site, ec="page", ea="page_view", ts=int(time.time() * 1000))
    first = await client.post("/v1/ingest", json=payload)
    second = await client.post("/v1/ingest", json=payload)
    assert first.json()["data"]["status"] == "accepted"
    assert second.status_code == 200
    assert second.json()["data"]["status"] == "duplicate"


@pytest.mark.asyncio
async def test_quota_exhaustion_returns_429_with_retry_after(client, database) -> None:
    site = await create_site(database, monthly_limit=2)
    assert (await client.post("/v1/ingest", json=_payload(site, el="a"))).status_code == 200
    response = await client.post("/v1/ingest", json=_payload(site, el="b"))
    assert response.status_code == 429
    body = response.json()
    assert body["error"]["code"] == "QUOTA_EXCEEDED"
    assert int(response.headers["Retry-After"]) >= 1
    assert response.headers["x-leadflow-quota-exceeded"] == "1"


@pytest.mark.asyncio
async def test_rate_limit_rejects_bursts(database, redis, provider, settings, monkeypatch) -> None:
    monkeypatch.setattr(rate_limit, "time", SimpleNamespace(time=lambda: 1_800_000_000.0))
    limited = settings.model_copy(update={"ingest_rate_limit_per_minute": 1})
    app = create_app(database=database, redis=redis, provider=provider, settings=limited)
    site = await create_site(database)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        assert (await client.post("/v1/ingest", json=_payload(site, el="a"))).status_code == 200
        response = await client.post("/v1/ingest", json=_payload(site, el="b"))
    assert response.status_code == 429
    assert response.json()["error"]["code"] == "RATE_LIMITED"
    assert response.headers["Retry-After"] == "60"


@pytest.mark.asyncio
async def test_rate_limiter_fails_closed_without_redis(database, provider, settings) -> None:
    closed = settings.model_copy(update={"rl_fail_mode": "closed"})
    app = create_app(database=database, redis=None, provider=provider, settings=closed)
    site = await create_site(database)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/v1/ingest", json=_payload(site))
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "SERVICE_UNAVAILABLE"


@pytest.mark.asyncio
async def test_rate_limiter_fails_open_without_redis(database, provider, settings) -> None:
    app = create_app(database=database, redis=None, provider=provider, settings=settings)
    site = await create_site(database)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/v1/ingest", json=_payload(site))
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_internal_site_ids_are_refused(client) -> None:
    response = await client.post("/v1/ingest", json={"s": str(uuid4()), "ec": "interaction", "ea": "click"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "IDENTITY_BOUNDARY"


@pytest.mark.asyncio
async def test_unknown_site_is_404(client) -> None:
    response = await client.post("/v1/ingest", json={"s": uuid4().hex, "ec": "interaction", "ea": "click"})
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_malformed_payload_is_rejected(client) -> None:
    response = await client.post("/v1/ingest", json=["not", "an", "object"])
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_FAILED"
