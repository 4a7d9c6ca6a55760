from __future__ import annotations

from datetime import timedelta
import time

from httpx import ASGITransport, AsyncClient
import pytest
from sqlalchemy import func, select

from leadflow.apps.api.main import create_app
from leadflow.domain.models import ConversionQueueJob, IdempotencyRecord, ReconciliationJob
from leadflow.services.ingest.idempotency import year_month_of
from leadflow.services.resilience import acquire_named_lock, release_named_lock
from leadflow.services.security import (
    HEADER_SCHEDULER_SIGNATURE,
    HEADER_SCHEDULER_TS,
    compute_scheduler_signature,
)
from leadflow.tests.utils.seed import CRON_SECRET, add_ledger_rows, create_job, create_site, utc_now


AUTH = {"Authorization": f"Bearer {CRON_SECRET}"}


async def _post_without_secret(database, redis, provider, settings, environment: str):
    unconfigured = settings.model_copy(update={"cron_secret": None, "environment": environment})
    app = create_app(database=database, redis=redis, provider=provider, settings=unconfigured)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        return await http.post("/v1/cron/dispatch", headers=AUTH)


@pytest.mark.asyncio
async def test_missing_secret_is_forbidden_outside_production(database, redis, provider, settings) -> None:
    response = await _post_without_secret(database, redis, provider, settings, "development")
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "CRON_FORBIDDEN"


@pytest.mark.asyncio
async def test_missing_secret_is_unavailable_in_production(database, redis, provider, settings) -> None:
    response = await _post_without_secret(database, redis, provider, settings, "production")
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "CRON_SECRET_MISSING"


@pytest.mark.asyncio
async def test_wrong_or_missing_credentials_are_forbidden(client) -> None:
    wrong = await client.post("/v1/cron/dispatch", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 403
    assert wrong.json()["error"]["code"] == "CRON_FORBIDDEN"
    missing = await client.post("/v1/cron/dispatch")
    assert missing.status_code == 403


@pytest.mark.asyncio
async def test_signed_scheduler_headers_are_accepted(client) -> None:
    ts = str(int(time.time()))
    headers = {
        HEADER_SCHEDULER_TS: ts,
        HEADER_SCHEDULER_SIGNATURE: compute_scheduler_signature(CRON_SECRET, ts),
    }
    response = await client.post("/v1/cron/idempotency-cleanup", headers=headers)
    assert response.status_code == 200

    stale = str(int(time.time()) - 3600)
    headers = {
        HEADER_SCHEDULER_TS: stale,
        HEADER_SCHEDULER_SIGNATURE: compute_scheduler_signature(CRON_SECRET, stale),
    }
    expired = await client.post("/v1/cron/idempotency-cleanup", headers=headers)
    assert expired.status_code == 403


@pytest.mark.asyncio
async def test_dispatch_runs_the_worker(client, database) -> None:
    site = await create_site(database)
    job = await create_job(database, tenant_id=site.id)
    response = await client.post("/v1/cron/dispatch", headers=AUTH)
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["ok"] is True
    assert data["claimed"] == 1
    # No stored credentials for the site, so the claimed job fails terminally.
    assert data["failed"] == 1
    async with database.session() as session:
        stored = (await session.execute(select(ConversionQueueJob).where(ConversionQueueJob.id == job.id))).scalar_one()
    assert stored.provider_error_code == "CREDENTIALS_MISSING"


@pytest.mark.asyncio
async def test_overlapping_run_is_skipped(client, redis) -> None:
    lock = await acquire_named_lock("dispatch", redis=redis)
    assert lock is not None
    try:
        response = await client.post("/v1/cron/dispatch", headers=AUTH)
    finally:
        await release_named_lock(lock)
    assert response.status_code == 200
    assert response.json()["data"] == {"ok": True, "skipped": True, "reason": "lock_held"}


@pytest.mark.asyncio
async def test_recover_processing_requeues_abandoned_jobs(client, database) -> None:
    site = await create_site(database)
    stuck = await create_job(
        database, tenant_id=site.id, status="PROCESSING", claimed_at=utc_now() - timedelta(minutes=30)
    )
    fresh = await create_job(database, tenant_id=site.id, status="PROCESSING", claimed_at=utc_now())

    # Values outside 1..60 are clamped, so 600 behaves like 60 and leaves both rows alone.
    clamped = await client.post("/v1/cron/recover-processing?min_age_minutes=600", headers=AUTH)
    assert clamped.json()["data"]["recovered"] == 0

    response = await client.post("/v1/cron/recover-processing", headers=AUTH)
    assert response.status_code == 200
    assert response.json()["data"]["recovered"] == 1
    async with database.session() as session:
        rows = {
            row.id: row.status
            for row in (
                await session.execute(
                    select(ConversionQueueJob).where(ConversionQueueJob.id.in_([stuck.id, fresh.id]))
                )
            ).scalars()
        }
    assert rows == {stuck.id: "RETRY", fresh.id: "PROCESSING"}


@pytest.mark.asyncio
async def test_reconcile_usage_enqueue_then_run(client, database) -> None:
    site = await create_site(database)
    await add_ledger_rows(database, tenant_id=site.id, year_month=year_month_of(utc_now()), count=3)

    enqueued = await client.post("/v1/cron/reconcile-usage/enqueue", headers=AUTH)
    assert enqueued.status_code == 200
    data = enqueued.json()["data"]
    assert data["active_tenants"] == 1
    assert data["created"] == 2

    ran = await client.post("/v1/cron/reconcile-usage/run", headers=AUTH)
    assert ran.status_code == 200
    assert ran.json()["data"]["completed"] == 2

    again = await client.post("/v1/cron/reconcile-usage/enqueue", headers=AUTH)
    assert again.json()["data"]["requeued"] == 2
    async with database.session() as session:
        queued = (
            await session.execute(
                select(func.count(ReconciliationJob.id)).where(ReconciliationJob.status == "QUEUED")
            )
        ).scalar_one()
    assert queued == 2


@pytest.mark.asyncio
async def test_idempotency_cleanup_deletes_expired_rows(client, database) -> None:
    site = await create_site(database)
    old = utc_now() - timedelta(days=200)
    await add_ledger_rows(database, tenant_id=site.id, year_month=year_month_of(old), count=2, created_at=old)
    await add_ledger_rows(database, tenant_id=site.id, year_month=year_month_of(utc_now()), count=1)

    response = await client.post("/v1/cron/idempotency-cleanup", headers=AUTH)
    assert response.status_code == 200
    assert response.json()["data"] == {"ok": True, "deleted": 2}
    async with database.session() as session:
        remaining = (await session.execute(select(func.count(IdempotencyRecord.id)))).scalar_one()
    assert remaining == 1


@pytest.mark.asyncio
async def test_health_reports_dependencies(client) -> None:
    response = await client.get("/v1/health")
    assert response.status_code == 200
    assert response.json()["data"] == {"status": "ok", "database": "ok", "cache": "ok"}
