from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import select, update

from leadflow.domain.models import MonthlyUsage, ReconciliationJob
from leadflow.services import reconciliation
from leadflow.services.ingest.idempotency import year_month_of
from leadflow.services.ingest.quota import get_usage, usage_cache_key
from leadflow.services.results import Degraded, Ok
from leadflow.tests.utils.seed import add_ledger_rows, create_site


def _current_month() -> str:
    return year_month_of(datetime.now(timezone.utc))


@pytest.mark.asyncio
async def test_drifted_cache_is_overwritten_with_ledger_count(database, redis) -> None:
    site = await create_site(database)
    month = _current_month()
    await add_ledger_rows(database, tenant_id=site.id, year_month=month, count=100)
    await add_ledger_rows(database, tenant_id=site.id, year_month=month, count=3, billable=False)
    await add_ledger_rows(database, tenant_id=site.id, year_month=month, count=4, billing_state="OVERAGE")
    redis.values[usage_cache_key(site.id, month)] = "120"

    async with database.session() as session:
        report = await reconciliation.reconcile(session, redis=redis, tenant_id=site.id, year_month=month)

    assert report.billable_count == 104
    assert report.overage_count == 4
    assert isinstance(report.cache, Ok)
    assert report.cache.value.corrected is True
    assert redis.values[usage_cache_key(site.id, month)] == "104"
    async with database.session() as session:
        snapshot = (
            await session.execute(select(MonthlyUsage).where(MonthlyUsage.tenant_id == site.id))
        ).scalar_one()
    assert snapshot.event_count == 104
    assert snapshot.overage_count == 4


@pytest.mark.asyncio
async def test_small_drift_is_left_alone(database, redis) -> None:
    site = await create_site(database)
    month = _current_month()
    await add_ledger_rows(database, tenant_id=site.id, year_month=month, count=20)
    redis.values[usage_cache_key(site.id, month)] = "25"

    async with database.session() as session:
        report = await reconciliation.reconcile(session, redis=redis, tenant_id=site.id, year_month=month)

    assert report.cache.value.corrected is False
    assert report.drift_pct == 0.25
    assert redis.values[usage_cache_key(site.id, month)] == "25"


@pytest.mark.asyncio
async def test_reconcile_without_cache_still_writes_snapshot(database) -> None:
    site = await create_site(database)
    month = _current_month()
    await add_ledger_rows(database, tenant_id=site.id, year_month=month, count=7)

    async with database.session() as session:
        report = await reconciliation.reconcile(session, redis=None, tenant_id=site.id, year_month=month)
        usage = await get_usage(session, redis=None, tenant_id=site.id, year_month=month)

    assert isinstance(report.cache, Degraded)
    assert report.billable_count == 7
    # The snapshot now answers usage lookups before the ledger count does.
    assert usage == Ok(7)


@pytest.mark.asyncio
async def test_enqueue_creates_then_requeues_finished_jobs(database) -> None:
    site = await create_site(database)
    month = _current_month()
    await add_ledger_rows(database, tenant_id=site.id, year_month=month, count=1)

    async with database.session() as session:
        first = await reconciliation.enqueue_jobs(session)
    assert first == {"active_tenants": 1, "created": 2, "requeued": 0}

    async with database.session() as session:
        again = await reconciliation.enqueue_jobs(session)
    assert again["created"] == 0 and again["requeued"] == 0

    async with database.session() as session:
        await session.execute(update(ReconciliationJob).values(status="COMPLETED"))
        await session.commit()
        requeued = await reconciliation.enqueue_jobs(session)
    assert requeued["requeued"] == 2

    async with database.session() as session:
        months = sorted(
            (await session.execute(select(ReconciliationJob.year_month).where(ReconciliationJob.tenant_id == site.id)))
            .scalars()
            .all()
        )
    assert months == sorted([month, reconciliation.previous_year_month(month)])


@pytest.mark.asyncio
async def test_run_jobs_completes_each_claimed_job(database, redis, settings) -> None:
    site = await create_site(database)
    month = _current_month()
    await add_ledger_rows(database, tenant_id=site.id, year_month=month, count=3)
    async with database.session() as session:
        await reconciliation.enqueue_jobs(session)
        summary = await reconciliation.run_jobs(session, redis=redis, settings=settings)

    assert summary == {"processed": 2, "completed": 2, "failed": 0}
    async with database.session() as session:
        statuses = (await session.execute(select(ReconciliationJob.status))).scalars().all()
    assert set(statuses) == {"COMPLETED"}
    assert redis.values[usage_cache_key(site.id, month)] == "3"


def test_previous_month_wraps_the_year() -> None:
    assert reconciliation.previous_year_month("2026-01") == "2025-12"
    assert reconciliation.previous_year_month("2026-10") == "2026-09"
