from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from leadflow.core.errors import TerminalProviderError, TransientProviderError
from leadflow.domain.models import AuditEvent, ConversionQueueJob
from leadflow.providers.conversions.base import UploadResult
from leadflow.providers.conversions.fake import NoopConversionProvider
from leadflow.services.dispatch.credentials import store_credentials
from leadflow.services.dispatch.worker import DispatchWorker
from leadflow.tests.utils.fakes import ScriptedProvider
from leadflow.tests.utils.seed import create_job, create_site


T0 = datetime(2026, 6, 1, 9, 0, tzinfo=timezone.utc)
CREDENTIALS = {
    "customer_id": "1234567890",
    "conversion_action_resource_name": "customers/1234567890/conversionActions/1",
    "access_token": "token",
}


async def _site_with_credentials(database):
    site = await create_site(database)
    async with database.session() as session:
        await store_credentials(session, tenant_id=site.id, provider_key="google_ads", payload=CREDENTIALS)
        await session.commit()
    return site


async def _run(database, provider, *, now: datetime = T0, limit: int | None = None):
    async with database.session() as session:
        return await DispatchWorker(session, provider=provider).run(limit=limit, now=now)


async def _job(database, job_id: str) -> ConversionQueueJob:
    async with database.session() as session:
        return (await session.execute(select(ConversionQueueJob).where(ConversionQueueJob.id == job_id))).scalar_one()


@pytest.mark.asyncio
async def test_queued_job_is_uploaded_and_completed(database) -> None:
    site = await _site_with_credentials(database)
    job = await create_job(database, tenant_id=site.id, created_at=T0 - timedelta(minutes=1))
    provider = NoopConversionProvider()

    summary = await _run(database, provider)

    assert summary.as_dict() == {"claimed": 1, "completed": 1, "retried": 0, "failed": 0, "groups": 1}
    assert [upload.job_id for upload in provider.uploaded] == [job.id]
    assert provider.uploaded[0].gclid == "gclid-test"
    done = await _job(database, job.id)
    assert done.status == "COMPLETED"
    assert done.uploaded_at == T0
    assert done.claimed_at is None


@pytest.mark.asyncio
async def test_transient_failures_back_off_exponentially(database) -> None:
    site = await _site_with_credentials(database)
    job = await create_job(database, tenant_id=site.id, created_at=T0 - timedelta(minutes=1))
    provider = ScriptedProvider(script=[TransientProviderError("upstream down"), TransientProviderError("still down")])

    first = await _run(database, provider, now=T0)
    assert first.retried == 1
    retried = await _job(database, job.id)
    assert retried.status == "RETRY"
    assert retried.attempt_count == 1
    assert retried.next_retry_at == T0 + timedelta(seconds=300)
    assert retried.error_category == "TRANSIENT"
    assert retried.last_error == "upstream down"

    # Not eligible again until the backoff has elapsed.
    early = await _run(database, provider, now=T0 + timedelta(seconds=120))
    assert early.claimed == 0

    later = T0 + timedelta(seconds=301)
    await _run(database, provider, now=later)
    retried = await _job(database, job.id)
    assert retried.attempt_count == 2
    assert retried.next_retry_at == later + timedelta(seconds=600)
    assert len(provider.batches) == 2


@pytest.mark.asyncio
async def test_terminal_failure_is_not_retried(database) -> None:
    site = await _site_with_credentials(database)
    job = await create_job(database, tenant_id=site.id)
    provider = ScriptedProvider(script=[TerminalProviderError("bad conversion", provider_code="INVALID_VALUE")])

    summary = await _run(database, provider, now=datetime.now(timezone.utc))

    assert summary.failed == 1
    failed = await _job(database, job.id)
    assert failed.status == "FAILED"
    assert failed.error_category == "VALIDATION"
    assert failed.provider_error_code == "INVALID_VALUE"
    async with database.session() as session:
        audit = (await session.execute(select(AuditEvent).where(AuditEvent.resource_id == job.id))).scalar_one()
    assert audit.event_type == "conversion.dispatch.failed"
    assert audit.outcome == "failure"


@pytest.mark.asyncio
async def test_per_row_results_are_applied_individually(database) -> None:
    site = await _site_with_credentials(database)
    first = await create_job(database, tenant_id=site.id, created_at=T0 - timedelta(minutes=2))
    second = await create_job(database, tenant_id=site.id, created_at=T0 - timedelta(minutes=1))

    class SplitProvider(ScriptedProvider):
        async def upload(self, uploads, *, credentials):
            results = await super().upload(uploads, credentials=credentials)
            rejected = UploadResult(
                job_id=results[1].job_id, status="FAILED", error_code="EXPIRED_CLICK", category="VALIDATION"
            )
            return [results[0], rejected]

    summary = await _run(database, SplitProvider(), now=T0)
    assert (summary.completed, summary.failed) == (1, 1)
    assert (await _job(database, first.id)).status == "COMPLETED"
    rejected = await _job(database, second.id)
    assert rejected.status == "FAILED"
    assert rejected.provider_error_code == "EXPIRED_CLICK"


@pytest.mark.asyncio
async def test_transient_failure_past_max_attempts_becomes_terminal(database) -> None:
    site = await _site_with_credentials(database)
    job = await create_job(database, tenant_id=site.id, status="RETRY", attempt_count=6, next_retry_at=T0)
    provider = ScriptedProvider(script=[TransientProviderError("timeout")])

    summary = await _run(database, provider, now=T0 + timedelta(seconds=1))

    assert summary.failed == 1
    exhausted = await _job(database, job.id)
    assert exhausted.status == "FAILED"
    assert exhausted.attempt_count == 7
    assert exhausted.last_error == "Max retries reached: timeout"


@pytest.mark.asyncio
async def test_missing_credentials_fail_the_group(database) -> None:
    site = await create_site(database)
    job = await create_job(database, tenant_id=site.id)
    provider = NoopConversionProvider()

    summary = await _run(database, provider, now=datetime.now(timezone.utc))

    assert summary.failed == 1
    assert provider.uploaded == []
    failed = await _job(database, job.id)
    assert failed.status == "FAILED"
    assert failed.provider_error_code == "CREDENTIALS_MISSING"
    assert failed.error_category == "AUTH"


@pytest.mark.asyncio
async def test_budget_is_shared_across_tenants(database) -> None:
    busy = await _site_with_credentials(database)
    quiet = await _site_with_credentials(database)
    for _ in range(5):
        await create_job(database, tenant_id=busy.id, created_at=T0 - timedelta(minutes=5))
    quiet_job = await create_job(database, tenant_id=quiet.id, created_at=T0 - timedelta(minutes=1))

    summary = await _run(database, NoopConversionProvider(), now=T0, limit=3)

    assert summary.claimed == 3
    assert summary.groups == 2
    assert (await _job(database, quiet_job.id)).status == "COMPLETED"


@pytest.mark.asyncio
async def test_stuck_processing_rows_are_recovered(database) -> None:
    site = await _site_with_credentials(database)
    stuck = await create_job(
        database, tenant_id=site.id, status="PROCESSING", claimed_at=T0 - timedelta(minutes=20)
    )
    fresh = await create_job(
        database, tenant_id=site.id, status="PROCESSING", claimed_at=T0 - timedelta(minutes=2)
    )
    async with database.session() as session:
        recovered = await DispatchWorker(session, provider=NoopConversionProvider()).recover_stuck(
            min_age_minutes=15, now=T0
        )
    assert recovered == 1
    recovered_job = await _job(database, stuck.id)
    assert recovered_job.status == "RETRY"
    assert recovered_job.next_retry_at == T0
    assert recovered_job.claimed_at is None
    assert (await _job(database, fresh.id)).status == "PROCESSING"

    summary = await _run(database, NoopConversionProvider(), now=T0)
    assert summary.completed == 1
