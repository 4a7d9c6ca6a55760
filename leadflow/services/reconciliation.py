from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.core.config import Settings, get_settings
from leadflow.domain.models import IdempotencyRecord, MonthlyUsage, ReconciliationJob
from leadflow.persistence.guards import tenant_predicate
from leadflow.services.ingest.idempotency import BILLING_OVERAGE, year_month_of
from leadflow.services.ingest.quota import month_end_ttl_seconds, usage_cache_key
from leadflow.services.results import Degraded, Err, Ok, Result, report
from leadflow.services.telemetry import increment_counter, record_outcome, set_gauge


logger = logging.getLogger(__name__)

DRIFT_THRESHOLD_ABS = 10
DRIFT_THRESHOLD_PCT = 0.01

JOB_QUEUED = "QUEUED"
JOB_PROCESSING = "PROCESSING"
JOB_COMPLETED = "COMPLETED"
JOB_FAILED = "FAILED"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def previous_year_month(year_month: str) -> str:
    year, month = (int(part) for part in year_month.split("-"))
    if month == 1:
        return f"{year - 1}-12"
    return f"{year}-{month - 1:02d}"


def drift_threshold(authoritative: int) -> float:
    return max(DRIFT_THRESHOLD_ABS, authoritative * DRIFT_THRESHOLD_PCT)


@dataclass(frozen=True)
class CacheDrift:
    cached: int | None
    authoritative: int
    corrected: bool

    @property
    def absolute(self) -> int | None:
        if self.cached is None:
            return None
        return abs(self.cached - self.authoritative)

    @property
    def pct(self) -> float | None:
        if self.cached is None:
            return None
        if self.authoritative <= 0:
            return 0.0
        return abs(self.cached - self.authoritative) / self.authoritative


@dataclass(frozen=True)
class ReconcileReport:
    tenant_id: str
    year_month: str
    billable_count: int
    overage_count: int
    last_synced_at: datetime
    cache: Result[CacheDrift]

    @property
    def drift_pct(self) -> float | None:
        if isinstance(self.cache, (Ok, Degraded)) and self.cache.value is not None:
            return self.cache.value.pct
        return None

    def as_dict(self) -> dict[str, Any]:
        drift = self.cache.value if isinstance(self.cache, (Ok, Degraded)) else None
        return {
            "tenant_id": self.tenant_id,
            "year_month": self.year_month,
            "billable_count": self.billable_count,
            "overage_count": self.overage_count,
            "last_synced_at": self.last_synced_at.isoformat(),
            "drift": None
            if drift is None
            else {"cached": drift.cached, "abs": drift.absolute, "pct": drift.pct, "corrected": drift.corrected},
        }


async def count_billable(session: AsyncSession, *, tenant_id: str, year_month: str) -> tuple[int, int]:
    """Authoritative (billable, overage) counts from the idempotency ledger."""
    base = [
        tenant_predicate(IdempotencyRecord, tenant_id),
        IdempotencyRecord.year_month == year_month,
        IdempotencyRecord.billable.is_(True),
    ]
    billable = (await session.execute(select(func.count(IdempotencyRecord.id)).where(*base))).scalar_one()
    overage = (
        await session.execute(
            select(func.count(IdempotencyRecord.id)).where(
                *base, IdempotencyRecord.billing_state == BILLING_OVERAGE
            )
        )
    ).scalar_one()
    return int(billable or 0), int(overage or 0)


async def _upsert_snapshot(
    session: AsyncSession,
    *,
    tenant_id: str,
    year_month: str,
    billable: int,
    overage: int,
    now: datetime,
) -> None:
    values = {"event_count": billable, "overage_count": overage, "last_synced_at": now}
    result = await session.execute(
        update(MonthlyUsage)
        .where(tenant_predicate(MonthlyUsage, tenant_id), MonthlyUsage.year_month == year_month)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        return
    try:
        async with session.begin_nested():
            session.add(MonthlyUsage(tenant_id=tenant_id, year_month=year_month, **values))
    except IntegrityError:
        # A concurrent reconcile inserted first; the counts are identical.
        await session.execute(
            update(MonthlyUsage)
            .where(tenant_predicate(MonthlyUsage, tenant_id), MonthlyUsage.year_month == year_month)
            .values(**values)
            .execution_options(synchronize_session=False)
        )


async def correct_cache(
    redis: Any | None,
    *,
    tenant_id: str,
    year_month: str,
    authoritative: int,
    now: datetime | None = None,
) -> Result[CacheDrift]:
    """Overwrite the usage cache when it drifted past the threshold. Never raises."""
    if redis is None:
        return Degraded(reason="cache_unavailable", value=None)
    key = usage_cache_key(tenant_id, year_month)
    ttl = month_end_ttl_seconds(year_month, now=now)
    try:
        raw = await redis.get(key)
        cached: int | None
        try:
            cached = int(raw) if raw is not None else None
        except (TypeError, ValueError):
            cached = None
        corrected = False
        if cached is None or abs(cached - authoritative) > drift_threshold(authoritative):
            await redis.set(key, str(authoritative), ex=ttl)
            corrected = True
    except Exception as exc:  # noqa: BLE001 - cache correction is best-effort
        increment_counter("reconcile.cache_error")
        return Err(reason=f"cache_error:{type(exc).__name__}", error=exc)
    if corrected and cached is not None:
        increment_counter("reconcile.drift_corrected")
        logger.warning(
            "usage_cache_drift_corrected tenant=%s year_month=%s cached=%s authoritative=%s",
            tenant_id,
            year_month,
            cached,
            authoritative,
        )
    return Ok(CacheDrift(cached=cached, authoritative=authoritative, corrected=corrected))


async def reconcile(
    session: AsyncSession,
    *,
    redis: Any | None,
    tenant_id: str,
    year_month: str,
    now: datetime | None = None,
) -> ReconcileReport:
    """Recount usage for one tenant month, persist the snapshot, then fix the cache.

    Database errors propagate; cache errors only show up in the returned ``cache`` result.
    """
    now = now or _utc_now()
    billable, overage = await count_billable(session, tenant_id=tenant_id, year_month=year_month)
    await _upsert_snapshot(
        session, tenant_id=tenant_id, year_month=year_month, billable=billable, overage=overage, now=now
    )
    await session.commit()
    cache = report(
        await correct_cache(redis, tenant_id=tenant_id, year_month=year_month, authoritative=billable, now=now),
        component="reconcile_cache",
        logger=logger,
        tenant=tenant_id,
        year_month=year_month,
    )
    return ReconcileReport(
        tenant_id=tenant_id,
        year_month=year_month,
        billable_count=billable,
        overage_count=overage,
        last_synced_at=now,
        cache=cache,
    )


async def active_tenants(session: AsyncSession, *, now: datetime | None = None) -> list[str]:
    # Active = ledger rows in the current month or within the last 24h.
    now = now or _utc_now()
    rows = (
        await session.execute(
            select(IdempotencyRecord.tenant_id)
            .where(
                or_(
                    IdempotencyRecord.year_month == year_month_of(now),
                    IdempotencyRecord.created_at >= now - timedelta(hours=24),
                )
            )
            .distinct()
        )
    ).scalars().all()
    return sorted(str(row) for row in rows)


async def enqueue_jobs(session: AsyncSession, *, now: datetime | None = None) -> dict[str, int]:
    """Queue current and previous month jobs for every active tenant.

    Existing finished jobs are re-queued so the open month keeps being
    reconciled; rows already PROCESSING are left alone.
    """
    now = now or _utc_now()
    current = year_month_of(now)
    months = (current, previous_year_month(current))
    tenants = await active_tenants(session, now=now)
    created = 0
    requeued = 0
    for tenant_id in tenants:
        for year_month in months:
            result = await session.execute(
                update(ReconciliationJob)
                .where(
                    tenant_predicate(ReconciliationJob, tenant_id),
                    ReconciliationJob.year_month == year_month,
                    ReconciliationJob.status.in_((JOB_COMPLETED, JOB_FAILED)),
                )
                .values(status=JOB_QUEUED, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                requeued += 1
                continue
            try:
                async with session.begin_nested():
                    session.add(
                        ReconciliationJob(
                            tenant_id=tenant_id,
                            year_month=year_month,
                            status=JOB_QUEUED,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                created += 1
            except IntegrityError:
                # Already queued or processing.
                continue
    await session.commit()
    logger.info(
        "reconcile_jobs_enqueued tenants=%s created=%s requeued=%s", len(tenants), created, requeued
    )
    return {"active_tenants": len(tenants), "created": created, "requeued": requeued}


async def claim_jobs(
    session: AsyncSession,
    *,
    limit: int,
    now: datetime | None = None,
    skip_locked: bool = False,
) -> list[ReconciliationJob]:
    now = now or _utc_now()
    stmt = (
        select(ReconciliationJob)
        .where(ReconciliationJob.status == JOB_QUEUED)
        .order_by(ReconciliationJob.created_at.asc(), ReconciliationJob.id.asc())
        .limit(limit)
    )
    if skip_locked:
        stmt = stmt.with_for_update(skip_locked=True)
    jobs = list((await session.execute(stmt)).scalars().all())
    for job in jobs:
        job.status = JOB_PROCESSING
        job.updated_at = now
    await session.commit()
    return jobs


async def run_jobs(
    session: AsyncSession,
    *,
    redis: Any | None,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> dict[str, int]:
    """Claim a batch of queued jobs and reconcile each; one failure never stops the batch."""
    settings = settings or get_settings()
    skip_locked = session.bind.dialect.name == "postgresql"
    jobs = await claim_jobs(
        session, limit=max(1, int(settings.reconcile_batch_size)), now=now, skip_locked=skip_locked
    )
    processed = completed = failed = 0
    for job in jobs:
        processed += 1
        job_id, tenant_id, year_month = job.id, job.tenant_id, job.year_month
        try:
            summary = await reconcile(session, redis=redis, tenant_id=tenant_id, year_month=year_month, now=now)
        except Exception as exc:  # noqa: BLE001 - record the failure on the job row and keep going
            await session.rollback()
            failed += 1
            record_outcome("reconcile", "failed")
            logger.error(
                "reconcile_job_failed tenant=%s year_month=%s",
                tenant_id,
                year_month,
                exc_info=exc,
            )
            await _finish_job(session, job_id, status=JOB_FAILED, last_error=str(exc)[:1000], drift_pct=None)
            continue
        completed += 1
        record_outcome("reconcile", "completed")
        if summary.drift_pct is not None:
            set_gauge(f"reconcile.drift_pct.{tenant_id}", summary.drift_pct)
        logger.info(
            "reconcile_job_completed tenant=%s year_month=%s billable=%s overage=%s drift_pct=%s",
            tenant_id,
            year_month,
            summary.billable_count,
            summary.overage_count,
            summary.drift_pct,
        )
        await _finish_job(session, job_id, status=JOB_COMPLETED, last_error=None, drift_pct=summary.drift_pct)
    return {"processed": processed, "completed": completed, "failed": failed}


async def _finish_job(
    session: AsyncSession,
    job_id: int,
    *,
    status: str,
    last_error: str | None,
    drift_pct: float | None,
) -> None:
    await session.execute(
        update(ReconciliationJob)
        .where(ReconciliationJob.id == job_id)
        .values(status=status, last_error=last_error, last_drift_pct=drift_pct, updated_at=_utc_now())
        .execution_options(synchronize_session=False)
    )
    await session.commit()
