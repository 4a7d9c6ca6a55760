from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Iterable

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.domain.models import ConversionQueueJob
from leadflow.persistence.guards import tenant_predicate
from leadflow.services.dispatch.scheduling import GroupBacklog


logger = logging.getLogger(__name__)

STATUS_QUEUED = "QUEUED"
STATUS_PROCESSING = "PROCESSING"
STATUS_RETRY = "RETRY"
STATUS_COMPLETED = "COMPLETED"
STATUS_FAILED = "FAILED"

EXTERNAL_ID_PREFIX = "seal_"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def eligible_predicate(now: datetime):
    # QUEUED rows are always eligible; RETRY rows only once their backoff elapsed.
    return or_(
        ConversionQueueJob.status == STATUS_QUEUED,
        and_(
            ConversionQueueJob.status == STATUS_RETRY,
            or_(ConversionQueueJob.next_retry_at.is_(None), ConversionQueueJob.next_retry_at <= now),
        ),
    )


def external_id(job_id: str) -> str:
    return f"{EXTERNAL_ID_PREFIX}{job_id}"


def parse_external_ids(values: Iterable[str]) -> list[str]:
    ids: list[str] = []
    for value in values:
        raw = str(value or "").strip()
        if raw.startswith(EXTERNAL_ID_PREFIX):
            raw = raw[len(EXTERNAL_ID_PREFIX):]
        if raw and raw not in ids:
            ids.append(raw)
    return ids


async def list_groups(session: AsyncSession, *, now: datetime | None = None) -> list[GroupBacklog]:
    """Backlog per (tenant, provider) group across all tenants; scheduler privilege only."""
    now = now or _utc_now()
    rows = (
        await session.execute(
            select(
                ConversionQueueJob.tenant_id,
                ConversionQueueJob.provider_key,
                func.count(ConversionQueueJob.id),
                func.min(ConversionQueueJob.next_retry_at),
                func.min(ConversionQueueJob.created_at),
            )
            .where(eligible_predicate(now))
            .group_by(ConversionQueueJob.tenant_id, ConversionQueueJob.provider_key)
        )
    ).all()
    return [
        GroupBacklog(
            tenant_id=row[0],
            provider_key=row[1],
            queued_count=int(row[2] or 0),
            min_next_retry_at=_aware(row[3]),
            min_created_at=_aware(row[4]),
        )
        for row in rows
    ]


def _aware(value: datetime | None) -> datetime | None:
    # Aggregates bypass the column type on some drivers and come back naive.
    if value is None or not isinstance(value, datetime):
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


async def claim_group(
    session: AsyncSession,
    *,
    tenant_id: str,
    provider_key: str,
    limit: int,
    now: datetime | None = None,
    skip_locked: bool = False,
) -> list[ConversionQueueJob]:
    """Move up to ``limit`` eligible jobs of one group to PROCESSING, oldest first.

    The conditional UPDATE re-checks eligibility, so a row claimed by a
    concurrent run is never returned twice.
    """
    now = now or _utc_now()
    if limit <= 0:
        return []
    candidates = (
        select(ConversionQueueJob.id)
        .where(
            tenant_predicate(ConversionQueueJob, tenant_id),
            ConversionQueueJob.provider_key == provider_key,
            eligible_predicate(now),
        )
        .order_by(ConversionQueueJob.created_at.asc(), ConversionQueueJob.id.asc())
        .limit(limit)
    )
    if skip_locked:
        candidates = candidates.with_for_update(skip_locked=True)
    ids = list((await session.execute(candidates)).scalars().all())
    if not ids:
        return []
    claimed = (
        await session.execute(
            update(ConversionQueueJob)
            .where(
                tenant_predicate(ConversionQueueJob, tenant_id),
                ConversionQueueJob.id.in_(ids),
                eligible_predicate(now),
            )
            .values(status=STATUS_PROCESSING, claimed_at=now, updated_at=now)
            .returning(ConversionQueueJob.id)
            .execution_options(synchronize_session=False)
        )
    ).scalars().all()
    await session.commit()
    if not claimed:
        return []
    rows = (
        await session.execute(
            select(ConversionQueueJob)
            .where(tenant_predicate(ConversionQueueJob, tenant_id), ConversionQueueJob.id.in_(list(claimed)))
            .order_by(ConversionQueueJob.created_at.asc(), ConversionQueueJob.id.asc())
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    return list(rows)


async def recover_stuck(
    session: AsyncSession,
    *,
    min_age_minutes: int,
    now: datetime | None = None,
) -> int:
    # Abandoned PROCESSING rows go back to RETRY and become eligible immediately.
    now = now or _utc_now()
    cutoff = now - timedelta(minutes=min_age_minutes)
    result = await session.execute(
        update(ConversionQueueJob)
        .where(
            ConversionQueueJob.status == STATUS_PROCESSING,
            func.coalesce(ConversionQueueJob.claimed_at, ConversionQueueJob.updated_at) < cutoff,
        )
        .values(status=STATUS_RETRY, next_retry_at=now, claimed_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    recovered = int(result.rowcount or 0)
    if recovered:
        logger.warning("dispatch_stuck_recovered count=%s cutoff=%s", recovered, cutoff.isoformat())
    return recovered


async def ack_completed(
    session: AsyncSession,
    *,
    tenant_id: str,
    job_ids: list[str],
    now: datetime | None = None,
) -> int:
    # Only PROCESSING rows move; repeated acks are no-ops.
    if not job_ids:
        return 0
    now = now or _utc_now()
    result = await session.execute(
        update(ConversionQueueJob)
        .where(
            tenant_predicate(ConversionQueueJob, tenant_id),
            ConversionQueueJob.id.in_(job_ids),
            ConversionQueueJob.status == STATUS_PROCESSING,
        )
        .values(
            status=STATUS_COMPLETED,
            uploaded_at=now,
            updated_at=now,
            last_error=None,
            error_category=None,
            provider_error_code=None,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return int(result.rowcount or 0)


async def ack_failed(
    session: AsyncSession,
    *,
    tenant_id: str,
    job_ids: list[str],
    error_code: str,
    error_message: str | None,
    category: str,
    now: datetime | None = None,
) -> int:
    if not job_ids:
        return 0
    now = now or _utc_now()
    result = await session.execute(
        update(ConversionQueueJob)
        .where(
            tenant_predicate(ConversionQueueJob, tenant_id),
            ConversionQueueJob.id.in_(job_ids),
            ConversionQueueJob.status == STATUS_PROCESSING,
        )
        .values(
            status=STATUS_FAILED,
            provider_error_code=error_code,
            last_error=error_message,
            error_category=category,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return int(result.rowcount or 0)
