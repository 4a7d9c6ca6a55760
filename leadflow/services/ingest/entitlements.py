from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.domain.models import UsageCounter
from leadflow.persistence.guards import tenant_predicate


logger = logging.getLogger(__name__)

REASON_LIMIT_REACHED = "limit_reached"
REASON_INCREMENT_FAILED = "increment_failed"


@dataclass(frozen=True)
class IncrementResult:
    ok: bool
    reason: str | None = None
    count: int | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _conditional_bump(
    session: AsyncSession,
    *,
    tenant_id: str,
    year_month: str,
    limit: int | None,
) -> int:
    # Single statement compare-and-increment so concurrent admits can never overshoot the limit.
    stmt = (
        update(UsageCounter)
        .where(
            tenant_predicate(UsageCounter, tenant_id),
            UsageCounter.year_month == year_month,
        )
        .values(event_count=UsageCounter.event_count + 1, updated_at=_utc_now())
    )
    if limit is not None:
        stmt = stmt.where(UsageCounter.event_count < limit)
    result = await session.execute(stmt)
    return int(result.rowcount or 0)


async def increment_usage_checked(
    session: AsyncSession,
    *,
    tenant_id: str,
    year_month: str,
    limit: int | None,
) -> IncrementResult:
    """Increment the metered counter unless it already reached ``limit``.

    ``limit=None`` means the plan is unlimited. The first event of a month
    creates the counter row; a concurrent creator loses the unique race and
    retries the conditional update.
    """
    try:
        if await _conditional_bump(session, tenant_id=tenant_id, year_month=year_month, limit=limit):
            return IncrementResult(ok=True)

        existing = (
            await session.execute(
                select(UsageCounter.event_count).where(
                    tenant_predicate(UsageCounter, tenant_id),
                    UsageCounter.year_month == year_month,
                )
            )
        ).scalar_one_or_none()
        if existing is not None:
            return IncrementResult(ok=False, reason=REASON_LIMIT_REACHED, count=int(existing))

        if limit is not None and limit <= 0:
            return IncrementResult(ok=False, reason=REASON_LIMIT_REACHED, count=0)
        try:
            async with session.begin_nested():
                session.add(
                    UsageCounter(
                        tenant_id=tenant_id,
                        year_month=year_month,
                        event_count=1,
                        updated_at=_utc_now(),
                    )
                )
                await session.flush()
            return IncrementResult(ok=True, count=1)
        except IntegrityError:
            if await _conditional_bump(session, tenant_id=tenant_id, year_month=year_month, limit=limit):
                return IncrementResult(ok=True)
            return IncrementResult(ok=False, reason=REASON_LIMIT_REACHED)
    except SQLAlchemyError as exc:
        logger.warning("usage_increment_failed tenant=%s month=%s", tenant_id, year_month, exc_info=exc)
        return IncrementResult(ok=False, reason=REASON_INCREMENT_FAILED)


async def current_counter(session: AsyncSession, *, tenant_id: str, year_month: str) -> int:
    value = (
        await session.execute(
            select(UsageCounter.event_count).where(
                tenant_predicate(UsageCounter, tenant_id),
                UsageCounter.year_month == year_month,
            )
        )
    ).scalar_one_or_none()
    return int(value or 0)
