from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import math
import time
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.core.config import get_settings
from leadflow.domain.models import IdempotencyRecord, MonthlyUsage, SitePlan
from leadflow.persistence.guards import tenant_predicate
from leadflow.services.resilience import cache_key
from leadflow.services.results import Degraded, Ok, Result


logger = logging.getLogger(__name__)

HEADER_REMAINING = "x-leadflow-quota-remaining"
HEADER_OVERAGE = "x-leadflow-overage"
HEADER_EXCEEDED = "x-leadflow-quota-exceeded"

REASON_MONTHLY_LIMIT = "monthly_limit_exceeded"
REASON_HARD_CAP = "hard_cap_exceeded"

_MAX_RETRY_AFTER_S = 32 * 24 * 60 * 60


@dataclass(frozen=True)
class PlanView:
    # Read-only plan snapshot used by quota and entitlement checks.
    monthly_limit: int = 1000
    soft_limit_enabled: bool = False
    hard_cap_multiplier: float = 2.0
    capabilities: dict[str, Any] | None = None

    @property
    def hard_cap(self) -> int:
        return int(math.floor(self.monthly_limit * self.hard_cap_multiplier))

    def entitlement_limit(self) -> int | None:
        # Explicit capability limit wins; otherwise the highest usage the quota can ever allow.
        caps = self.capabilities or {}
        explicit = caps.get("monthly_event_limit")
        if isinstance(explicit, int) and not isinstance(explicit, bool) and explicit >= 0:
            return explicit
        if explicit is None and "monthly_event_limit" in caps:
            return None
        return self.hard_cap if self.soft_limit_enabled else self.monthly_limit

    def capability(self, name: str, default: bool = False) -> bool:
        value = (self.capabilities or {}).get(name)
        return value if isinstance(value, bool) else default


DEFAULT_PLAN = PlanView()


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    reject: bool
    overage: bool
    remaining: int
    reason: str | None
    headers: dict[str, str]


def evaluate_quota(plan: PlanView, usage_after: int) -> QuotaDecision:
    """Decide whether the event that brings usage to ``usage_after`` may be admitted.

    Without a soft limit the month closes at ``monthly_limit``. With a soft
    limit, usage past ``monthly_limit`` is metered as overage until the hard
    cap (``monthly_limit * hard_cap_multiplier``) is reached.
    """
    limit = int(plan.monthly_limit)
    remaining = max(0, limit - int(usage_after))
    headers = {HEADER_REMAINING: str(remaining)}

    if not plan.soft_limit_enabled:
        if usage_after >= limit:
            headers[HEADER_EXCEEDED] = "1"
            return QuotaDecision(False, True, False, remaining, REASON_MONTHLY_LIMIT, headers)
        return QuotaDecision(True, False, False, remaining, None, headers)

    if usage_after >= plan.hard_cap:
        headers[HEADER_EXCEEDED] = "1"
        return QuotaDecision(False, True, False, remaining, REASON_HARD_CAP, headers)
    overage = usage_after > limit
    if overage:
        headers[HEADER_OVERAGE] = "true"
    return QuotaDecision(True, False, overage, remaining, None, headers)


def seconds_to_month_rollover(now: datetime | None = None) -> int:
    # Retry-After for quota rejects: the next UTC month start, capped at 32 days.
    moment = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    if moment.month == 12:
        rollover = datetime(moment.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        rollover = datetime(moment.year, moment.month + 1, 1, tzinfo=timezone.utc)
    delta = int(math.ceil((rollover - moment).total_seconds()))
    return max(1, min(delta, _MAX_RETRY_AFTER_S))


def month_end_ttl_seconds(year_month: str, now: datetime | None = None) -> int:
    # Cache expiry aligned to month end, capped by the usage key retention.
    year, month = (int(part) for part in year_month.split("-"))
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(year, month + 1, 1, tzinfo=timezone.utc)
    moment = now or datetime.now(timezone.utc)
    cap = int(get_settings().usage_cache_ttl_days) * 24 * 60 * 60
    return max(60, min(int((end - moment).total_seconds()), cap))


def usage_cache_key(tenant_id: str, year_month: str) -> str:
    return cache_key("usage", tenant_id, year_month)


def _plan_view(row: SitePlan | None) -> PlanView:
    if row is None:
        return DEFAULT_PLAN
    return PlanView(
        monthly_limit=int(row.monthly_limit if row.monthly_limit is not None else DEFAULT_PLAN.monthly_limit),
        soft_limit_enabled=bool(row.soft_limit_enabled),
        hard_cap_multiplier=float(row.hard_cap_multiplier or DEFAULT_PLAN.hard_cap_multiplier),
        capabilities=row.capabilities if isinstance(row.capabilities, dict) else None,
    )


class PlanCache:
    """Per-tenant plan cache with a short TTL to keep quota checks off the DB."""

    def __init__(self, *, ttl_s: int | None = None, clock: Callable[[], float] | None = None) -> None:
        self._ttl_s = ttl_s if ttl_s is not None else get_settings().quota_plan_cache_ttl_s
        self._clock = clock or time.monotonic
        self._entries: dict[str, tuple[float, PlanView]] = {}

    async def get(self, session: AsyncSession, tenant_id: str) -> PlanView:
        now = self._clock()
        cached = self._entries.get(tenant_id)
        if cached and cached[0] > now:
            return cached[1]
        row = (
            await session.execute(select(SitePlan).where(tenant_predicate(SitePlan, tenant_id)))
        ).scalar_one_or_none()
        plan = _plan_view(row)
        self._entries[tenant_id] = (now + self._ttl_s, plan)
        return plan

    def invalidate(self, tenant_id: str | None = None) -> None:
        if tenant_id is None:
            self._entries.clear()
        else:
            self._entries.pop(tenant_id, None)


async def get_usage(
    session: AsyncSession,
    *,
    redis: Any | None,
    tenant_id: str,
    year_month: str,
    exclude_record_id: int | None = None,
) -> Result[int]:
    """Current-month usage: cache first, then the reconciled snapshot, then a ledger count.

    The ledger fallback is always available, so a cache failure degrades the
    result instead of failing it.
    """
    cache_problem: str | None = None
    if redis is not None:
        try:
            raw = await redis.get(usage_cache_key(tenant_id, year_month))
            if raw is not None:
                return Ok(int(raw))
        except (ValueError, TypeError) as exc:
            cache_problem = f"cache_unreadable:{exc}"
        except Exception as exc:  # noqa: BLE001 - redis transport errors fall through to the ledger
            cache_problem = f"cache_error:{type(exc).__name__}"
    else:
        cache_problem = "cache_unavailable"

    snapshot = (
        await session.execute(
            select(MonthlyUsage.event_count).where(
                tenant_predicate(MonthlyUsage, tenant_id),
                MonthlyUsage.year_month == year_month,
            )
        )
    ).scalar_one_or_none()
    if snapshot is not None:
        value = int(snapshot)
    else:
        stmt = select(func.count(IdempotencyRecord.id)).where(
            tenant_predicate(IdempotencyRecord, tenant_id),
            IdempotencyRecord.year_month == year_month,
            IdempotencyRecord.billable.is_(True),
        )
        if exclude_record_id is not None:
            stmt = stmt.where(IdempotencyRecord.id != exclude_record_id)
        value = int((await session.execute(stmt)).scalar_one() or 0)
    if cache_problem and redis is not None:
        return Degraded(reason=cache_problem, value=value)
    return Ok(value)


async def increment_usage_cache(redis: Any | None, *, tenant_id: str, year_month: str) -> Result[int]:
    # Fire-and-forget counter bump; the reconciler repairs any drift.
    if redis is None:
        return Degraded(reason="cache_unavailable", value=None)
    key = usage_cache_key(tenant_id, year_month)
    try:
        value = await redis.incr(key)
        await redis.expire(key, int(get_settings().usage_cache_ttl_days) * 24 * 60 * 60)
    except Exception as exc:  # noqa: BLE001 - cache writes never fail ingestion
        logger.warning("usage_cache_increment_failed tenant=%s", tenant_id, exc_info=exc)
        return Degraded(reason=f"cache_error:{type(exc).__name__}", value=None)
    return Ok(int(value))
