from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.core.config import Settings, get_settings
from leadflow.services.ingest.entitlements import increment_usage_checked
from leadflow.services.ingest.idempotency import (
    compute_idempotency_key,
    event_kind,
    mark_not_billable,
    mark_overage,
    try_insert_key,
    year_month_of,
)
from leadflow.services.ingest.quota import (
    PlanCache,
    QuotaDecision,
    evaluate_quota,
    get_usage,
    increment_usage_cache,
    seconds_to_month_rollover,
)
from leadflow.services.results import report, value_or
from leadflow.services.telemetry import record_outcome


logger = logging.getLogger(__name__)

OUTCOME_ACCEPTED = "accepted"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_QUOTA_REJECT = "quota_reject"
OUTCOME_ENTITLEMENTS_REJECT = "entitlements_reject"
OUTCOME_IDEMPOTENCY_ERROR = "idempotency_error"

REASON_NON_BILLABLE_HEARTBEAT = "non_billable_heartbeat"
REASON_REJECTED_QUOTA = "rejected_quota"
REASON_REJECTED_ENTITLEMENTS = "rejected_entitlements"


@dataclass(frozen=True)
class GateResult:
    ok: bool
    billable: bool = False
    reason: str | None = None
    idempotency_key: str | None = None
    record_id: int | None = None
    overage: bool = False
    quota: QuotaDecision | None = None
    retry_after_s: int | None = None
    headers: dict[str, str] = field(default_factory=dict)


def is_billable(payload: dict[str, Any]) -> tuple[bool, str | None]:
    # Heartbeats keep sessions warm but never count toward the invoice.
    if event_kind(payload) == "heartbeat":
        return False, REASON_NON_BILLABLE_HEARTBEAT
    return True, None


class IngestionGate:
    """Idempotency, quota and entitlement checks for one incoming event.

    The gate writes the ledger row and the metered counter through the
    caller's session and leaves the commit to the caller, so a rejected
    event still persists as a non-billable ledger row.
    """

    def __init__(
        self,
        *,
        redis: Any | None = None,
        plan_cache: PlanCache | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._redis = redis
        self._settings = settings or get_settings()
        self._plans = plan_cache or PlanCache(ttl_s=self._settings.quota_plan_cache_ttl_s)

    @property
    def plans(self) -> PlanCache:
        return self._plans

    async def admit(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        payload: dict[str, Any],
        now: datetime | None = None,
    ) -> GateResult:
        now = now or datetime.now(timezone.utc)
        result = await self._admit(session, tenant_id=tenant_id, payload=payload, now=now)
        # Exactly one outcome counter per admit call.
        record_outcome("ingest", OUTCOME_ACCEPTED if result.ok else str(result.reason))
        return result

    async def _admit(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        payload: dict[str, Any],
        now: datetime,
    ) -> GateResult:
        key = compute_idempotency_key(
            tenant_id, payload, now=now, version=self._settings.idempotency_key_version
        )
        billable, billable_reason = is_billable(payload)
        inserted = await try_insert_key(
            session,
            tenant_id=tenant_id,
            idempotency_key=key,
            billable=billable,
            billable_reason=billable_reason,
            payload=payload,
            now=now,
        )
        if inserted.duplicate:
            return GateResult(ok=False, reason=OUTCOME_DUPLICATE, idempotency_key=key)
        if not inserted.inserted:
            # Fail closed: an unknown ledger state never admits an event.
            logger.error("ingest_idempotency_error tenant=%s", tenant_id, exc_info=inserted.error)
            return GateResult(ok=False, reason=OUTCOME_IDEMPOTENCY_ERROR, idempotency_key=key)
        if not billable:
            return GateResult(ok=True, billable=False, reason=billable_reason, idempotency_key=key, record_id=inserted.record_id)

        year_month = year_month_of(now)
        plan = await self._plans.get(session, tenant_id)
        usage = report(
            await get_usage(
                session,
                redis=self._redis,
                tenant_id=tenant_id,
                year_month=year_month,
                exclude_record_id=inserted.record_id,
            ),
            component="usage_lookup",
            logger=logger,
            tenant=tenant_id,
        )
        decision = evaluate_quota(plan, value_or(usage, 0) + 1)
        if decision.reject:
            await mark_not_billable(session, tenant_id=tenant_id, idempotency_key=key, reason=REASON_REJECTED_QUOTA)
            logger.info("ingest_quota_reject tenant=%s reason=%s", tenant_id, decision.reason)
            return GateResult(
                ok=False,
                reason=OUTCOME_QUOTA_REJECT,
                idempotency_key=key,
                record_id=inserted.record_id,
                quota=decision,
                retry_after_s=seconds_to_month_rollover(now),
                headers=dict(decision.headers),
            )
        if decision.overage:
            await mark_overage(session, tenant_id=tenant_id, idempotency_key=key)

        increment = await increment_usage_checked(
            session,
            tenant_id=tenant_id,
            year_month=year_month,
            limit=plan.entitlement_limit(),
        )
        if not increment.ok:
            await mark_not_billable(
                session, tenant_id=tenant_id, idempotency_key=key, reason=REASON_REJECTED_ENTITLEMENTS
            )
            logger.info("ingest_entitlements_reject tenant=%s reason=%s", tenant_id, increment.reason)
            return GateResult(
                ok=False,
                reason=OUTCOME_ENTITLEMENTS_REJECT,
                idempotency_key=key,
                record_id=inserted.record_id,
                quota=decision,
                retry_after_s=seconds_to_month_rollover(now),
                headers=dict(decision.headers),
            )

        report(
            await increment_usage_cache(self._redis, tenant_id=tenant_id, year_month=year_month),
            component="usage_cache",
            logger=logger,
            tenant=tenant_id,
        )
        return GateResult(
            ok=True,
            billable=True,
            idempotency_key=key,
            record_id=inserted.record_id,
            overage=decision.overage,
            quota=decision,
            headers=dict(decision.headers),
        )
