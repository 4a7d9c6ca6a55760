from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.core.errors import ConcurrencyConflict, NotFoundError, ValidationError
from leadflow.domain.models import Call, ConversionQueueJob, Site, TrackedSession
from leadflow.persistence.guards import ensure_row_tenant, tenant_predicate
from leadflow.services.attribution.parsers import PipelineStage, parse_consent_scopes, parse_pipeline_stages
from leadflow.services.attribution.scoring import star_rating
from leadflow.services.audit import record_event
from leadflow.services.conversions.value import compute_conversion_value, parse_oci_config, to_cents
from leadflow.services.telemetry import record_outcome


logger = logging.getLogger(__name__)

PROVIDER_GOOGLE_ADS = "google_ads"
ACTION_SEAL = "seal"

REASON_NO_CLICK_ID = "no_click_id"
REASON_CONSENT_REQUIRED = "marketing_consent_required"
REASON_STAR_BELOW_THRESHOLD = "star_below_threshold"
REASON_JUNK_OR_ZERO = "junk_or_zero_value"
REASON_DUPLICATE = "duplicate"

OCI_SEALED = "sealed"
OCI_SKIPPED = "skipped"

JUNK_STAGE_ID = "junk"
STATUS_CONFIRMED = "confirmed"


@dataclass(frozen=True)
class ClickIds:
    gclid: str | None = None
    wbraid: str | None = None
    gbraid: str | None = None

    @property
    def present(self) -> bool:
        return bool(self.gclid or self.wbraid or self.gbraid)


@dataclass(frozen=True)
class EnqueueResult:
    enqueued: bool
    call_id: str
    version: int
    reason: str | None = None
    value_cents: int | None = None
    currency: str | None = None
    job_id: str | None = None
    stage: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "enqueued": self.enqueued,
            "call_id": self.call_id,
            "version": self.version,
            "reason": self.reason,
            "value_cents": self.value_cents,
            "currency": self.currency,
            "job_id": self.job_id,
            "stage": self.stage,
        }


def _clean(value: str | None) -> str | None:
    cleaned = (value or "").strip()
    return cleaned or None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ConversionEnqueuer:
    """Operator seal and stage actions.

    The call row is always updated under a ``version`` compare-and-swap; a
    queue job is inserted only when the action is eligible for upload. One
    call yields at most one job per provider.
    """

    def __init__(self, session: AsyncSession, *, provider_key: str = PROVIDER_GOOGLE_ADS) -> None:
        self._session = session
        self._provider_key = provider_key

    async def seal(
        self,
        *,
        tenant_id: str,
        call_id: str,
        expected_version: int,
        sale_amount: float | None = None,
        currency: str | None = None,
        lead_score: int | None = None,
        star: int | None = None,
        actor_id: str | None = None,
        request_id: str | None = None,
        now: datetime | None = None,
    ) -> EnqueueResult:
        if sale_amount is not None and sale_amount < 0:
            raise ValidationError("sale_amount must be a non-negative number")
        if lead_score is not None and not 0 <= lead_score <= 100:
            raise ValidationError("lead_score must be between 0 and 100")
        if star is not None and not 1 <= star <= 5:
            raise ValidationError("star must be between 1 and 5")
        now = now or _utc_now()
        call, site = await self._load(tenant_id, call_id)
        config = parse_oci_config(site.oci_config)
        resolved_currency = _clean(currency) or site.currency or config.currency
        if star is None and lead_score is not None:
            star = star_rating(lead_score) or None
        if star is None:
            star = call.lead_score_star

        # Click id, then consent, then value: the first failing check names the skip reason.
        clicks = await self._resolve_click_ids(call)
        reason = await self._eligibility(call, clicks)
        value = compute_conversion_value(star, sale_amount, config)
        value_cents = to_cents(value) if value is not None else None
        if reason is None and value is None:
            reason = REASON_STAR_BELOW_THRESHOLD

        values: dict[str, Any] = {
            "status": STATUS_CONFIRMED,
            "sale_amount": sale_amount,
            "currency": resolved_currency,
            "confirmed_at": now,
            "confirmed_by": actor_id,
            "oci_status": OCI_SEALED if reason is None else OCI_SKIPPED,
            "lead_score_star": star,
        }
        if lead_score is not None:
            values["lead_score"] = int(round(lead_score))
        version = await self._compare_and_swap(call, expected_version, values, now=now)
        return await self._finish(
            call=call,
            version=version,
            action=ACTION_SEAL,
            reason=reason,
            clicks=clicks,
            value_cents=value_cents,
            currency=resolved_currency,
            stage_label=None,
            actor_id=actor_id,
            request_id=request_id,
            now=now,
        )

    async def stage(
        self,
        *,
        tenant_id: str,
        call_id: str,
        stage_id: str,
        expected_version: int,
        custom_amount_cents: int | None = None,
        actor_id: str | None = None,
        request_id: str | None = None,
        now: datetime | None = None,
    ) -> EnqueueResult:
        if custom_amount_cents is not None and custom_amount_cents < 0:
            raise ValidationError("customAmountCents must be a non-negative number")
        now = now or _utc_now()
        call, site = await self._load(tenant_id, call_id)
        stage = self._find_stage(site, stage_id)
        config = parse_oci_config(site.oci_config)
        currency = site.currency or config.currency

        value_cents = custom_amount_cents if custom_amount_cents is not None else stage.value_cents
        is_junk = stage.is_junk or stage.id == JUNK_STAGE_ID
        clicks = await self._resolve_click_ids(call)
        reason = await self._eligibility(call, clicks)
        if reason is None and (is_junk or value_cents <= 0):
            reason = REASON_JUNK_OR_ZERO

        values: dict[str, Any] = {
            "status": stage.id,
            "oci_status": OCI_SKIPPED if is_junk or reason else OCI_SEALED,
            "sale_amount": value_cents / 100 if value_cents > 0 else None,
            "currency": currency,
        }
        version = await self._compare_and_swap(call, expected_version, values, now=now)
        return await self._finish(
            call=call,
            version=version,
            action=stage.id,
            reason=reason,
            clicks=clicks,
            value_cents=value_cents,
            currency=currency,
            stage_label=stage.label,
            actor_id=actor_id,
            request_id=request_id,
            now=now,
        )

    async def _load(self, tenant_id: str, call_id: str) -> tuple[Call, Site]:
        call = (
            await self._session.execute(
                select(Call)
                .where(tenant_predicate(Call, tenant_id), Call.id == call_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if call is None:
            raise NotFoundError("Call not found")
        site = await self._session.get(Site, tenant_id)
        if site is None:
            raise NotFoundError("Site not found")
        return call, site

    @staticmethod
    def _find_stage(site: Site, stage_id: str) -> PipelineStage:
        wanted = (stage_id or "").strip()
        if not wanted:
            raise ValidationError("Missing stageId")
        for stage in parse_pipeline_stages(site.pipeline_stages):
            if stage.id == wanted:
                return stage
        raise ValidationError(f"Stage '{wanted}' is not defined in the site's playbook", stage_id=wanted)

    async def _matched_session(self, call: Call) -> TrackedSession | None:
        if not call.matched_session_id:
            return None
        row = (
            await self._session.execute(
                select(TrackedSession)
                .where(
                    tenant_predicate(TrackedSession, call.tenant_id),
                    TrackedSession.id == call.matched_session_id,
                )
                .order_by(TrackedSession.created_at.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        return ensure_row_tenant(row, call.tenant_id)

    async def _resolve_click_ids(self, call: Call) -> ClickIds:
        # The attributed session is the primary source; the call's own click id is the last resort.
        matched = await self._matched_session(call)
        if matched is not None:
            clicks = ClickIds(
                gclid=_clean(matched.gclid),
                wbraid=_clean(matched.wbraid),
                gbraid=_clean(matched.gbraid),
            )
            if clicks.present:
                return clicks
        return ClickIds(gclid=_clean(call.click_id))

    async def _eligibility(self, call: Call, clicks: ClickIds) -> str | None:
        if not clicks.present:
            return REASON_NO_CLICK_ID
        if call.marketing_consent:
            return None
        matched = await self._matched_session(call)
        if matched is not None and "marketing" in parse_consent_scopes(matched.consent_scopes):
            return None
        return REASON_CONSENT_REQUIRED

    async def _compare_and_swap(
        self,
        call: Call,
        expected_version: int,
        values: dict[str, Any],
        *,
        now: datetime,
    ) -> int:
        expected = int(expected_version)
        call_id = call.id
        result = await self._session.execute(
            update(Call)
            .where(
                tenant_predicate(Call, call.tenant_id),
                Call.id == call_id,
                Call.version == expected,
            )
            .values(**values, version=expected + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            await self._session.rollback()
            record_outcome("enqueue", "conflict")
            raise ConcurrencyConflict(call_id=call_id, expected_version=expected)
        return expected + 1

    async def _finish(
        self,
        *,
        call: Call,
        version: int,
        action: str,
        reason: str | None,
        clicks: ClickIds,
        value_cents: int | None,
        currency: str,
        stage_label: str | None,
        actor_id: str | None,
        request_id: str | None,
        now: datetime,
    ) -> EnqueueResult:
        job_id: str | None = None
        if reason is None:
            job = ConversionQueueJob(
                tenant_id=call.tenant_id,
                call_id=call.id,
                provider_key=self._provider_key,
                action=action,
                status="QUEUED",
                value_cents=int(value_cents or 0),
                currency=currency,
                gclid=clicks.gclid,
                wbraid=clicks.wbraid,
                gbraid=clicks.gbraid,
                conversion_time=now,
                attempt_count=0,
                created_at=now,
                updated_at=now,
            )
            try:
                async with self._session.begin_nested():
                    self._session.add(job)
                    await self._session.flush()
                job_id = job.id
            except IntegrityError:
                reason = REASON_DUPLICATE

        record_outcome("enqueue", "enqueued" if job_id else str(reason))
        await record_event(
            session=self._session,
            tenant_id=call.tenant_id,
            actor_type="user" if actor_id else "system",
            actor_id=actor_id,
            event_type=f"call.{'seal' if action == ACTION_SEAL else 'stage'}",
            outcome="success",
            resource_type="call",
            resource_id=call.id,
            request_id=request_id,
            metadata={"action": action, "enqueued": job_id is not None, "reason": reason, "version": version},
        )
        await self._session.commit()
        logger.info(
            "conversion_enqueue call=%s action=%s enqueued=%s reason=%s",
            call.id,
            action,
            job_id is not None,
            reason,
        )
        return EnqueueResult(
            enqueued=job_id is not None,
            call_id=call.id,
            version=version,
            reason=reason,
            value_cents=value_cents if job_id else None,
            currency=currency,
            job_id=job_id,
            stage=stage_label,
        )
