from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.core.config import Settings, get_settings
from leadflow.core.errors import CredentialsError, ProviderError
from leadflow.domain.models import ConversionQueueJob
from leadflow.providers.conversions.base import (
    CATEGORY_AUTH,
    CATEGORY_TRANSIENT,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_RETRY,
    ConversionProvider,
    ConversionUpload,
    UploadResult,
)
from leadflow.services.audit import record_event
from leadflow.services.dispatch import queue
from leadflow.services.dispatch.credentials import load_credentials
from leadflow.services.dispatch.scheduling import allocate_claims, next_retry_delay_s
from leadflow.services.telemetry import increment_counter, record_outcome, set_gauge


logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DispatchSummary:
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    groups: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "claimed": self.claimed,
            "completed": self.completed,
            "retried": self.retried,
            "failed": self.failed,
            "groups": self.groups,
        }


def to_upload(job: ConversionQueueJob) -> ConversionUpload:
    return ConversionUpload(
        job_id=job.id,
        tenant_id=job.tenant_id,
        action=job.action,
        conversion_time=job.conversion_time,
        value_cents=int(job.value_cents or 0),
        currency=job.currency,
        gclid=job.gclid,
        wbraid=job.wbraid,
        gbraid=job.gbraid,
    )


class DispatchWorker:
    """Claims queued conversions and pushes them to the provider.

    A run never raises for a single group or row: every claimed row leaves
    PROCESSING as COMPLETED, RETRY or FAILED before the run returns.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        provider: ConversionProvider,
        settings: Settings | None = None,
    ) -> None:
        self._session = session
        self._provider = provider
        self._settings = settings or get_settings()

    @property
    def max_attempts(self) -> int:
        return max(1, int(self._settings.dispatch_max_attempts))

    async def run(self, *, limit: int | None = None, now: datetime | None = None) -> DispatchSummary:
        now = now or _utc_now()
        budget = max(1, int(limit or self._settings.dispatch_batch_limit))
        summary = DispatchSummary()
        groups = await queue.list_groups(self._session, now=now)
        set_gauge("dispatch.backlog", float(sum(group.queued_count for group in groups)))
        allocation = allocate_claims(groups, budget)
        skip_locked = self._session.bind.dialect.name == "postgresql"
        for (tenant_id, provider_key), share in allocation.items():
            if share <= 0 or provider_key != self._provider.provider_key:
                continue
            summary.groups += 1
            try:
                jobs = await queue.claim_group(
                    self._session,
                    tenant_id=tenant_id,
                    provider_key=provider_key,
                    limit=share,
                    now=now,
                    skip_locked=skip_locked,
                )
                if jobs:
                    summary.claimed += len(jobs)
                    await self._process_group(tenant_id, provider_key, jobs, summary, now=now)
            except Exception as exc:  # noqa: BLE001 - one broken group must not stall the others
                await self._session.rollback()
                summary.errors.append(f"{tenant_id}:{provider_key}")
                logger.exception("dispatch_group_failed tenant=%s provider=%s", tenant_id, provider_key, exc_info=exc)
        logger.info(
            "dispatch_run claimed=%s completed=%s retried=%s failed=%s groups=%s",
            summary.claimed,
            summary.completed,
            summary.retried,
            summary.failed,
            summary.groups,
        )
        return summary

    async def _process_group(
        self,
        tenant_id: str,
        provider_key: str,
        jobs: list[ConversionQueueJob],
        summary: DispatchSummary,
        *,
        now: datetime,
    ) -> None:
        try:
            credentials = await load_credentials(self._session, tenant_id=tenant_id, provider_key=provider_key)
        except CredentialsError as exc:
            credentials = None
            logger.warning("dispatch_credentials_unreadable tenant=%s provider=%s", tenant_id, provider_key, exc_info=exc)
        if credentials is None:
            for job in jobs:
                self._fail(job, code="CREDENTIALS_MISSING", message="Provider credentials not found", category=CATEGORY_AUTH, now=now)
            summary.failed += len(jobs)
            await self._audit_failures(tenant_id, jobs, reason="credentials_missing")
            await self._session.commit()
            return

        try:
            results = await self._provider.upload([to_upload(job) for job in jobs], credentials=credentials)
        except ProviderError as exc:
            # Batch-level failure: every row in the group shares the category.
            increment_counter(f"dispatch.provider_error.{exc.category.lower()}")
            results = [
                UploadResult(
                    job_id=job.id,
                    status=STATUS_RETRY if exc.category == CATEGORY_TRANSIENT else STATUS_FAILED,
                    error_code=exc.provider_code,
                    error_message=exc.message,
                    category=exc.category,
                )
                for job in jobs
            ]
        except Exception as exc:  # noqa: BLE001 - unknown failures are retried, never dropped
            logger.exception("dispatch_upload_unexpected tenant=%s provider=%s", tenant_id, provider_key, exc_info=exc)
            results = [
                UploadResult(
                    job_id=job.id,
                    status=STATUS_RETRY,
                    error_code="UNEXPECTED",
                    error_message=f"{type(exc).__name__}: {exc}",
                    category=CATEGORY_TRANSIENT,
                )
                for job in jobs
            ]

        by_id = {result.job_id: result for result in results}
        failed: list[ConversionQueueJob] = []
        for job in jobs:
            result = by_id.get(job.id) or UploadResult(
                job_id=job.id,
                status=STATUS_RETRY,
                error_code="NO_RESULT",
                error_message="Provider returned no result for job",
                category=CATEGORY_TRANSIENT,
            )
            status = self._apply(job, result, now=now)
            record_outcome("dispatch", status.lower())
            if status == STATUS_COMPLETED:
                summary.completed += 1
            elif status == STATUS_RETRY:
                summary.retried += 1
            else:
                summary.failed += 1
                failed.append(job)
        if failed:
            await self._audit_failures(tenant_id, failed, reason="upload_failed")
        await self._session.commit()

    def _apply(self, job: ConversionQueueJob, result: UploadResult, *, now: datetime) -> str:
        if result.status == STATUS_COMPLETED:
            job.status = STATUS_COMPLETED
            job.uploaded_at = now
            job.claimed_at = None
            job.last_error = None
            job.error_category = None
            job.provider_error_code = None
            job.updated_at = now
            return STATUS_COMPLETED
        if result.status == STATUS_RETRY:
            return self._retry(job, result, now=now)
        self._fail(
            job,
            code=result.error_code,
            message=result.error_message,
            category=result.category or "VALIDATION",
            now=now,
        )
        return STATUS_FAILED

    def _retry(self, job: ConversionQueueJob, result: UploadResult, *, now: datetime) -> str:
        attempts = int(job.attempt_count or 0)
        message = result.error_message or "Transient provider failure"
        if attempts + 1 >= self.max_attempts:
            job.attempt_count = attempts + 1
            self._fail(
                job,
                code=result.error_code,
                message=f"Max retries reached: {message}",
                category=CATEGORY_TRANSIENT,
                now=now,
            )
            return STATUS_FAILED
        job.status = STATUS_RETRY
        job.next_retry_at = now + timedelta(seconds=next_retry_delay_s(attempts))
        job.attempt_count = attempts + 1
        job.claimed_at = None
        job.last_error = message[:MAX_ERROR_LENGTH]
        job.error_category = CATEGORY_TRANSIENT
        job.provider_error_code = result.error_code[:64] if result.error_code else None
        job.updated_at = now
        return STATUS_RETRY

    @staticmethod
    def _fail(
        job: ConversionQueueJob,
        *,
        code: str | None,
        message: str | None,
        category: str,
        now: datetime,
    ) -> None:
        job.status = STATUS_FAILED
        job.claimed_at = None
        job.last_error = (message or "Provider rejected conversion")[:MAX_ERROR_LENGTH]
        job.error_category = category
        job.provider_error_code = code[:64] if code else None
        job.updated_at = now

    async def _audit_failures(self, tenant_id: str, jobs: list[ConversionQueueJob], *, reason: str) -> None:
        for job in jobs:
            await record_event(
                session=self._session,
                tenant_id=tenant_id,
                actor_type="system",
                actor_id=None,
                event_type="conversion.dispatch.failed",
                outcome="failure",
                resource_type="conversion_job",
                resource_id=job.id,
                metadata={
                    "reason": reason,
                    "category": job.error_category,
                    "attempt_count": job.attempt_count,
                },
                error_code=job.provider_error_code,
            )

    async def recover_stuck(self, *, min_age_minutes: int | None = None, now: datetime | None = None) -> int:
        age = int(min_age_minutes or self._settings.dispatch_stuck_after_minutes)
        return await queue.recover_stuck(self._session, min_age_minutes=min(60, max(1, age)), now=now)
