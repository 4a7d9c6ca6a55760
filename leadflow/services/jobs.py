"""Scheduled batch jobs.

Each job runs under a named mutex so overlapping triggers (HTTP scheduler,
arq cron, manual script) never process the same batch twice. The same
functions back the cron routes, the worker and the scripts.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable

from leadflow.core.config import Settings, get_settings
from leadflow.persistence.db import Database
from leadflow.providers.conversions.base import ConversionProvider
from leadflow.services import reconciliation
from leadflow.services.dispatch.worker import DispatchWorker
from leadflow.services.ingest.idempotency import prune_expired
from leadflow.services.resilience import acquire_named_lock, release_named_lock
from leadflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

LOCK_DISPATCH = "dispatch"
LOCK_RECOVER = "recover_processing"
LOCK_RECONCILE_ENQUEUE = "reconcile_enqueue"
LOCK_RECONCILE_RUN = "reconcile_run"
LOCK_IDEMPOTENCY_CLEANUP = "idempotency_cleanup"


async def run_locked(
    name: str,
    *,
    redis: Any | None,
    job: Callable[[], Awaitable[dict[str, Any]]],
    settings: Settings | None = None,
) -> dict[str, Any]:
    settings = settings or get_settings()
    lock = await acquire_named_lock(name, redis=redis, ttl_s=settings.cron_lock_ttl_s)
    if lock is None:
        increment_counter(f"jobs.{name}.skipped")
        logger.info("scheduled_job_skipped job=%s reason=lock_held", name)
        return {"ok": True, "skipped": True, "reason": "lock_held"}
    start = time.monotonic()
    try:
        result = await job()
    finally:
        await release_named_lock(lock)
    logger.info("scheduled_job_finished job=%s latency_ms=%.1f", name, (time.monotonic() - start) * 1000.0)
    return {"ok": True, **result}


async def dispatch_conversions(
    database: Database,
    *,
    redis: Any | None,
    provider: ConversionProvider,
    limit: int | None = None,
    settings: Settings | None = None,
) -> dict[str, Any]:
    settings = settings or get_settings()

    async def _job() -> dict[str, Any]:
        async with database.session() as session:
            summary = await DispatchWorker(session, provider=provider, settings=settings).run(limit=limit)
        return summary.as_dict()

    return await run_locked(LOCK_DISPATCH, redis=redis, job=_job, settings=settings)


async def recover_processing(
    database: Database,
    *,
    redis: Any | None,
    provider: ConversionProvider,
    min_age_minutes: int | None = None,
    settings: Settings | None = None,
) -> dict[str, Any]:
    settings = settings or get_settings()

    async def _job() -> dict[str, Any]:
        async with database.session() as session:
            worker = DispatchWorker(session, provider=provider, settings=settings)
            recovered = await worker.recover_stuck(min_age_minutes=min_age_minutes)
        return {"recovered": recovered}

    return await run_locked(LOCK_RECOVER, redis=redis, job=_job, settings=settings)


async def enqueue_reconciliation(
    database: Database,
    *,
    redis: Any | None,
    settings: Settings | None = None,
) -> dict[str, Any]:
    async def _job() -> dict[str, Any]:
        async with database.session() as session:
            return await reconciliation.enqueue_jobs(session)

    return await run_locked(LOCK_RECONCILE_ENQUEUE, redis=redis, job=_job, settings=settings)


async def run_reconciliation(
    database: Database,
    *,
    redis: Any | None,
    settings: Settings | None = None,
) -> dict[str, Any]:
    settings = settings or get_settings()

    async def _job() -> dict[str, Any]:
        async with database.session() as session:
            return await reconciliation.run_jobs(session, redis=redis, settings=settings)

    return await run_locked(LOCK_RECONCILE_RUN, redis=redis, job=_job, settings=settings)


async def cleanup_idempotency(
    database: Database,
    *,
    redis: Any | None,
    batch_size: int = 5000,
    max_batches: int = 20,
    settings: Settings | None = None,
) -> dict[str, Any]:
    async def _job() -> dict[str, Any]:
        deleted = 0
        async with database.session() as session:
            for _ in range(max(1, max_batches)):
                removed = await prune_expired(session, limit=batch_size)
                deleted += removed
                if removed < batch_size:
                    break
        return {"deleted": deleted}

    return await run_locked(LOCK_IDEMPOTENCY_CLEANUP, redis=redis, job=_job, settings=settings)
