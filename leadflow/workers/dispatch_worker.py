from __future__ import annotations

import logging
from typing import Any

from arq import cron
from arq.connections import RedisSettings

from leadflow.core.config import get_settings
from leadflow.core.logging import configure_logging
from leadflow.persistence.db import Database
from leadflow.providers.conversions.factory import get_conversion_provider
from leadflow.services import jobs
from leadflow.services.resilience import close_redis, open_redis


logger = logging.getLogger(__name__)


def _every(minutes: int) -> set[int]:
    step = min(60, max(1, int(minutes)))
    return set(range(0, 60, step))


async def dispatch_conversion_batch(ctx, limit: int | None = None) -> dict[str, Any]:
    # Also enqueueable on demand; cron triggers share the same named lock.
    return await jobs.dispatch_conversions(
        ctx["database"],
        redis=ctx["redis"],
        provider=ctx["provider"],
        limit=limit,
        settings=ctx["settings"],
    )


async def recover_processing_rows(ctx) -> dict[str, Any]:
    settings = ctx["settings"]
    return await jobs.recover_processing(
        ctx["database"],
        redis=ctx["redis"],
        provider=ctx["provider"],
        min_age_minutes=settings.dispatch_stuck_after_minutes,
        settings=settings,
    )


async def enqueue_usage_reconciliation(ctx) -> dict[str, Any]:
    return await jobs.enqueue_reconciliation(ctx["database"], redis=ctx["redis"], settings=ctx["settings"])


async def run_usage_reconciliation(ctx) -> dict[str, Any]:
    return await jobs.run_reconciliation(ctx["database"], redis=ctx["redis"], settings=ctx["settings"])


async def prune_idempotency_records(ctx) -> dict[str, Any]:
    return await jobs.cleanup_idempotency(ctx["database"], redis=ctx["redis"], settings=ctx["settings"])


async def _startup(ctx) -> None:
    # Share one engine, cache client and provider across every job in this worker process.
    settings = get_settings()
    configure_logging(settings.log_level)
    ctx["settings"] = settings
    ctx["database"] = Database(settings=settings)
    ctx["redis"] = open_redis(settings)
    ctx["provider"] = get_conversion_provider(settings)
    logger.info("dispatch_worker_started provider=%s", getattr(ctx["provider"], "provider_key", "unknown"))


async def _shutdown(ctx) -> None:
    provider = ctx.get("provider")
    if provider is not None:
        await provider.aclose()
    await close_redis(ctx.get("redis"))
    database = ctx.get("database")
    if database is not None:
        await database.close()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = "leadflow:dispatch"
    functions = [dispatch_conversion_batch]
    cron_jobs = [
        cron(dispatch_conversion_batch, minute=_every(settings.worker_dispatch_every_min), run_at_startup=True),
        cron(recover_processing_rows, minute=_every(settings.worker_recover_every_min)),
        cron(enqueue_usage_reconciliation, hour={0}, minute={5}),
        cron(run_usage_reconciliation, minute=_every(settings.worker_reconcile_every_min)),
        cron(prune_idempotency_records, hour={3}, minute={30}),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
