from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request

from leadflow.apps.api.deps import get_app_settings, get_database, get_provider, get_redis, require_scheduler
from leadflow.apps.api.openapi import SCHEDULER_ERROR_RESPONSES
from leadflow.apps.api.response import success_response
from leadflow.core.config import Settings
from leadflow.persistence.db import Database
from leadflow.services import jobs


router = APIRouter(
    prefix="/cron",
    tags=["cron"],
    responses=SCHEDULER_ERROR_RESPONSES,
    dependencies=[Depends(require_scheduler)],
)


@router.post("/dispatch")
async def cron_dispatch(
    request: Request,
    limit: int | None = Query(default=None, ge=1, le=500),
    database: Database = Depends(get_database),
    redis: Any | None = Depends(get_redis),
    provider: Any = Depends(get_provider),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    result = await jobs.dispatch_conversions(
        database, redis=redis, provider=provider, limit=limit, settings=settings
    )
    return success_response(request=request, data=result)


@router.post("/recover-processing")
async def cron_recover_processing(
    request: Request,
    min_age_minutes: int = Query(default=15),
    database: Database = Depends(get_database),
    redis: Any | None = Depends(get_redis),
    provider: Any = Depends(get_provider),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    # Out-of-range ages are clamped rather than rejected.
    result = await jobs.recover_processing(
        database,
        redis=redis,
        provider=provider,
        min_age_minutes=min(60, max(1, int(min_age_minutes))),
        settings=settings,
    )
    return success_response(request=request, data=result)


@router.post("/reconcile-usage/enqueue")
async def cron_reconcile_enqueue(
    request: Request,
    database: Database = Depends(get_database),
    redis: Any | None = Depends(get_redis),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    result = await jobs.enqueue_reconciliation(database, redis=redis, settings=settings)
    return success_response(request=request, data=result)


@router.post("/reconcile-usage/run")
async def cron_reconcile_run(
    request: Request,
    database: Database = Depends(get_database),
    redis: Any | None = Depends(get_redis),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    result = await jobs.run_reconciliation(database, redis=redis, settings=settings)
    return success_response(request=request, data=result)


@router.post("/idempotency-cleanup")
async def cron_idempotency_cleanup(
    request: Request,
    database: Database = Depends(get_database),
    redis: Any | None = Depends(get_redis),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    result = await jobs.cleanup_idempotency(database, redis=redis, settings=settings)
    return success_response(request=request, data=result)
