from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from leadflow.apps.api.deps import get_database, get_redis
from leadflow.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from leadflow.apps.api.response import SuccessEnvelope, success_response
from leadflow.persistence.db import Database


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    database: str
    cache: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(
    request: Request,
    database: Database = Depends(get_database),
    redis: Any | None = Depends(get_redis),
) -> dict:
    # Cache trouble only degrades; a dead database makes the service unhealthy.
    db_state = "ok"
    try:
        async with database.session() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("health_database_failed", exc_info=exc)
        db_state = "error"
    cache_state = "disabled"
    if redis is not None:
        try:
            await redis.ping()
            cache_state = "ok"
        except Exception as exc:  # noqa: BLE001 - health reports, never raises
            logger.warning("health_cache_failed", exc_info=exc)
            cache_state = "degraded"
    status = "ok" if db_state == "ok" else "error"
    payload = HealthResponse(status=status, database=db_state, cache=cache_state)
    return success_response(request=request, data=payload)
