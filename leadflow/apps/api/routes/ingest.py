from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.apps.api.deps import get_app_settings, get_db, get_redis
from leadflow.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from leadflow.apps.api.rate_limit import enforce_ingest_rate_limit
from leadflow.apps.api.response import SuccessEnvelope, success_response
from leadflow.core.config import Settings
from leadflow.core.errors import InternalError, QuotaExceeded, ValidationError
from leadflow.services.ingest.events import store_event
from leadflow.services.ingest.gate import (
    OUTCOME_DUPLICATE,
    OUTCOME_IDEMPOTENCY_ERROR,
    IngestionGate,
)
from leadflow.services.sites import get_site_by_public_id


logger = logging.getLogger(__name__)

router = APIRouter(tags=["ingest"], responses=DEFAULT_ERROR_RESPONSES)

_MAX_FIELD_LENGTH = 2048


class IngestResponse(BaseModel):
    status: str
    billable: bool
    reason: str | None = None
    session_id: str | None = None
    overage: bool = False


def _gate(request: Request, redis: Any | None) -> IngestionGate:
    # The gate owns the plan cache, so it lives on app state for the process lifetime.
    gate = getattr(request.app.state, "ingestion_gate", None)
    if gate is None:
        gate = IngestionGate(redis=redis, settings=get_app_settings(request))
        request.app.state.ingestion_gate = gate
    return gate


def _validate_payload(body: Any) -> dict[str, Any]:
    if not isinstance(body, dict):
        raise ValidationError("Event payload must be a JSON object")
    site_public_id = body.get("s") or body.get("site_id")
    if not isinstance(site_public_id, str) or not site_public_id.strip():
        raise ValidationError("Missing site id")
    for field_name in ("ec", "ea", "el", "url", "u", "sid"):
        value = body.get(field_name)
        if value is not None and (not isinstance(value, (str, int, float)) or len(str(value)) > _MAX_FIELD_LENGTH):
            raise ValidationError(f"Invalid field: {field_name}", field=field_name)
    if body.get("meta") is not None and not isinstance(body.get("meta"), dict):
        raise ValidationError("meta must be an object", field="meta")
    return body


@router.post("/ingest", response_model=SuccessEnvelope[IngestResponse])
async def ingest(
    request: Request,
    db: AsyncSession = Depends(get_db),
    redis: Any | None = Depends(get_redis),
    settings: Settings = Depends(get_app_settings),
) -> JSONResponse:
    try:
        body = await request.json()
    except ValueError as exc:
        raise ValidationError("Body must be valid JSON") from exc
    payload = _validate_payload(body)
    site = await get_site_by_public_id(db, str(payload.get("s") or payload.get("site_id")))
    await enforce_ingest_rate_limit(request, redis, site_id=site.id, settings=settings)

    now = datetime.now(timezone.utc)
    result = await _gate(request, redis).admit(db, tenant_id=site.id, payload=payload, now=now)
    if result.reason == OUTCOME_DUPLICATE:
        data = IngestResponse(status="duplicate", billable=False, reason=OUTCOME_DUPLICATE)
        return JSONResponse(content=success_response(request=request, data=data))
    if result.reason == OUTCOME_IDEMPOTENCY_ERROR:
        await db.rollback()
        raise InternalError("Ingest ledger unavailable")

    stored = None
    if result.ok:
        stored = await store_event(db, tenant_id=site.id, payload=payload, now=now)
    # Rejected events still commit their non-billable ledger row.
    await db.commit()
    if not result.ok:
        raise QuotaExceeded(
            "Monthly quota exhausted",
            retry_after_s=int(result.retry_after_s or 1),
            headers=result.headers,
            reason=result.reason,
        )
    data = IngestResponse(
        status="accepted",
        billable=result.billable,
        reason=result.reason,
        session_id=stored.session_id if stored else None,
        overage=result.overage,
    )
    return JSONResponse(content=success_response(request=request, data=data), headers=result.headers)
