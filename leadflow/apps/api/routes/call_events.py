from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.apps.api.deps import get_app_settings, get_db, get_redis
from leadflow.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from leadflow.apps.api.response import success_response
from leadflow.core.config import Settings
from leadflow.core.errors import AuthError, PayloadTooLarge, ValidationError
from leadflow.domain.models import Site
from leadflow.services.attribution.call_events import OUTCOME_RECORDED, CallEventInput, record_call_event
from leadflow.services.security import (
    ReplayCache,
    parse_call_event_headers,
    verify_call_event_signature,
)
from leadflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

router = APIRouter(tags=["call-events"], responses=DEFAULT_ERROR_RESPONSES)


class CallEventRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    site_id: str
    fingerprint: str = Field(min_length=1, max_length=128, alias="fp")
    phone_number: str | None = Field(default=None, max_length=256)
    click_id: str | None = Field(default=None, max_length=256)
    intent_action: str | None = Field(default=None, max_length=32)
    intent_target: str | None = Field(default=None, max_length=512)
    intent_stamp: str | None = Field(default=None, max_length=128)
    intent_page_url: str | None = Field(default=None, max_length=2048)


def _replay_cache(request: Request, redis: Any | None, settings: Settings) -> ReplayCache:
    cache = getattr(request.app.state, "replay_cache", None)
    if cache is None:
        cache = ReplayCache(redis, ttl_s=settings.call_event_replay_ttl_s)
        request.app.state.replay_cache = cache
    return cache


@router.post("/call-events", status_code=200)
async def create_call_event(
    request: Request,
    db: AsyncSession = Depends(get_db),
    redis: Any | None = Depends(get_redis),
    settings: Settings = Depends(get_app_settings),
) -> Response:
    raw_body = await request.body()
    if len(raw_body) > settings.call_event_max_body_bytes:
        raise PayloadTooLarge("Call event body too large", limit=settings.call_event_max_body_bytes)
    headers = parse_call_event_headers(request.headers)

    # Sites are addressed by public id; the secret never leaves the database.
    site = (await db.execute(select(Site).where(Site.public_id == headers.site_id))).scalar_one_or_none()
    verification = verify_call_event_signature(
        headers,
        raw_body,
        site.call_event_secret if site is not None else None,
        settings=settings,
    )
    if site is None or not verification.ok:
        increment_counter(f"call_event.auth_failed.{verification.reason}")
        logger.info("call_event_rejected site=%s reason=%s", headers.site_id, verification.reason)
        raise AuthError("Invalid call event signature")

    if await _replay_cache(request, redis, settings).seen(headers.site_id, headers.signature):
        increment_counter("call_event.replay")
        return JSONResponse(content=success_response(request=request, data={"status": "ok"}))

    try:
        body = CallEventRequest.model_validate(json.loads(raw_body or b"{}"))
    except (ValueError, PydanticValidationError) as exc:
        raise ValidationError("Invalid call event payload") from exc
    if body.site_id.strip().lower() != headers.site_id:
        raise AuthError("Body site id does not match the signed site id")

    outcome = await record_call_event(
        db,
        site=site,
        payload=CallEventInput(
            fingerprint=body.fingerprint,
            phone_number=body.phone_number,
            click_id=body.click_id,
            intent_action=body.intent_action,
            intent_target=body.intent_target,
            intent_stamp=body.intent_stamp,
            intent_page_url=body.intent_page_url,
        ),
        now=datetime.now(timezone.utc),
        matcher=getattr(request.app.state, "attribution_matcher", None),
    )
    if outcome.outcome != OUTCOME_RECORDED:
        await db.rollback()
        return Response(status_code=204)
    await db.commit()
    match = outcome.match
    data = {
        "status": "recorded",
        "call_id": outcome.call_id,
        "lead_score": match.lead_score if match else None,
        "confidence": match.confidence if match else None,
        "call_status": match.status if match else None,
    }
    return JSONResponse(content=success_response(request=request, data=data))
