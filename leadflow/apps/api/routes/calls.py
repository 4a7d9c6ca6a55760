from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.apps.api.deps import get_db
from leadflow.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from leadflow.apps.api.response import SuccessEnvelope, get_request_id, success_response
from leadflow.services.conversions.enqueue import ConversionEnqueuer
from leadflow.services.sites import get_site_by_public_id


router = APIRouter(prefix="/calls", tags=["calls"], responses=DEFAULT_ERROR_RESPONSES)


class SealRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    site_id: str = Field(alias="siteId")
    version: int = Field(ge=1)
    sale_amount: float | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, max_length=8)
    lead_score: int | None = Field(default=None, ge=0, le=100)
    star: int | None = Field(default=None, ge=1, le=5)


class StageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    site_id: str = Field(alias="siteId")
    stage_id: str = Field(alias="stageId", min_length=1, max_length=64)
    version: int = Field(ge=1)
    custom_amount_cents: int | None = Field(default=None, alias="customAmountCents", ge=0)


class EnqueueResponse(BaseModel):
    enqueued: bool
    call_id: str
    version: int
    reason: str | None = None
    value_cents: int | None = None
    currency: str | None = None
    job_id: str | None = None
    stage: str | None = None


@router.post("/{call_id}/seal", response_model=SuccessEnvelope[EnqueueResponse])
async def seal_call(
    call_id: str,
    payload: SealRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    x_actor_id: str | None = Header(default=None),
) -> dict:
    # Operator identity comes from the upstream dashboard session.
    site = await get_site_by_public_id(db, payload.site_id)
    result = await ConversionEnqueuer(db).seal(
        tenant_id=site.id,
        call_id=call_id,
        expected_version=payload.version,
        sale_amount=payload.sale_amount,
        currency=payload.currency,
        lead_score=payload.lead_score,
        star=payload.star,
        actor_id=x_actor_id,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=result.as_dict())


@router.post("/{call_id}/stage", response_model=SuccessEnvelope[EnqueueResponse])
async def stage_call(
    call_id: str,
    payload: StageRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    x_actor_id: str | None = Header(default=None),
) -> dict:
    site = await get_site_by_public_id(db, payload.site_id)
    result = await ConversionEnqueuer(db).stage(
        tenant_id=site.id,
        call_id=call_id,
        stage_id=payload.stage_id,
        expected_version=payload.version,
        custom_amount_cents=payload.custom_amount_cents,
        actor_id=x_actor_id,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=result.as_dict())
