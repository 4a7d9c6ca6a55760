from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.apps.api.deps import get_app_settings, get_db, resolve_oci_principal
from leadflow.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from leadflow.apps.api.response import SuccessEnvelope, get_request_id, success_response
from leadflow.core.config import Settings
from leadflow.core.errors import AuthError, NotFoundError
from leadflow.providers.conversions.base import CATEGORY_AUTH, CATEGORY_TRANSIENT, CATEGORY_VALIDATION
from leadflow.services.audit import record_event
from leadflow.services.conversions.enqueue import PROVIDER_GOOGLE_ADS
from leadflow.services.dispatch import queue
from leadflow.services.security import create_session_token
from leadflow.services.sites import get_site_by_public_id


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/oci", tags=["oci"], responses=DEFAULT_ERROR_RESPONSES)

_CATEGORIES = {CATEGORY_VALIDATION, CATEGORY_TRANSIENT, CATEGORY_AUTH}


class HandshakeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    site_id: str = Field(alias="siteId")


class HandshakeResponse(BaseModel):
    session_token: str
    expires_at: str


class ExportRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    site_id: str | None = Field(default=None, alias="siteId")
    provider_key: str = Field(default=PROVIDER_GOOGLE_ADS, alias="providerKey", max_length=32)
    limit: int | None = Field(default=None, ge=1, le=1000)


class AckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    site_id: str | None = Field(default=None, alias="siteId")
    ids: list[str] = Field(min_length=1, max_length=1000)


class AckFailedRequest(AckRequest):
    error_code: str = Field(default="VALIDATION_FAILED", alias="errorCode", min_length=1, max_length=64)
    error_message: str | None = Field(default=None, alias="errorMessage")
    error_category: str = Field(default=CATEGORY_VALIDATION, alias="errorCategory")


class AckResponse(BaseModel):
    ok: bool
    updated: int


@router.post("/handshake", response_model=SuccessEnvelope[HandshakeResponse])
async def handshake(
    payload: HandshakeRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    x_api_key: str | None = Header(default=None),
) -> dict:
    try:
        site = await get_site_by_public_id(db, payload.site_id)
    except NotFoundError as exc:
        # Unknown sites look exactly like a bad key.
        raise AuthError("Invalid OCI API key") from exc
    provided = (x_api_key or "").strip()
    expected = (site.oci_api_key or "").strip()
    if not provided or not expected or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        logger.info("oci_handshake_rejected site=%s", site.public_id)
        raise AuthError("Invalid OCI API key")
    token, expires_at = create_session_token(site_id=site.id, public_id=site.public_id, settings=settings)
    return success_response(
        request=request,
        data=HandshakeResponse(session_token=token, expires_at=expires_at.isoformat()),
    )


@router.post("/export")
async def export_conversions(
    payload: ExportRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    principal = await resolve_oci_principal(request, db, site_public_id=payload.site_id, settings=settings)
    limit = min(int(payload.limit or settings.oci_export_limit), settings.oci_export_limit)
    jobs = await queue.claim_group(
        db,
        tenant_id=principal.site.id,
        provider_key=payload.provider_key,
        limit=limit,
        skip_locked=db.bind.dialect.name == "postgresql",
    )
    items = [
        {
            "id": queue.external_id(job.id),
            "call_id": job.call_id,
            "action": job.action,
            "conversion_time": job.conversion_time.isoformat(),
            "value": round(int(job.value_cents or 0) / 100, 2),
            "value_cents": int(job.value_cents or 0),
            "currency": job.currency,
            "gclid": job.gclid,
            "wbraid": job.wbraid,
            "gbraid": job.gbraid,
        }
        for job in jobs
    ]
    logger.info("oci_export site=%s count=%s auth=%s", principal.site.public_id, len(items), principal.auth_method)
    return success_response(request=request, data={"items": items, "count": len(items)})


@router.post("/ack", response_model=SuccessEnvelope[AckResponse])
async def ack_conversions(
    payload: AckRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    principal = await resolve_oci_principal(request, db, site_public_id=payload.site_id, settings=settings)
    ids = queue.parse_external_ids(payload.ids)
    updated = await queue.ack_completed(db, tenant_id=principal.site.id, job_ids=ids)
    return success_response(request=request, data=AckResponse(ok=True, updated=updated))


@router.post("/ack-failed", response_model=SuccessEnvelope[AckResponse])
async def ack_failed_conversions(
    payload: AckFailedRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    principal = await resolve_oci_principal(request, db, site_public_id=payload.site_id, settings=settings)
    category = payload.error_category.strip().upper()
    if category not in _CATEGORIES:
        category = CATEGORY_VALIDATION
    ids = queue.parse_external_ids(payload.ids)
    updated = await queue.ack_failed(
        db,
        tenant_id=principal.site.id,
        job_ids=ids,
        error_code=payload.error_code.strip()[:64] or "VALIDATION_FAILED",
        error_message=payload.error_message[:1024] if payload.error_message else None,
        category=category,
    )
    if updated:
        await record_event(
            session=db,
            tenant_id=principal.site.id,
            actor_type="integration",
            actor_id=principal.auth_method,
            event_type="conversion.export.failed",
            outcome="failure",
            resource_type="conversion_job",
            request_id=get_request_id(request),
            metadata={"count": updated, "category": category},
            error_code=payload.error_code[:64],
            commit=True,
        )
    return success_response(request=request, data=AckResponse(ok=True, updated=updated))
