from __future__ import annotations

import re

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.core.errors import IdentityBoundaryError, NotFoundError, ValidationError
from leadflow.domain.models import Site
from leadflow.services.security import looks_like_uuid


_PUBLIC_ID_RE = re.compile(r"^[A-Za-z0-9_-]{8,64}$")


def normalize_public_id(value: str | None) -> str:
    # External callers address sites by public id only; internal UUIDs are refused.
    candidate = (value or "").strip()
    if not candidate:
        raise ValidationError("Missing siteId")
    if looks_like_uuid(candidate):
        raise IdentityBoundaryError("siteId must be the public site id", site_id_kind="internal")
    if not _PUBLIC_ID_RE.match(candidate):
        raise ValidationError("Malformed siteId")
    return candidate


async def get_site_by_public_id(session: AsyncSession, public_id: str) -> Site:
    normalized = normalize_public_id(public_id)
    site = (await session.execute(select(Site).where(Site.public_id == normalized))).scalar_one_or_none()
    if site is None:
        raise NotFoundError("Site not found")
    return site


async def get_site(session: AsyncSession, site_id: str) -> Site:
    site = await session.get(Site, site_id)
    if site is None:
        raise NotFoundError("Site not found")
    return site
