from __future__ import annotations

from dataclasses import dataclass
import hmac
from typing import Any, AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.core.config import Settings, get_settings
from leadflow.core.errors import AuthError
from leadflow.domain.models import Site
from leadflow.persistence.db import Database
from leadflow.services.security import verify_scheduler_request, verify_session_token
from leadflow.services.sites import get_site, get_site_by_public_id


def get_database(request: Request) -> Database:
    return request.app.state.database


async def get_db(database: Database = Depends(get_database)) -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; the context manager closes it on success or error.
    async with database.session() as session:
        yield session


def get_redis(request: Request) -> Any | None:
    return getattr(request.app.state, "redis", None)


def get_provider(request: Request) -> Any:
    return request.app.state.provider


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


async def require_scheduler(request: Request, settings: Settings = Depends(get_app_settings)) -> str:
    # Scheduled endpoints fail closed on missing or wrong secrets.
    mode = verify_scheduler_request(request.headers, settings=settings)
    request.state.scheduler_auth = mode
    return mode


@dataclass(frozen=True)
class OciPrincipal:
    site: Site
    auth_method: str


def _bearer_token(request: Request) -> str | None:
    authorization = request.headers.get("Authorization") or ""
    if authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
        return token or None
    return None


async def resolve_oci_principal(
    request: Request,
    session: AsyncSession,
    *,
    site_public_id: str | None,
    settings: Settings,
) -> OciPrincipal:
    """Authenticate an export/ack caller.

    A handshake session token binds the site directly; otherwise the global
    OCI key must be sent in ``x-api-key`` together with the public site id.
    """
    token = _bearer_token(request)
    if token:
        claims = verify_session_token(token, settings=settings)
        site = await get_site(session, claims.site_id)
        if site_public_id and site_public_id.strip() != site.public_id:
            raise AuthError("Session token does not match siteId")
        return OciPrincipal(site=site, auth_method="session_token")

    provided = (request.headers.get("x-api-key") or "").strip()
    expected = (settings.oci_api_key or "").strip()
    if not provided or not expected:
        raise AuthError("Missing OCI credentials")
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise AuthError("Invalid OCI credentials")
    site = await get_site_by_public_id(session, site_public_id or "")
    return OciPrincipal(site=site, auth_method="api_key")
