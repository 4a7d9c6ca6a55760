from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
import re
from typing import Any
from urllib.parse import parse_qs, urlsplit
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.domain.models import TrackedEvent, TrackedSession
from leadflow.persistence.guards import ensure_row_tenant, tenant_predicate
from leadflow.services.ingest.idempotency import year_month_of


logger = logging.getLogger(__name__)

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_CLICK_IDS = ("gclid", "wbraid", "gbraid")
_UTM_FIELDS = ("source", "medium", "campaign", "term", "content")
_DEFAULT_CATEGORY = "interaction"


@dataclass(frozen=True)
class StoredEvent:
    session_id: str
    session_month: str
    event_id: int
    created_session: bool


def _meta(payload: dict[str, Any]) -> dict[str, Any]:
    meta = payload.get("meta")
    return meta if isinstance(meta, dict) else {}


def _query_params(url: str | None) -> dict[str, str]:
    if not url:
        return {}
    try:
        parsed = parse_qs(urlsplit(url).query)
    except ValueError:
        return {}
    return {key: values[0] for key, values in parsed.items() if values}


def extract_click_ids(payload: dict[str, Any]) -> dict[str, str | None]:
    # URL parameters win over tracker metadata.
    params = _query_params(payload.get("url") or payload.get("u"))
    meta = _meta(payload)
    return {name: (params.get(name) or meta.get(name) or None) for name in _CLICK_IDS}


def extract_utm(payload: dict[str, Any]) -> dict[str, str | None]:
    params = _query_params(payload.get("url") or payload.get("u"))
    utm = payload.get("utm") if isinstance(payload.get("utm"), dict) else {}
    return {name: (utm.get(name) or params.get(f"utm_{name}") or None) for name in _UTM_FIELDS}


def consent_scopes_of(payload: dict[str, Any]) -> list[str]:
    raw = payload.get("consent_scopes")
    if not isinstance(raw, list):
        return []
    return sorted({str(scope).strip().lower() for scope in raw if str(scope).strip()})


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


async def _find_session(
    session: AsyncSession, *, tenant_id: str, session_id: str, month: str
) -> TrackedSession | None:
    row = (
        await session.execute(
            select(TrackedSession).where(
                tenant_predicate(TrackedSession, tenant_id),
                TrackedSession.id == session_id,
                TrackedSession.created_month == month,
            )
        )
    ).scalar_one_or_none()
    return ensure_row_tenant(row, tenant_id)


async def store_event(
    session: AsyncSession,
    *,
    tenant_id: str,
    payload: dict[str, Any],
    now: datetime,
) -> StoredEvent:
    """Attach an admitted event to its session, creating the session on first sight.

    Sessions live in monthly partitions keyed by ``created_month``; a client
    session id that is not a UUID gets a fresh server-side id.
    """
    meta = _meta(payload)
    client_sid = str(payload.get("sid") or "")
    month = str(payload.get("sm") or "")[:7] or year_month_of(now)
    fingerprint = str(meta.get("fp") or payload.get("fp") or "") or None
    click_ids = extract_click_ids(payload)
    scopes = consent_scopes_of(payload)

    tracked = None
    if _UUID_RE.match(client_sid):
        tracked = await _find_session(session, tenant_id=tenant_id, session_id=client_sid, month=month)
    created = tracked is None
    if tracked is None:
        utm = extract_utm(payload)
        tracked = TrackedSession(
            id=client_sid if _UUID_RE.match(client_sid) else str(uuid4()),
            tenant_id=tenant_id,
            created_month=month,
            fingerprint=fingerprint,
            utm_source=utm["source"],
            utm_medium=utm["medium"],
            utm_campaign=utm["campaign"],
            utm_term=utm["term"],
            utm_content=utm["content"],
            consent_scopes=scopes or None,
            total_duration_sec=0,
            max_scroll_depth=0,
            event_count=0,
            created_at=now,
            **click_ids,
        )
        session.add(tracked)
    else:
        # Later hits may carry a click id or fingerprint the landing hit lacked.
        for name, value in click_ids.items():
            if value and not getattr(tracked, name):
                setattr(tracked, name, value)
        if fingerprint and not tracked.fingerprint:
            tracked.fingerprint = fingerprint
        if scopes:
            tracked.consent_scopes = sorted(set(tracked.consent_scopes or []) | set(scopes))

    action = str(payload.get("ea") or "view")[:64]
    if action in {"heartbeat", "session_end"}:
        duration = _int_or_none(meta.get("duration_sec"))
        if duration is not None:
            tracked.total_duration_sec = max(int(tracked.total_duration_sec or 0), duration)
        scroll = _int_or_none(meta.get("scroll_pct"))
        if scroll is not None:
            tracked.max_scroll_depth = max(int(tracked.max_scroll_depth or 0), scroll)
    tracked.event_count = int(tracked.event_count or 0) + 1

    event = TrackedEvent(
        tenant_id=tenant_id,
        session_id=tracked.id,
        session_month=tracked.created_month,
        event_category=str(payload.get("ec") or _DEFAULT_CATEGORY)[:64],
        event_action=action,
        event_label=(str(payload["el"])[:256] if payload.get("el") is not None else None),
        url=payload.get("url") or payload.get("u"),
        fingerprint=fingerprint,
        metadata_json=dict(meta) or None,
        created_at=now,
    )
    session.add(event)
    await session.flush()
    logger.debug("ingest_event_stored tenant=%s session=%s created=%s", tenant_id, tracked.id, created)
    return StoredEvent(
        session_id=tracked.id,
        session_month=tracked.created_month,
        event_id=event.id,
        created_session=created,
    )
