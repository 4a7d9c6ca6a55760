from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import logging
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.core.config import get_settings
from leadflow.domain.models import IdempotencyRecord
from leadflow.persistence.guards import tenant_predicate


logger = logging.getLogger(__name__)

BILLING_ACCEPTED = "ACCEPTED"
BILLING_DUPLICATE = "DUPLICATE"
BILLING_OVERAGE = "OVERAGE"

_FIVE_MINUTES_MS = 5 * 60 * 1000
_V1_BUCKET_MS = 5_000
_V2_BUCKETS_MS = {"heartbeat": 10_000, "page_view": 2_000, "click": 2_000, "call_intent": 2_000, "other": 2_000}


@dataclass(frozen=True)
class InsertOutcome:
    inserted: bool
    duplicate: bool
    record_id: int | None = None
    error: Exception | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def year_month_of(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m")


def event_kind(payload: dict[str, Any]) -> str:
    # Event class decides the time source and bucket width for v2 keys.
    category = str(payload.get("ec") or "")
    action = str(payload.get("ea") or "")
    if action == "heartbeat":
        return "heartbeat"
    if category == "page" or action == "page_view":
        return "page_view"
    if action == "click" or category == "click":
        return "click"
    if action == "call_intent":
        return "call_intent"
    return "other"


def _payload_ts_ms(payload: dict[str, Any]) -> int | None:
    # Client timestamps in seconds or milliseconds; ISO strings are accepted only in ISO-8601 shape.
    meta = payload.get("meta") if isinstance(payload.get("meta"), dict) else {}
    raw: Any = None
    for candidate in (payload.get("ts"), payload.get("timestamp"), payload.get("created_at"), meta.get("ts")):
        if isinstance(candidate, (int, float)) and not isinstance(candidate, bool):
            raw = float(candidate)
            break
        if isinstance(candidate, str) and candidate:
            try:
                raw = float(candidate)
            except ValueError:
                try:
                    raw = datetime.fromisoformat(candidate.replace("Z", "+00:00")).timestamp() * 1000
                except ValueError:
                    continue
            break
    if raw is None:
        return None
    ms = raw * 1000 if raw < 1e12 else raw
    return int(ms)


def _event_name(payload: dict[str, Any]) -> str:
    return f"{payload.get('ec') or ''}|{payload.get('ea') or ''}|{payload.get('el') or ''}"


def _session_fingerprint(payload: dict[str, Any]) -> str:
    # Fingerprint or session id only; never IP or user agent.
    meta = payload.get("meta") if isinstance(payload.get("meta"), dict) else {}
    return str(meta.get("fp") or payload.get("fp") or payload.get("sid") or "")


def _normalized_url(payload: dict[str, Any]) -> str:
    url = str(payload.get("url") or payload.get("u") or "").strip()
    # Fragments never change the landing page identity.
    return url.split("#", 1)[0]


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def compute_key_v1(tenant_id: str, payload: dict[str, Any], *, now_ms: int) -> str:
    bucket = now_ms - (now_ms % _V1_BUCKET_MS)
    material = f"{tenant_id}:{_event_name(payload)}:{_normalized_url(payload)}:{_session_fingerprint(payload)}:{bucket}"
    return _digest(material)


def v2_time_component(payload: dict[str, Any], *, now_ms: int) -> int:
    # Clicks and call intents use server time only so clients cannot bypass dedupe.
    kind = event_kind(payload)
    ts_ms = now_ms
    if kind in {"heartbeat", "page_view"}:
        client_ms = _payload_ts_ms(payload)
        if client_ms is not None and abs(client_ms - now_ms) <= _FIVE_MINUTES_MS:
            ts_ms = client_ms
    bucket = _V2_BUCKETS_MS[kind]
    return ts_ms - (ts_ms % bucket)


def compute_key_v2(tenant_id: str, payload: dict[str, Any], *, now_ms: int) -> str:
    component = v2_time_component(payload, now_ms=now_ms)
    material = f"{tenant_id}:{_event_name(payload)}:{_normalized_url(payload)}:{_session_fingerprint(payload)}:{component}"
    return f"v2:{_digest(material)}"


def compute_idempotency_key(
    tenant_id: str,
    payload: dict[str, Any],
    *,
    now: datetime | None = None,
    version: str | None = None,
) -> str:
    now_ms = int((now or _utc_now()).timestamp() * 1000)
    resolved = (version or get_settings().idempotency_key_version).lower()
    if resolved == "v1":
        return compute_key_v1(tenant_id, payload, now_ms=now_ms)
    return compute_key_v2(tenant_id, payload, now_ms=now_ms)


def key_version(idempotency_key: str) -> str:
    return "v2" if idempotency_key.startswith("v2:") else "v1"


def expires_at_for(now: datetime) -> datetime:
    return now + timedelta(days=max(1, int(get_settings().idempotency_retention_days)))


async def try_insert_key(
    session: AsyncSession,
    *,
    tenant_id: str,
    idempotency_key: str,
    billable: bool,
    billable_reason: str | None,
    payload: dict[str, Any],
    now: datetime,
) -> InsertOutcome:
    """Insert the ledger row for one ingest attempt.

    A unique violation means the event was already seen. Any other database
    error is returned as-is so the caller can fail closed.
    """
    record = IdempotencyRecord(
        tenant_id=tenant_id,
        idempotency_key=idempotency_key,
        idempotency_version=key_version(idempotency_key),
        billable=billable,
        billable_reason=billable_reason,
        billing_state=BILLING_ACCEPTED,
        year_month=year_month_of(now),
        event_category=_clip(payload.get("ec"), 64),
        event_action=_clip(payload.get("ea"), 64),
        event_label=_clip(payload.get("el"), 256),
        created_at=now,
        expires_at=expires_at_for(now),
    )
    try:
        async with session.begin_nested():
            session.add(record)
            await session.flush()
    except IntegrityError:
        return InsertOutcome(inserted=False, duplicate=True)
    except SQLAlchemyError as exc:
        logger.warning("idempotency_insert_failed tenant=%s", tenant_id, exc_info=exc)
        return InsertOutcome(inserted=False, duplicate=False, error=exc)
    return InsertOutcome(inserted=True, duplicate=False, record_id=record.id)


async def mark_not_billable(session: AsyncSession, *, tenant_id: str, idempotency_key: str, reason: str) -> None:
    # Rejected rows stay in the ledger for audit but never count toward the invoice.
    await session.execute(
        update(IdempotencyRecord)
        .where(
            tenant_predicate(IdempotencyRecord, tenant_id),
            IdempotencyRecord.idempotency_key == idempotency_key,
        )
        .values(billable=False, billable_reason=reason)
    )


async def mark_overage(session: AsyncSession, *, tenant_id: str, idempotency_key: str) -> None:
    await session.execute(
        update(IdempotencyRecord)
        .where(
            tenant_predicate(IdempotencyRecord, tenant_id),
            IdempotencyRecord.idempotency_key == idempotency_key,
        )
        .values(billing_state=BILLING_OVERAGE)
    )


async def get_record(session: AsyncSession, *, tenant_id: str, idempotency_key: str) -> IdempotencyRecord | None:
    return (
        await session.execute(
            select(IdempotencyRecord).where(
                tenant_predicate(IdempotencyRecord, tenant_id),
                IdempotencyRecord.idempotency_key == idempotency_key,
            )
        )
    ).scalar_one_or_none()


async def prune_expired(session: AsyncSession, *, now: datetime | None = None, limit: int = 5000) -> int:
    # Retention sweep: only rows past expires_at, bounded per call to keep transactions short.
    cutoff = now or _utc_now()
    ids = (
        await session.execute(
            select(IdempotencyRecord.id)
            .where(IdempotencyRecord.expires_at < cutoff)
            .order_by(IdempotencyRecord.expires_at.asc())
            .limit(max(1, limit))
        )
    ).scalars().all()
    if not ids:
        return 0
    await session.execute(delete(IdempotencyRecord).where(IdempotencyRecord.id.in_(list(ids))))
    await session.commit()
    return len(ids)


def _clip(value: Any, size: int) -> str | None:
    if value is None:
        return None
    return str(value)[:size]
