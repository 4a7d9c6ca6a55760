from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.domain.models import Call, TrackedEvent, TrackedSession
from leadflow.persistence.guards import tenant_predicate


@dataclass(frozen=True)
class EventRef:
    session_id: str
    session_month: str
    created_at: datetime


@dataclass(frozen=True)
class SessionSnapshot:
    id: str
    tenant_id: str
    created_month: str
    created_at: datetime
    gclid: str | None = None
    wbraid: str | None = None
    gbraid: str | None = None
    consent_scopes: Any = None

    @property
    def click_id(self) -> str | None:
        return self.gclid or self.wbraid or self.gbraid


@dataclass(frozen=True)
class EventSnapshot:
    category: str
    action: str
    metadata: Any = None


@dataclass(frozen=True)
class ScoreWrite:
    session_id: str
    fingerprint: str
    lead_score: int
    confidence: int
    status: str
    breakdown: dict[str, Any]
    marketing_consent: bool
    matched_at: datetime


class AttributionStore(Protocol):
    """Read side of matching plus the single score write, always tenant scoped."""

    async def find_latest_event(
        self,
        *,
        tenant_id: str,
        fingerprint: str,
        months: Sequence[str],
        since: datetime,
        until: datetime,
    ) -> EventRef | None: ...

    async def load_session(self, *, tenant_id: str, session_id: str, month: str) -> SessionSnapshot | None: ...

    async def list_session_events(
        self, *, tenant_id: str, session_id: str, month: str
    ) -> list[EventSnapshot]: ...

    async def write_score(self, *, tenant_id: str, call_id: str, score: ScoreWrite) -> bool: ...


class SqlAttributionStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def find_latest_event(
        self,
        *,
        tenant_id: str,
        fingerprint: str,
        months: Sequence[str],
        since: datetime,
        until: datetime,
    ) -> EventRef | None:
        row = (
            await self._session.execute(
                select(TrackedEvent.session_id, TrackedEvent.session_month, TrackedEvent.created_at)
                .where(
                    tenant_predicate(TrackedEvent, tenant_id),
                    TrackedEvent.fingerprint == fingerprint,
                    TrackedEvent.session_month.in_(list(months)),
                    TrackedEvent.created_at >= since,
                    TrackedEvent.created_at <= until,
                )
                .order_by(TrackedEvent.created_at.desc(), TrackedEvent.id.desc())
                .limit(1)
            )
        ).first()
        if row is None:
            return None
        return EventRef(session_id=row.session_id, session_month=row.session_month, created_at=row.created_at)

    async def load_session(self, *, tenant_id: str, session_id: str, month: str) -> SessionSnapshot | None:
        row = (
            await self._session.execute(
                select(TrackedSession).where(
                    tenant_predicate(TrackedSession, tenant_id),
                    TrackedSession.id == session_id,
                    TrackedSession.created_month == month,
                )
            )
        ).scalar_one_or_none()
        if row is None:
            return None
        return SessionSnapshot(
            id=row.id,
            tenant_id=row.tenant_id,
            created_month=row.created_month,
            created_at=row.created_at,
            gclid=row.gclid,
            wbraid=row.wbraid,
            gbraid=row.gbraid,
            consent_scopes=row.consent_scopes,
        )

    async def list_session_events(
        self, *, tenant_id: str, session_id: str, month: str
    ) -> list[EventSnapshot]:
        rows = (
            await self._session.execute(
                select(TrackedEvent.event_category, TrackedEvent.event_action, TrackedEvent.metadata_json).where(
                    tenant_predicate(TrackedEvent, tenant_id),
                    TrackedEvent.session_id == session_id,
                    TrackedEvent.session_month == month,
                )
            )
        ).all()
        return [EventSnapshot(category=row[0], action=row[1], metadata=row[2]) for row in rows]

    async def write_score(self, *, tenant_id: str, call_id: str, score: ScoreWrite) -> bool:
        result = await self._session.execute(
            update(Call)
            .where(tenant_predicate(Call, tenant_id), Call.id == call_id)
            .values(
                matched_session_id=score.session_id,
                matched_fingerprint=score.fingerprint,
                matched_at=score.matched_at,
                lead_score=score.lead_score,
                confidence=score.confidence,
                status=score.status,
                score_breakdown=score.breakdown,
                marketing_consent=score.marketing_consent,
                updated_at=datetime.now(timezone.utc),
            )
        )
        return bool(result.rowcount)
