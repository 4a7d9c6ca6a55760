from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from leadflow.core.config import get_settings
from leadflow.persistence.guards import require_tenant_id
from leadflow.services.attribution.parsers import parse_consent_scopes, parse_event_lead_score
from leadflow.services.attribution.scoring import (
    LeadScore,
    ScoreInputs,
    compute_lead_score,
    derive_call_status,
)
from leadflow.services.attribution.store import AttributionStore, EventSnapshot, SessionSnapshot
from leadflow.services.results import Degraded, Err, Ok, Result


logger = logging.getLogger(__name__)

CATEGORY_CONVERSION = "conversion"
CATEGORY_INTERACTION = "interaction"
SCOPE_ANALYTICS = "analytics"
SCOPE_MARKETING = "marketing"


@dataclass(frozen=True)
class MatchResult:
    session_id: str
    session_month: str
    lead_score: int
    confidence: int
    status: str
    score: LeadScore
    consent_scopes: frozenset[str]
    click_id: str | None

    @property
    def breakdown(self) -> dict[str, Any]:
        return self.score.breakdown()

    @property
    def analytics_consent(self) -> bool:
        return SCOPE_ANALYTICS in self.consent_scopes

    @property
    def marketing_consent(self) -> bool:
        return SCOPE_MARKETING in self.consent_scopes


def recent_months(as_of: datetime, count: int = 2) -> list[str]:
    # Current monthly partition plus the ones immediately before it.
    moment = as_of.astimezone(timezone.utc)
    year, month = moment.year, moment.month
    months: list[str] = []
    for _ in range(max(1, count)):
        months.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return months


def score_session(
    session: SessionSnapshot,
    events: list[EventSnapshot],
    *,
    as_of: datetime,
    click_id: str | None = None,
) -> LeadScore:
    conversions = sum(1 for event in events if event.category == CATEGORY_CONVERSION)
    interactions = sum(1 for event in events if event.category == CATEGORY_INTERACTION)
    bonus = max((parse_event_lead_score(event.metadata) for event in events), default=0.0)
    elapsed = max(0.0, (as_of - session.created_at).total_seconds())
    return compute_lead_score(
        ScoreInputs(
            conversion_count=conversions,
            interaction_count=interactions,
            bonus_from_events=bonus,
            has_click_id=bool(session.click_id or click_id),
            elapsed_seconds=elapsed,
            event_count=len(events),
        )
    )


class AttributionMatcher:
    """Find the session behind a call and score it.

    Reads only through the injected ``AttributionStore``; every lookup is
    scoped to the caller's tenant.
    """

    def __init__(self, store: AttributionStore, *, window_minutes: int | None = None) -> None:
        self._store = store
        self._window = timedelta(minutes=window_minutes or get_settings().attribution_window_minutes)

    @property
    def store(self) -> AttributionStore:
        return self._store

    async def match(
        self,
        *,
        tenant_id: str,
        fingerprint: str,
        as_of: datetime | None = None,
        click_id: str | None = None,
    ) -> Result[MatchResult | None]:
        tenant_id = require_tenant_id(tenant_id)
        as_of = as_of or datetime.now(timezone.utc)
        if not fingerprint:
            return Ok(None)
        try:
            ref = await self._store.find_latest_event(
                tenant_id=tenant_id,
                fingerprint=fingerprint,
                months=recent_months(as_of),
                since=as_of - self._window,
                until=as_of,
            )
            if ref is None:
                return Ok(None)
            session = await self._store.load_session(
                tenant_id=tenant_id, session_id=ref.session_id, month=ref.session_month
            )
            if session is None:
                # Event points at a session outside this tenant's partition.
                return Degraded(reason="session_not_found", value=None)
            events = await self._store.list_session_events(
                tenant_id=tenant_id, session_id=session.id, month=session.created_month
            )
        except SQLAlchemyError as exc:
            return Err(reason="store_error", error=exc)

        score = score_session(session, events, as_of=as_of, click_id=click_id)
        return Ok(
            MatchResult(
                session_id=session.id,
                session_month=session.created_month,
                lead_score=score.final_score,
                confidence=score.confidence,
                status=derive_call_status(score),
                score=score,
                consent_scopes=parse_consent_scopes(session.consent_scopes),
                click_id=session.click_id or click_id,
            )
        )
