from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from leadflow.domain.models import Call
from leadflow.services.attribution.call_events import OUTCOME_RECORDED, CallEventInput, record_call_event
from leadflow.services.attribution.matcher import AttributionMatcher
from leadflow.services.attribution.store import SessionSnapshot, SqlAttributionStore
from leadflow.services.results import Ok
from leadflow.tests.utils.fakes import InMemoryAttributionStore
from leadflow.tests.utils.seed import create_site, create_tracked_session


STARTED = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)


async def _match(database, tenant_id: str, as_of: datetime):
    async with database.session() as session:
        matcher = AttributionMatcher(SqlAttributionStore(session), window_minutes=30)
        return await matcher.match(tenant_id=tenant_id, fingerprint="fp-1", as_of=as_of)


@pytest.mark.asyncio
async def test_events_after_the_call_are_not_matched(database) -> None:
    site = await create_site(database)
    tracked = await create_tracked_session(database, tenant_id=site.id, fingerprint="fp-1", created_at=STARTED)

    before = await _match(database, site.id, STARTED - timedelta(minutes=5))
    assert before == Ok(None)

    after = await _match(database, site.id, STARTED + timedelta(minutes=5))
    assert isinstance(after, Ok)
    assert after.value.session_id == tracked.id


@pytest.mark.asyncio
async def test_call_event_score_goes_through_the_injected_store(database) -> None:
    site = await create_site(database)
    store = InMemoryAttributionStore()
    month = STARTED.strftime("%Y-%m")
    store.add_session(
        SessionSnapshot(
            id="session-1",
            tenant_id=site.id,
            created_month=month,
            created_at=STARTED,
            gclid="gclid-1",
            consent_scopes=["analytics", "marketing"],
        )
    )
    store.add_event(
        tenant_id=site.id, session_id="session-1", month=month, fingerprint="fp-1", created_at=STARTED
    )

    async with database.session() as session:
        outcome = await record_call_event(
            session,
            site=site,
            payload=CallEventInput(fingerprint="fp-1"),
            now=STARTED + timedelta(minutes=2),
            matcher=AttributionMatcher(store, window_minutes=30),
        )
        await session.commit()

    assert outcome.outcome == OUTCOME_RECORDED
    written = store.scores[(site.id, outcome.call_id)]
    assert written.session_id == "session-1"
    assert written.marketing_consent is True
    async with database.session() as session:
        call = (await session.execute(select(Call).where(Call.id == outcome.call_id))).scalar_one()
    # The SQL store never saw the score.
    assert call.matched_session_id is None
    assert call.click_id == "gclid-1"
