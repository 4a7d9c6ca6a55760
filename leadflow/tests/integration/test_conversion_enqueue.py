from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from leadflow.core.errors import ConcurrencyConflict, ValidationError
from leadflow.domain.models import AuditEvent, Call, ConversionQueueJob
from leadflow.services.conversions.enqueue import (
    REASON_CONSENT_REQUIRED,
    REASON_DUPLICATE,
    REASON_JUNK_OR_ZERO,
    REASON_NO_CLICK_ID,
    REASON_STAR_BELOW_THRESHOLD,
    ConversionEnqueuer,
)
from leadflow.tests.utils.seed import create_call, create_site, create_tracked_session


STAGES = [
    {"id": "qualified", "label": "Qualified", "value_cents": 15000},
    {"id": "junk", "label": "Junk", "value_cents": 0},
    {"id": "spam", "label": "Spam", "value_cents": 900, "is_junk": True},
    {"id": "free", "label": "Free consult", "value_cents": 0},
]


async def _seal(database, site, call, **kwargs):
    async with database.session() as session:
        return await ConversionEnqueuer(session).seal(
            tenant_id=site.id, call_id=call.id, expected_version=kwargs.pop("expected_version", 1), **kwargs
        )


async def _stage(database, site, call, stage_id: str, **kwargs):
    async with database.session() as session:
        return await ConversionEnqueuer(session).stage(
            tenant_id=site.id,
            call_id=call.id,
            stage_id=stage_id,
            expected_version=kwargs.pop("expected_version", 1),
            **kwargs,
        )


async def _jobs(database, tenant_id: str) -> list[ConversionQueueJob]:
    async with database.session() as session:
        return list(
            (await session.execute(select(ConversionQueueJob).where(ConversionQueueJob.tenant_id == tenant_id)))
            .scalars()
            .all()
        )


async def _call(database, call_id: str) -> Call:
    async with database.session() as session:
        return (await session.execute(select(Call).where(Call.id == call_id))).scalar_one()


@pytest.mark.asyncio
async def test_seal_enqueues_star_weighted_value(database) -> None:
    site = await create_site(database)
    call = await create_call(database, tenant_id=site.id, click_id="gclid-call")
    result = await _seal(database, site, call, star=4, actor_id="operator-1")

    assert result.enqueued is True
    assert result.value_cents == 40000
    assert result.version == 2
    jobs = await _jobs(database, site.id)
    assert len(jobs) == 1
    assert jobs[0].status == "QUEUED"
    assert jobs[0].gclid == "gclid-call"
    assert jobs[0].action == "seal"
    sealed = await _call(database, call.id)
    assert sealed.status == "confirmed"
    assert sealed.oci_status == "sealed"
    assert sealed.confirmed_by == "operator-1"

    async with database.session() as session:
        audit = (await session.execute(select(AuditEvent).where(AuditEvent.resource_id == call.id))).scalar_one()
    assert audit.event_type == "call.seal"
    assert audit.metadata_json["enqueued"] is True


@pytest.mark.asyncio
async def test_low_star_seal_updates_call_without_a_job(database) -> None:
    site = await create_site(database)
    call = await create_call(database, tenant_id=site.id, click_id="gclid-call")
    result = await _seal(database, site, call, star=2)
    assert result.enqueued is False
    assert result.reason == REASON_STAR_BELOW_THRESHOLD
    assert await _jobs(database, site.id) == []
    sealed = await _call(database, call.id)
    assert sealed.oci_status == "skipped"
    assert sealed.version == 2


@pytest.mark.asyncio
async def test_zero_amount_without_star_is_not_sent(database) -> None:
    site = await create_site(database)
    call = await create_call(database, tenant_id=site.id, click_id="gclid-call", marketing_consent=True)
    result = await _seal(database, site, call, sale_amount=0)
    assert result.enqueued is False
    assert result.reason == REASON_STAR_BELOW_THRESHOLD
    assert await _jobs(database, site.id) == []
    sealed = await _call(database, call.id)
    assert sealed.status == "confirmed"
    assert sealed.oci_status == "skipped"


@pytest.mark.asyncio
async def test_missing_click_id_is_reported_before_value(database) -> None:
    site = await create_site(database)
    call = await create_call(database, tenant_id=site.id, click_id=None)
    result = await _seal(database, site, call, sale_amount=0)
    assert result.reason == REASON_NO_CLICK_ID


@pytest.mark.asyncio
async def test_missing_consent_is_reported_before_value(database) -> None:
    site = await create_site(database, pipeline_stages=STAGES)
    sealed_call = await create_call(database, tenant_id=site.id, click_id="g-1", marketing_consent=False)
    staged_call = await create_call(database, tenant_id=site.id, click_id="g-2", marketing_consent=False)
    sealed = await _seal(database, site, sealed_call, star=1)
    staged = await _stage(database, site, staged_call, "junk")
    assert sealed.reason == REASON_CONSENT_REQUIRED
    assert staged.reason == REASON_CONSENT_REQUIRED


@pytest.mark.asyncio
async def test_stage_without_click_id_is_reported_before_junk(database) -> None:
    site = await create_site(database, pipeline_stages=STAGES)
    call = await create_call(database, tenant_id=site.id, click_id=None)
    result = await _stage(database, site, call, "free")
    assert result.reason == REASON_NO_CLICK_ID


@pytest.mark.asyncio
async def test_lead_score_maps_to_star_and_sale_amount_wins(database) -> None:
    site = await create_site(database)
    scored = await create_call(database, tenant_id=site.id, click_id="g-1")
    result = await _seal(database, site, scored, lead_score=100)
    assert result.value_cents == 50000

    priced = await create_call(database, tenant_id=site.id, click_id="g-2")
    result = await _seal(database, site, priced, sale_amount=1234.5, star=1)
    assert result.enqueued is True
    assert result.value_cents == 123450


@pytest.mark.asyncio
async def test_missing_click_id_blocks_upload(database) -> None:
    site = await create_site(database)
    call = await create_call(database, tenant_id=site.id, click_id=None)
    result = await _seal(database, site, call, star=5)
    assert result.enqueued is False
    assert result.reason == REASON_NO_CLICK_ID


@pytest.mark.asyncio
async def test_marketing_consent_is_required(database) -> None:
    site = await create_site(database)
    tracked = await create_tracked_session(
        database,
        tenant_id=site.id,
        fingerprint="fp",
        created_at=datetime.now(timezone.utc) - timedelta(minutes=5),
        consent_scopes=("analytics",),
    )
    call = await create_call(
        database, tenant_id=site.id, matched_session_id=tracked.id, marketing_consent=False
    )
    result = await _seal(database, site, call, star=5)
    assert result.reason == REASON_CONSENT_REQUIRED


@pytest.mark.asyncio
async def test_matched_session_click_id_and_consent_are_used(database) -> None:
    site = await create_site(database)
    tracked = await create_tracked_session(
        database,
        tenant_id=site.id,
        fingerprint="fp",
        created_at=datetime.now(timezone.utc) - timedelta(minutes=5),
        gclid="gclid-session",
    )
    call = await create_call(
        database,
        tenant_id=site.id,
        matched_session_id=tracked.id,
        click_id="gclid-call",
        marketing_consent=False,
    )
    result = await _seal(database, site, call, star=5)
    assert result.enqueued is True
    assert (await _jobs(database, site.id))[0].gclid == "gclid-session"


@pytest.mark.asyncio
async def test_stale_version_is_a_conflict(database) -> None:
    site = await create_site(database)
    call = await create_call(database, tenant_id=site.id, click_id="g-1")
    with pytest.raises(ConcurrencyConflict):
        await _seal(database, site, call, star=5, expected_version=7)
    unchanged = await _call(database, call.id)
    assert unchanged.version == 1
    assert unchanged.status == "intent"


@pytest.mark.asyncio
async def test_second_seal_does_not_create_a_second_job(database) -> None:
    site = await create_site(database)
    call = await create_call(database, tenant_id=site.id, click_id="g-1")
    first = await _seal(database, site, call, star=5)
    second = await _seal(database, site, call, star=4, expected_version=first.version)
    assert first.enqueued is True
    assert second.enqueued is False
    assert second.reason == REASON_DUPLICATE
    assert second.version == 3
    assert len(await _jobs(database, site.id)) == 1


@pytest.mark.asyncio
async def test_stage_uses_playbook_value(database) -> None:
    site = await create_site(database, pipeline_stages=STAGES)
    call = await create_call(database, tenant_id=site.id, click_id="g-1")
    result = await _stage(database, site, call, "qualified")
    assert result.enqueued is True
    assert result.value_cents == 15000
    assert result.stage == "Qualified"
    job = (await _jobs(database, site.id))[0]
    assert job.action == "qualified"
    staged = await _call(database, call.id)
    assert staged.status == "qualified"
    assert staged.sale_amount == 150.0


@pytest.mark.asyncio
@pytest.mark.parametrize("stage_id", ["junk", "spam", "free"])
async def test_junk_and_zero_value_stages_are_not_sent(database, stage_id: str) -> None:
    site = await create_site(database, pipeline_stages=STAGES)
    call = await create_call(database, tenant_id=site.id, click_id="g-1")
    result = await _stage(database, site, call, stage_id)
    assert result.enqueued is False
    assert result.reason == REASON_JUNK_OR_ZERO
    assert (await _call(database, call.id)).status == stage_id


@pytest.mark.asyncio
async def test_custom_amount_overrides_stage_value(database) -> None:
    site = await create_site(database, pipeline_stages=STAGES)
    call = await create_call(database, tenant_id=site.id, click_id="g-1")
    result = await _stage(database, site, call, "free", custom_amount_cents=2500)
    assert result.enqueued is True
    assert result.value_cents == 2500


@pytest.mark.asyncio
async def test_unknown_stage_is_rejected(database) -> None:
    site = await create_site(database, pipeline_stages=STAGES)
    call = await create_call(database, tenant_id=site.id, click_id="g-1")
    with pytest.raises(ValidationError):
        await _stage(database, site, call, "missing")


@pytest.mark.asyncio
async def test_seal_endpoint_and_version_conflict(client, database) -> None:
    site = await create_site(database)
    call = await create_call(database, tenant_id=site.id, click_id="g-1")
    response = await client.post(
        f"/v1/calls/{call.id}/seal",
        json={"siteId": site.public_id, "version": 1, "star": 4},
        headers={"x-actor-id": "operator-1"},
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["enqueued"] is True
    assert data["value_cents"] == 40000
    assert data["version"] == 2

    stale = await client.post(
        f"/v1/calls/{call.id}/seal", json={"siteId": site.public_id, "version": 1, "star": 4}
    )
    assert stale.status_code == 409
    assert stale.json()["error"]["code"] == "CONCURRENCY_CONFLICT"


@pytest.mark.asyncio
async def test_stage_endpoint_rejects_unknown_stage(client, database) -> None:
    site = await create_site(database, pipeline_stages=STAGES)
    call = await create_call(database, tenant_id=site.id, click_id="g-1")
    response = await client.post(
        f"/v1/calls/{call.id}/stage", json={"siteId": site.public_id, "stageId": "missing"}
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_FAILED"


@pytest.mark.asyncio
@pytest.mark.parametrize("action, body", [("seal", {"star": 4}), ("stage", {"stageId": "qualified"})])
async def test_operator_actions_require_a_version(client, database, action: str, body: dict) -> None:
    site = await create_site(database, pipeline_stages=STAGES)
    call = await create_call(database, tenant_id=site.id, click_id="g-1")
    response = await client.post(f"/v1/calls/{call.id}/{action}", json={"siteId": site.public_id, **body})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_FAILED"
    assert (await _call(database, call.id)).version == 1
    assert await _jobs(database, site.id) == []


@pytest.mark.asyncio
async def test_second_operator_holding_an_old_version_gets_a_conflict(client, database) -> None:
    site = await create_site(database)
    call = await create_call(database, tenant_id=site.id, click_id="g-1")
    first = await client.post(
        f"/v1/calls/{call.id}/seal", json={"siteId": site.public_id, "version": 1, "star": 5}
    )
    assert first.json()["data"]["version"] == 2

    missing = await client.post(f"/v1/calls/{call.id}/seal", json={"siteId": site.public_id, "star": 3})
    assert missing.status_code == 400
    stale = await client.post(
        f"/v1/calls/{call.id}/seal", json={"siteId": site.public_id, "version": 1, "star": 3}
    )
    assert stale.status_code == 409
    assert stale.json()["error"]["details"]["expected_version"] == 1
    current = await _call(database, call.id)
    assert current.version == 2
    assert current.lead_score_star == 5
