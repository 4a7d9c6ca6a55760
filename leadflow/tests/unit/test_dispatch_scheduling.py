from __future__ import annotations

from datetime import datetime, timedelta, timezone

from leadflow.services.dispatch.scheduling import GroupBacklog, allocate_claims, next_retry_delay_s


def _group(tenant: str, queued: int, *, offset_s: int = 0) -> GroupBacklog:
    moment = datetime(2026, 5, 1, tzinfo=timezone.utc) + timedelta(seconds=offset_s)
    return GroupBacklog(
        tenant_id=tenant,
        provider_key="google_ads",
        queued_count=queued,
        min_next_retry_at=None,
        min_created_at=moment,
    )


def test_retry_delay_doubles_and_caps_at_a_day() -> None:
    assert [next_retry_delay_s(n) for n in range(4)] == [300, 600, 1200, 2400]
    assert next_retry_delay_s(9) == 86400
    assert next_retry_delay_s(100) == 86400
    assert next_retry_delay_s(-3) == 300


def test_budget_is_split_by_backlog_size() -> None:
    allocation = allocate_claims([_group("big", 90), _group("small", 10)], 10)
    assert allocation == {("big", "google_ads"): 9, ("small", "google_ads"): 1}


def test_small_backlog_is_not_starved() -> None:
    allocation = allocate_claims([_group("big", 1000), _group("tiny", 1)], 10)
    assert allocation[("tiny", "google_ads")] == 1
    assert sum(allocation.values()) == 10


def test_allocation_never_exceeds_budget_or_backlog() -> None:
    groups = [_group("a", 2), _group("b", 3), _group("c", 50)]
    allocation = allocate_claims(groups, 20)
    assert sum(allocation.values()) == 20
    assert allocation[("a", "google_ads")] <= 2
    assert allocation[("b", "google_ads")] <= 3


def test_more_groups_than_budget_keeps_the_oldest() -> None:
    groups = [_group("late", 5, offset_s=60), _group("early", 5, offset_s=0), _group("mid", 5, offset_s=30)]
    allocation = allocate_claims(groups, 2)
    assert set(allocation) == {("early", "google_ads"), ("mid", "google_ads")}


def test_empty_inputs() -> None:
    assert allocate_claims([], 10) == {}
    assert allocate_claims([_group("a", 0)], 10) == {}
    assert allocate_claims([_group("a", 5)], 0) == {}
