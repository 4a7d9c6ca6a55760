from __future__ import annotations

from datetime import datetime, timezone

from leadflow.services.ingest.quota import (
    HEADER_EXCEEDED,
    HEADER_OVERAGE,
    HEADER_REMAINING,
    REASON_HARD_CAP,
    REASON_MONTHLY_LIMIT,
    PlanView,
    evaluate_quota,
    month_end_ttl_seconds,
    seconds_to_month_rollover,
)


def test_remaining_never_increases_as_usage_grows() -> None:
    plan = PlanView(monthly_limit=10)
    remaining = [evaluate_quota(plan, usage).remaining for usage in range(0, 15)]
    assert remaining == sorted(remaining, reverse=True)
    assert remaining[-1] == 0


def test_hard_limit_rejects_once_usage_reaches_limit() -> None:
    plan = PlanView(monthly_limit=3)
    assert evaluate_quota(plan, 2).allowed is True
    decision = evaluate_quota(plan, 3)
    assert decision.reject is True
    assert decision.reason == REASON_MONTHLY_LIMIT
    assert decision.headers[HEADER_EXCEEDED] == "1"
    assert decision.headers[HEADER_REMAINING] == "0"


def test_soft_limit_meters_overage_until_hard_cap() -> None:
    plan = PlanView(monthly_limit=10, soft_limit_enabled=True, hard_cap_multiplier=1.5)
    assert plan.hard_cap == 15

    within = evaluate_quota(plan, 10)
    assert within.allowed is True and within.overage is False

    over = evaluate_quota(plan, 12)
    assert over.allowed is True
    assert over.overage is True
    assert over.headers[HEADER_OVERAGE] == "true"
    assert over.remaining == 0

    capped = evaluate_quota(plan, 15)
    assert capped.reject is True
    assert capped.reason == REASON_HARD_CAP


def test_entitlement_limit_prefers_explicit_capability() -> None:
    assert PlanView(monthly_limit=100).entitlement_limit() == 100
    assert PlanView(monthly_limit=100, soft_limit_enabled=True, hard_cap_multiplier=2.0).entitlement_limit() == 200
    assert PlanView(monthly_limit=100, capabilities={"monthly_event_limit": 7}).entitlement_limit() == 7
    assert PlanView(monthly_limit=100, capabilities={"monthly_event_limit": None}).entitlement_limit() is None


def test_retry_after_points_at_next_month_start() -> None:
    now = datetime(2026, 1, 31, 23, 59, 30, tzinfo=timezone.utc)
    assert seconds_to_month_rollover(now) == 30
    december = datetime(2026, 12, 31, 23, 0, tzinfo=timezone.utc)
    assert seconds_to_month_rollover(december) == 3600


def test_month_end_ttl_is_bounded() -> None:
    now = datetime(2026, 3, 31, 23, 59, 50, tzinfo=timezone.utc)
    # Never shorter than a minute even at the very end of the month.
    assert month_end_ttl_seconds("2026-03", now) == 60
    start = datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert month_end_ttl_seconds("2026-03", start) == 31 * 24 * 60 * 60
