from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import math


BASE_DELAY_S = 300
MAX_DELAY_S = 24 * 60 * 60


def next_retry_delay_s(attempt_count: int) -> int:
    # 5 min, 10 min, 20 min ... doubling per attempt, capped at 24h.
    exponent = max(0, int(attempt_count))
    if exponent >= 32:
        return MAX_DELAY_S
    return min(BASE_DELAY_S * (2**exponent), MAX_DELAY_S)


@dataclass(frozen=True)
class GroupBacklog:
    tenant_id: str
    provider_key: str
    queued_count: int
    min_next_retry_at: datetime | None
    min_created_at: datetime | None


def _eligible_since(group: GroupBacklog) -> tuple[float, float]:
    retry_at = group.min_next_retry_at.timestamp() if group.min_next_retry_at else -math.inf
    created_at = group.min_created_at.timestamp() if group.min_created_at else -math.inf
    return (retry_at, created_at)


def _trim_order(group: GroupBacklog, allocated: int) -> tuple:
    # Largest allocation first; among equals the group that became eligible earliest.
    return (-allocated, *_eligible_since(group))


def allocate_claims(groups: list[GroupBacklog], limit: int) -> dict[tuple[str, str], int]:
    """Split a run budget across (tenant, provider) groups in proportion to backlog.

    Each group with work gets at least one slot before trimming. When the
    floor allocations overshoot the budget the largest shares shrink first;
    spare capacity is handed out round-robin without exceeding any group's
    backlog.
    """
    active = [group for group in groups if group.queued_count > 0]
    budget = max(0, int(limit))
    if not active or budget == 0:
        return {}
    total = sum(group.queued_count for group in active)
    allocation = [
        min(group.queued_count, max(1, math.floor(budget * group.queued_count / total))) for group in active
    ]

    while sum(allocation) > budget:
        shared = [idx for idx in range(len(active)) if allocation[idx] > 1]
        if shared:
            victim = min(shared, key=lambda idx: _trim_order(active[idx], allocation[idx]))
        else:
            # More groups than budget: the most recently eligible groups wait for the next run.
            singles = [idx for idx in range(len(active)) if allocation[idx] == 1]
            victim = max(singles, key=lambda idx: _eligible_since(active[idx]))
        allocation[victim] -= 1

    leftover = budget - sum(allocation)
    while leftover > 0:
        progressed = False
        for idx, group in enumerate(active):
            if leftover == 0:
                break
            if allocation[idx] < group.queued_count:
                allocation[idx] += 1
                leftover -= 1
                progressed = True
        if not progressed:
            break

    return {
        (group.tenant_id, group.provider_key): allocation[idx]
        for idx, group in enumerate(active)
        if allocation[idx] > 0
    }
