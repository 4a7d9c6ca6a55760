from __future__ import annotations

import pytest

from leadflow.services.jobs import run_locked
from leadflow.services.resilience import acquire_named_lock, cache_key, release_named_lock
from leadflow.tests.utils.fakes import BrokenRedis, FakeRedis


@pytest.mark.asyncio
async def test_redis_lock_is_exclusive_until_released() -> None:
    redis = FakeRedis()
    first = await acquire_named_lock("dispatch", redis=redis, ttl_s=60)
    assert first is not None and first.local is False
    assert await acquire_named_lock("dispatch", redis=redis, ttl_s=60) is None
    await release_named_lock(first)
    assert cache_key("lock", "dispatch") not in redis.values
    assert await acquire_named_lock("dispatch", redis=redis, ttl_s=60) is not None


@pytest.mark.asyncio
async def test_release_does_not_clobber_a_newer_holder() -> None:
    redis = FakeRedis()
    stale = await acquire_named_lock("dispatch", redis=redis, ttl_s=60)
    # Simulate TTL expiry followed by another worker taking the lock.
    redis.values[cache_key("lock", "dispatch")] = "someone-else"
    await release_named_lock(stale)
    assert redis.values[cache_key("lock", "dispatch")] == "someone-else"


@pytest.mark.asyncio
async def test_lock_degrades_to_local_registry() -> None:
    held = await acquire_named_lock("reconcile", redis=BrokenRedis(), ttl_s=60)
    assert held is not None and held.local is True
    assert await acquire_named_lock("reconcile", redis=None) is None
    await release_named_lock(held)
    assert await acquire_named_lock("reconcile", redis=None) is not None


@pytest.mark.asyncio
async def test_run_locked_skips_when_lock_is_held() -> None:
    redis = FakeRedis()
    calls: list[str] = []

    async def job() -> dict:
        calls.append("ran")
        return {"processed": 1}

    held = await acquire_named_lock("dispatch", redis=redis, ttl_s=60)
    skipped = await run_locked("dispatch", redis=redis, job=job)
    assert skipped == {"ok": True, "skipped": True, "reason": "lock_held"}
    assert calls == []

    await release_named_lock(held)
    assert await run_locked("dispatch", redis=redis, job=job) == {"ok": True, "processed": 1}
    assert calls == ["ran"]
