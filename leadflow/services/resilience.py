from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any
from uuid import uuid4

from redis.asyncio import Redis

from leadflow.core.config import Settings, get_settings
from leadflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def open_redis(settings: Settings | None = None) -> Redis | None:
    # Build the shared Redis client; callers own its lifecycle and close it on shutdown.
    settings = settings or get_settings()
    try:
        return Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
        logger.warning("redis_unavailable url=%s", settings.redis_url, exc_info=exc)
        return None


async def close_redis(redis: Any | None) -> None:
    if redis is None:
        return
    close = getattr(redis, "aclose", None) or getattr(redis, "close", None)
    if close is not None:
        await close()


def cache_key(*parts: str) -> str:
    prefix = get_settings().cache_redis_prefix
    return ":".join([prefix, *parts])


_local_locks: dict[str, str] = {}
_local_guard = asyncio.Lock()


@dataclass(slots=True)
class NamedLock:
    name: str
    token: str
    redis: Any | None
    local: bool


async def acquire_named_lock(name: str, *, redis: Any | None, ttl_s: int | None = None) -> NamedLock | None:
    """Take a short-TTL mutex for one scheduled job, or return None when it is held.

    Redis ``SET NX EX`` coordinates across processes. Without Redis the lock
    degrades to an in-process registry, which still blocks overlapping runs
    inside one worker.
    """
    token = uuid4().hex
    key = cache_key("lock", name)
    ttl = max(5, int(ttl_s or get_settings().cron_lock_ttl_s))
    if redis is not None:
        try:
            acquired = await redis.set(key, token, nx=True, ex=ttl)
        except Exception as exc:  # noqa: BLE001 - fall back to the local lock
            logger.warning("named_lock_redis_failed name=%s", name, exc_info=exc)
            increment_counter("cron_lock.degraded")
        else:
            if not acquired:
                return None
            return NamedLock(name=name, token=token, redis=redis, local=False)

    async with _local_guard:
        if key in _local_locks:
            return None
        _local_locks[key] = token
    return NamedLock(name=name, token=token, redis=None, local=True)


async def release_named_lock(lock: NamedLock) -> None:
    # Release only if this holder still owns the token to avoid clobbering a newer holder.
    key = cache_key("lock", lock.name)
    if lock.local:
        async with _local_guard:
            if _local_locks.get(key) == lock.token:
                _local_locks.pop(key, None)
        return
    try:
        current = await lock.redis.get(key)
        value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
        if value == lock.token:
            await lock.redis.delete(key)
    except Exception as exc:  # noqa: BLE001 - TTL expiry frees the lock anyway
        logger.warning("named_lock_release_failed name=%s", lock.name, exc_info=exc)


def reset_local_locks() -> None:
    # Clear in-process locks for deterministic tests.
    _local_locks.clear()
