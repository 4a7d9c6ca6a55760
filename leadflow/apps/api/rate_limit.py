from __future__ import annotations

from dataclasses import dataclass
import hashlib
import logging
import time
from typing import Any

from fastapi import Request

from leadflow.core.config import Settings, get_settings
from leadflow.core.errors import RateLimited, ServiceUnavailableError
from leadflow.services.resilience import cache_key
from leadflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

WINDOW_S = 60


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after_s: int
    degraded: bool = False


def client_fingerprint(request: Request) -> str:
    # Hash the client address so raw IPs never land in Redis keys.
    forwarded = (request.headers.get("x-forwarded-for") or "").split(",")[0].strip()
    host = forwarded or (request.client.host if request.client else "unknown")
    return hashlib.sha256(host.encode("utf-8")).hexdigest()[:16]


async def check_rate_limit(
    redis: Any | None,
    *,
    scope: str,
    subject: str,
    limit: int,
    now: float | None = None,
    settings: Settings | None = None,
) -> RateLimitDecision:
    """Fixed one-minute window counter in Redis."""
    settings = settings or get_settings()
    current = now if now is not None else time.time()
    window = int(current // WINDOW_S)
    retry_after = max(1, int((window + 1) * WINDOW_S - current))
    if redis is None:
        return _degraded(settings, limit=limit, retry_after_s=retry_after, scope=scope)
    key = cache_key("rl", scope, subject, str(window))
    try:
        count = int(await redis.incr(key))
        if count == 1:
            await redis.expire(key, WINDOW_S + 5)
    except Exception as exc:  # noqa: BLE001 - fail mode decides what a Redis outage means
        logger.warning("rate_limit_redis_failed scope=%s", scope, exc_info=exc)
        return _degraded(settings, limit=limit, retry_after_s=retry_after, scope=scope)
    if count > limit:
        return RateLimitDecision(allowed=False, remaining=0, retry_after_s=retry_after)
    return RateLimitDecision(allowed=True, remaining=max(0, limit - count), retry_after_s=0)


def _degraded(settings: Settings, *, limit: int, retry_after_s: int, scope: str) -> RateLimitDecision:
    increment_counter(f"rate_limit.{scope}.degraded")
    if settings.rl_fail_mode.lower() == "closed":
        return RateLimitDecision(allowed=False, remaining=0, retry_after_s=retry_after_s, degraded=True)
    return RateLimitDecision(allowed=True, remaining=limit, retry_after_s=0, degraded=True)


async def enforce_ingest_rate_limit(
    request: Request,
    redis: Any | None,
    *,
    site_id: str,
    settings: Settings | None = None,
) -> RateLimitDecision:
    settings = settings or get_settings()
    if not settings.rate_limit_enabled:
        return RateLimitDecision(allowed=True, remaining=settings.ingest_rate_limit_per_minute, retry_after_s=0)
    decision = await check_rate_limit(
        redis,
        scope="ingest",
        subject=f"{site_id}:{client_fingerprint(request)}",
        limit=max(1, int(settings.ingest_rate_limit_per_minute)),
        settings=settings,
    )
    if decision.allowed:
        return decision
    increment_counter("rate_limit.ingest.rejected")
    if decision.degraded:
        raise ServiceUnavailableError("Rate limiter unavailable", retry_after_s=decision.retry_after_s)
    raise RateLimited("Too many requests", retry_after_s=decision.retry_after_s)
