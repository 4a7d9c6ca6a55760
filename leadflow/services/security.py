from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import hmac
import logging
import re
import time
from typing import Any, Mapping

import jwt

from leadflow.core.config import Settings, get_settings
from leadflow.core.errors import AuthError, CronForbiddenError, InternalError, SchedulerMisconfiguredError
from leadflow.services.resilience import cache_key
from leadflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

HEADER_SITE_ID = "x-ops-site-id"
HEADER_TIMESTAMP = "x-ops-ts"
HEADER_SIGNATURE = "x-ops-signature"
HEADER_SCHEDULER_TS = "x-scheduler-ts"
HEADER_SCHEDULER_SIGNATURE = "x-scheduler-signature"

_SITE_ID_RE = re.compile(r"^[0-9a-f]{32}$")
_TIMESTAMP_RE = re.compile(r"^\d{9,12}$")
_SIGNATURE_RE = re.compile(r"^[0-9a-f]{64}$")
_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

SESSION_TOKEN_ALGORITHM = "HS256"
SESSION_TOKEN_AUDIENCE = "leadflow-oci"


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def looks_like_uuid(value: str | None) -> bool:
    return bool(value and _UUID_RE.match(value.strip()))


# Signed call events


@dataclass(frozen=True)
class CallEventHeaders:
    site_id: str
    timestamp: int
    signature: str


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    reason: str


def parse_call_event_headers(headers: Mapping[str, str]) -> CallEventHeaders:
    normalized = {str(key).lower(): str(value).strip() for key, value in headers.items()}
    site_id = normalized.get(HEADER_SITE_ID, "").lower()
    raw_ts = normalized.get(HEADER_TIMESTAMP, "")
    signature = normalized.get(HEADER_SIGNATURE, "").lower()
    if not site_id or not raw_ts or not signature:
        raise AuthError("Missing call event signature headers")
    if not _SITE_ID_RE.match(site_id) or not _TIMESTAMP_RE.match(raw_ts) or not _SIGNATURE_RE.match(signature):
        raise AuthError("Malformed call event signature headers")
    return CallEventHeaders(site_id=site_id, timestamp=int(raw_ts), signature=signature)


def compute_call_event_signature(secret: str, timestamp: int, raw_body: bytes) -> str:
    # Sign "<ts>.<raw body>" so neither can be replayed with the other.
    return hmac_sha256_hex(secret, str(timestamp).encode("ascii") + b"." + raw_body)


def verify_call_event_signature(
    headers: CallEventHeaders,
    raw_body: bytes,
    secret: str | None,
    *,
    now: float | None = None,
    settings: Settings | None = None,
) -> VerificationResult:
    """Check freshness first, then the HMAC; reasons are stable for logs and metrics."""
    settings = settings or get_settings()
    if not secret:
        return VerificationResult(ok=False, reason="secret_missing")
    current = int(now if now is not None else time.time())
    if current - headers.timestamp > settings.call_event_max_age_s:
        return VerificationResult(ok=False, reason="timestamp_expired")
    if headers.timestamp - current > settings.call_event_max_future_skew_s:
        return VerificationResult(ok=False, reason="timestamp_in_future")
    expected = compute_call_event_signature(secret, headers.timestamp, raw_body)
    if not hmac.compare_digest(expected, headers.signature):
        return VerificationResult(ok=False, reason="signature_mismatch")
    return VerificationResult(ok=True, reason="verified")


class ReplayCache:
    """Remembers accepted signatures for the replay window.

    Redis ``INCR`` is authoritative across processes; when Redis fails the
    cache falls back to an in-process map so a single instance still rejects
    immediate replays.
    """

    def __init__(self, redis: Any | None, *, ttl_s: int | None = None, clock=time.monotonic) -> None:
        self._redis = redis
        self._ttl_s = max(1, int(ttl_s or get_settings().call_event_replay_ttl_s))
        self._clock = clock
        self._local: dict[str, float] = {}

    @staticmethod
    def key_for(site_id: str, signature: str) -> str:
        signature_digest = hashlib.sha256(signature.encode("utf-8")).hexdigest()
        digest = hashlib.sha256(f"{site_id}:{signature_digest}".encode("utf-8")).hexdigest()
        return cache_key("replay", "call_event", digest)

    async def seen(self, site_id: str, signature: str) -> bool:
        # True when this signature was already accepted within the window.
        key = self.key_for(site_id, signature)
        if self._redis is not None:
            try:
                count = int(await self._redis.incr(key))
                if count == 1:
                    await self._redis.expire(key, self._ttl_s)
                return count > 1
            except Exception as exc:  # noqa: BLE001 - degrade to the local window
                increment_counter("call_event.replay_cache_degraded")
                logger.warning("replay_cache_redis_failed site=%s", site_id, exc_info=exc)
        return self._seen_locally(key)

    def _seen_locally(self, key: str) -> bool:
        now = self._clock()
        expired = [item for item, expires_at in self._local.items() if expires_at <= now]
        for item in expired:
            self._local.pop(item, None)
        if key in self._local:
            return True
        self._local[key] = now + self._ttl_s
        return False


# OCI session tokens


@dataclass(frozen=True)
class SessionClaims:
    site_id: str
    public_id: str | None
    expires_at: datetime


def _session_secret(settings: Settings) -> str | None:
    return (settings.oci_session_secret or settings.cron_secret or "").strip() or None


def create_session_token(
    *,
    site_id: str,
    public_id: str | None = None,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> tuple[str, datetime]:
    settings = settings or get_settings()
    secret = _session_secret(settings)
    if secret is None:
        raise InternalError("OCI session signing secret is not configured")
    issued_at = now or datetime.now(timezone.utc)
    expires_at = issued_at + timedelta(seconds=max(1, int(settings.oci_session_ttl_s)))
    claims = {
        "sub": site_id,
        "pid": public_id,
        "aud": SESSION_TOKEN_AUDIENCE,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    token = jwt.encode(claims, secret, algorithm=SESSION_TOKEN_ALGORITHM)
    return token, expires_at


def verify_session_token(token: str, *, settings: Settings | None = None) -> SessionClaims:
    settings = settings or get_settings()
    secret = _session_secret(settings)
    if secret is None:
        raise AuthError("OCI session tokens are not enabled")
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[SESSION_TOKEN_ALGORITHM],
            audience=SESSION_TOKEN_AUDIENCE,
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthError("Session token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthError("Invalid session token") from exc
    return SessionClaims(
        site_id=str(claims["sub"]),
        public_id=claims.get("pid"),
        expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
    )


# Scheduler authentication


def compute_scheduler_signature(secret: str, timestamp: str) -> str:
    return hmac_sha256_hex(secret, timestamp.encode("utf-8"))


def verify_scheduler_request(
    headers: Mapping[str, str],
    *,
    settings: Settings | None = None,
    now: float | None = None,
) -> str:
    """Authorize a scheduled batch call and return the auth mode used.

    Accepts ``Authorization: Bearer <cron secret>`` or a timestamped HMAC in
    the scheduler headers.
    """
    settings = settings or get_settings()
    secret = (settings.cron_secret or "").strip()
    if not secret:
        increment_counter("cron.auth.misconfigured")
        if settings.environment.lower() == "production":
            raise SchedulerMisconfiguredError("Scheduler secret is not configured")
        raise CronForbiddenError("Scheduler secret is not configured")

    normalized = {str(key).lower(): str(value).strip() for key, value in headers.items()}
    authorization = normalized.get("authorization", "")
    if authorization.lower().startswith("bearer "):
        provided = authorization[7:].strip()
        if provided and hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8")):
            return "bearer"
        raise CronForbiddenError("Invalid scheduler credentials")

    raw_ts = normalized.get(HEADER_SCHEDULER_TS, "")
    signature = normalized.get(HEADER_SCHEDULER_SIGNATURE, "").lower()
    if raw_ts and signature:
        try:
            timestamp = int(raw_ts)
        except ValueError as exc:
            raise CronForbiddenError("Invalid scheduler timestamp") from exc
        current = int(now if now is not None else time.time())
        if abs(current - timestamp) > settings.cron_signature_max_skew_s:
            raise CronForbiddenError("Scheduler signature expired")
        expected = compute_scheduler_signature(secret, raw_ts)
        if hmac.compare_digest(expected, signature):
            return "signature"
    raise CronForbiddenError("Invalid scheduler credentials")
