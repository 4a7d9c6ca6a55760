from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    Float,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from leadflow.persistence.types import BigIntPK, JSONType, UTCDateTime


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    pass


class Site(Base):
    __tablename__ = "sites"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    # Opaque external identifier; internal ids never cross the integration boundary.
    public_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    name: Mapped[str] = mapped_column(String, default="")
    currency: Mapped[str] = mapped_column(String(8), default="TRY")
    # Per-site shared key for the script handshake.
    oci_api_key: Mapped[str | None] = mapped_column(String, nullable=True)
    # Conversion value config (base_value, currency, min_star, weights).
    oci_config: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    # Dynamic pipeline playbook: [{id, label, value_cents, is_junk}].
    pipeline_stages: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)
    # HMAC secret for signed call events.
    call_event_secret: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)


class SitePlan(Base):
    __tablename__ = "site_plans"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    monthly_limit: Mapped[int] = mapped_column(Integer, default=1000)
    soft_limit_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    hard_cap_multiplier: Mapped[float] = mapped_column(Float, default=2.0)
    # Capability flags, e.g. {"oci_dispatch": true}.
    capabilities: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now, onupdate=_utc_now)


class IdempotencyRecord(Base):
    __tablename__ = "ingest_idempotency"
    __table_args__ = (
        UniqueConstraint("tenant_id", "idempotency_key", name="uq_ingest_idempotency_key"),
        Index("ix_ingest_idempotency_tenant_month", "tenant_id", "year_month"),
        Index("ix_ingest_idempotency_expires_at", "expires_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    idempotency_key: Mapped[str] = mapped_column(String(160))
    idempotency_version: Mapped[str] = mapped_column(String(4), default="v2")
    billable: Mapped[bool] = mapped_column(Boolean, default=True)
    billable_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # ACCEPTED | DUPLICATE | OVERAGE
    billing_state: Mapped[str] = mapped_column(String(16), default="ACCEPTED")
    year_month: Mapped[str] = mapped_column(String(7))
    event_category: Mapped[str | None] = mapped_column(String(64), nullable=True)
    event_action: Mapped[str | None] = mapped_column(String(64), nullable=True)
    event_label: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime())


class TrackedSession(Base):
    __tablename__ = "sessions"
    __table_args__ = (Index("ix_sessions_tenant_month", "tenant_id", "created_month"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # Monthly partition key (YYYY-MM).
    created_month: Mapped[str] = mapped_column(String(7))
    fingerprint: Mapped[str | None] = mapped_column(String(128), nullable=True)
    gclid: Mapped[str | None] = mapped_column(String(256), nullable=True)
    wbraid: Mapped[str | None] = mapped_column(String(256), nullable=True)
    gbraid: Mapped[str | None] = mapped_column(String(256), nullable=True)
    utm_source: Mapped[str | None] = mapped_column(String(256), nullable=True)
    utm_medium: Mapped[str | None] = mapped_column(String(256), nullable=True)
    utm_campaign: Mapped[str | None] = mapped_column(String(256), nullable=True)
    utm_term: Mapped[str | None] = mapped_column(String(256), nullable=True)
    utm_content: Mapped[str | None] = mapped_column(String(256), nullable=True)
    consent_scopes: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    total_duration_sec: Mapped[int] = mapped_column(Integer, default=0)
    max_scroll_depth: Mapped[int] = mapped_column(Integer, default=0)
    event_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)


class TrackedEvent(Base):
    __tablename__ = "events"
    __table_args__ = (
        Index("ix_events_tenant_fingerprint_created", "tenant_id", "fingerprint", "created_at"),
        Index("ix_events_session", "session_id", "session_month"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    session_id: Mapped[str] = mapped_column(String)
    session_month: Mapped[str] = mapped_column(String(7))
    event_category: Mapped[str] = mapped_column(String(64))
    event_action: Mapped[str] = mapped_column(String(64))
    event_label: Mapped[str | None] = mapped_column(String(256), nullable=True)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    fingerprint: Mapped[str | None] = mapped_column(String(128), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)


class Call(Base):
    __tablename__ = "calls"
    __table_args__ = (Index("ix_calls_tenant_created", "tenant_id", "created_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    phone_number: Mapped[str | None] = mapped_column(String(256), nullable=True)
    # Weak reference: sessions are never owned by calls.
    matched_session_id: Mapped[str | None] = mapped_column(String, nullable=True)
    matched_fingerprint: Mapped[str | None] = mapped_column(String(128), nullable=True)
    matched_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    # intent | suspicious | qualified | confirmed | <stage id> | junk
    status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lead_score: Mapped[int] = mapped_column(Integer, default=0)
    lead_score_star: Mapped[int | None] = mapped_column(Integer, nullable=True)
    confidence: Mapped[int | None] = mapped_column(Integer, nullable=True)
    score_breakdown: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    # Monotonic optimistic-concurrency counter.
    version: Mapped[int] = mapped_column(Integer, default=1)
    sale_amount: Mapped[float | None] = mapped_column(Numeric(14, 2, asdecimal=False), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(8), nullable=True)
    oci_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    confirmed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    click_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    marketing_consent: Mapped[bool] = mapped_column(Boolean, default=False)
    intent_action: Mapped[str | None] = mapped_column(String(32), nullable=True)
    intent_target: Mapped[str | None] = mapped_column(String(512), nullable=True)
    intent_stamp: Mapped[str | None] = mapped_column(String(128), nullable=True)
    intent_page_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)


class ConversionQueueJob(Base):
    __tablename__ = "conversion_queue"
    __table_args__ = (
        UniqueConstraint("tenant_id", "call_id", "provider_key", name="uq_conversion_queue_call_provider"),
        Index("ix_conversion_queue_claim", "tenant_id", "provider_key", "status", "next_retry_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String)
    call_id: Mapped[str] = mapped_column(String)
    provider_key: Mapped[str] = mapped_column(String(32), default="google_ads")
    # Conversion action name (seal or stage id).
    action: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # QUEUED | PROCESSING | RETRY | COMPLETED | FAILED
    status: Mapped[str] = mapped_column(String(16), default="QUEUED")
    value_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    currency: Mapped[str] = mapped_column(String(8), default="TRY")
    gclid: Mapped[str | None] = mapped_column(String(256), nullable=True)
    wbraid: Mapped[str | None] = mapped_column(String(256), nullable=True)
    gbraid: Mapped[str | None] = mapped_column(String(256), nullable=True)
    conversion_time: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    uploaded_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    # VALIDATION | TRANSIENT | AUTH
    error_category: Mapped[str | None] = mapped_column(String(16), nullable=True)
    provider_error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)


class MonthlyUsage(Base):
    __tablename__ = "site_usage_monthly"
    __table_args__ = (UniqueConstraint("tenant_id", "year_month", name="uq_site_usage_monthly"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    year_month: Mapped[str] = mapped_column(String(7))
    event_count: Mapped[int] = mapped_column(BigInteger, default=0)
    overage_count: Mapped[int] = mapped_column(BigInteger, default=0)
    last_synced_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)


class UsageCounter(Base):
    __tablename__ = "usage_counters"
    __table_args__ = (UniqueConstraint("tenant_id", "year_month", name="uq_usage_counters"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    year_month: Mapped[str] = mapped_column(String(7))
    # Metered counter incremented only through the checked increment.
    event_count: Mapped[int] = mapped_column(BigInteger, default=0)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)


class ReconciliationJob(Base):
    __tablename__ = "billing_reconciliation_jobs"
    __table_args__ = (UniqueConstraint("tenant_id", "year_month", name="uq_reconciliation_jobs"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    year_month: Mapped[str] = mapped_column(String(7))
    # QUEUED | PROCESSING | COMPLETED | FAILED
    status: Mapped[str] = mapped_column(String(16), default="QUEUED")
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_drift_pct: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)


class ProviderCredential(Base):
    __tablename__ = "provider_credentials"
    __table_args__ = (UniqueConstraint("tenant_id", "provider_key", name="uq_provider_credentials"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    tenant_id: Mapped[str] = mapped_column(String)
    provider_key: Mapped[str] = mapped_column(String(32))
    # Fernet token over the JSON credential payload.
    encrypted_payload: Mapped[str] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utc_now, index=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    actor_type: Mapped[str] = mapped_column(String(32))
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String(128))
    outcome: Mapped[str] = mapped_column(String(16))
    resource_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
