"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, *, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _now(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    op.create_table(
        "sites",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("public_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(), nullable=False, server_default=""),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="TRY"),
        sa.Column("oci_api_key", sa.String(), nullable=True),
        sa.Column("oci_config", postgresql.JSONB(), nullable=True),
        sa.Column("pipeline_stages", postgresql.JSONB(), nullable=True),
        sa.Column("call_event_secret", sa.String(), nullable=True),
        _now("created_at"),
    )
    op.create_index("ix_sites_public_id", "sites", ["public_id"], unique=True)

    op.create_table(
        "site_plans",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("monthly_limit", sa.Integer(), nullable=False, server_default="1000"),
        sa.Column("soft_limit_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("hard_cap_multiplier", sa.Float(), nullable=False, server_default="2.0"),
        sa.Column("capabilities", postgresql.JSONB(), nullable=True),
        _now("updated_at"),
    )

    op.create_table(
        "ingest_idempotency",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=160), nullable=False),
        sa.Column("idempotency_version", sa.String(length=4), nullable=False, server_default="v2"),
        sa.Column("billable", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("billable_reason", sa.String(length=64), nullable=True),
        sa.Column("billing_state", sa.String(length=16), nullable=False, server_default="ACCEPTED"),
        sa.Column("year_month", sa.String(length=7), nullable=False),
        sa.Column("event_category", sa.String(length=64), nullable=True),
        sa.Column("event_action", sa.String(length=64), nullable=True),
        sa.Column("event_label", sa.String(length=256), nullable=True),
        _now("created_at"),
        _ts("expires_at", nullable=False),
        sa.UniqueConstraint("tenant_id", "idempotency_key", name="uq_ingest_idempotency_key"),
    )
    op.create_index("ix_ingest_idempotency_tenant_id", "ingest_idempotency", ["tenant_id"])
    op.create_index("ix_ingest_idempotency_tenant_month", "ingest_idempotency", ["tenant_id", "year_month"])
    op.create_index("ix_ingest_idempotency_expires_at", "ingest_idempotency", ["expires_at"])

    op.create_table(
        "sessions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("created_month", sa.String(length=7), nullable=False),
        sa.Column("fingerprint", sa.String(length=128), nullable=True),
        sa.Column("gclid", sa.String(length=256), nullable=True),
        sa.Column("wbraid", sa.String(length=256), nullable=True),
        sa.Column("gbraid", sa.String(length=256), nullable=True),
        sa.Column("utm_source", sa.String(length=256), nullable=True),
        sa.Column("utm_medium", sa.String(length=256), nullable=True),
        sa.Column("utm_campaign", sa.String(length=256), nullable=True),
        sa.Column("utm_term", sa.String(length=256), nullable=True),
        sa.Column("utm_content", sa.String(length=256), nullable=True),
        sa.Column("consent_scopes", postgresql.JSONB(), nullable=True),
        sa.Column("total_duration_sec", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_scroll_depth", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("event_count", sa.Integer(), nullable=False, server_default="0"),
        _now("created_at"),
    )
    op.create_index("ix_sessions_tenant_id", "sessions", ["tenant_id"])
    op.create_index("ix_sessions_tenant_month", "sessions", ["tenant_id", "created_month"])

    op.create_table(
        "events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("session_month", sa.String(length=7), nullable=False),
        sa.Column("event_category", sa.String(length=64), nullable=False),
        sa.Column("event_action", sa.String(length=64), nullable=False),
        sa.Column("event_label", sa.String(length=256), nullable=True),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("fingerprint", sa.String(length=128), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        _now("created_at"),
    )
    # Attribution lookups scan recent events by fingerprint within a tenant.
    op.create_index(
        "ix_events_tenant_fingerprint_created",
        "events",
        ["tenant_id", "fingerprint", "created_at"],
    )
    op.create_index("ix_events_session", "events", ["session_id", "session_month"])

    op.create_table(
        "calls",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("phone_number", sa.String(length=256), nullable=True),
        sa.Column("matched_session_id", sa.String(), nullable=True),
        sa.Column("matched_fingerprint", sa.String(length=128), nullable=True),
        _ts("matched_at"),
        sa.Column("status", sa.String(length=64), nullable=True),
        sa.Column("lead_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lead_score_star", sa.Integer(), nullable=True),
        sa.Column("confidence", sa.Integer(), nullable=True),
        sa.Column("score_breakdown", postgresql.JSONB(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("sale_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("currency", sa.String(length=8), nullable=True),
        sa.Column("oci_status", sa.String(length=16), nullable=True),
        _ts("confirmed_at"),
        sa.Column("confirmed_by", sa.String(), nullable=True),
        sa.Column("click_id", sa.String(length=256), nullable=True),
        sa.Column("marketing_consent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("intent_action", sa.String(length=32), nullable=True),
        sa.Column("intent_target", sa.String(length=512), nullable=True),
        sa.Column("intent_stamp", sa.String(length=128), nullable=True),
        sa.Column("intent_page_url", sa.Text(), nullable=True),
        _now("created_at"),
        _now("updated_at"),
    )
    op.create_index("ix_calls_tenant_id", "calls", ["tenant_id"])
    op.create_index("ix_calls_tenant_created", "calls", ["tenant_id", "created_at"])

    op.create_table(
        "conversion_queue",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("call_id", sa.String(), nullable=False),
        sa.Column("provider_key", sa.String(length=32), nullable=False, server_default="google_ads"),
        sa.Column("action", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="QUEUED"),
        sa.Column("value_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="TRY"),
        sa.Column("gclid", sa.String(length=256), nullable=True),
        sa.Column("wbraid", sa.String(length=256), nullable=True),
        sa.Column("gbraid", sa.String(length=256), nullable=True),
        _now("conversion_time"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        _ts("next_retry_at"),
        _ts("claimed_at"),
        _ts("uploaded_at"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("error_category", sa.String(length=16), nullable=True),
        sa.Column("provider_error_code", sa.String(length=64), nullable=True),
        _now("created_at"),
        _now("updated_at"),
        sa.UniqueConstraint("tenant_id", "call_id", "provider_key", name="uq_conversion_queue_call_provider"),
        sa.CheckConstraint(
            "status IN ('QUEUED', 'PROCESSING', 'RETRY', 'COMPLETED', 'FAILED')",
            name="ck_conversion_queue_status",
        ),
    )
    op.create_index(
        "ix_conversion_queue_claim",
        "conversion_queue",
        ["tenant_id", "provider_key", "status", "next_retry_at"],
    )

    op.create_table(
        "site_usage_monthly",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("year_month", sa.String(length=7), nullable=False),
        sa.Column("event_count", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("overage_count", sa.BigInteger(), nullable=False, server_default="0"),
        _now("last_synced_at"),
        sa.UniqueConstraint("tenant_id", "year_month", name="uq_site_usage_monthly"),
    )

    op.create_table(
        "usage_counters",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("year_month", sa.String(length=7), nullable=False),
        sa.Column("event_count", sa.BigInteger(), nullable=False, server_default="0"),
        _now("updated_at"),
        sa.UniqueConstraint("tenant_id", "year_month", name="uq_usage_counters"),
    )

    op.create_table(
        "billing_reconciliation_jobs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("year_month", sa.String(length=7), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="QUEUED"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_drift_pct", sa.Float(), nullable=True),
        _now("created_at"),
        _now("updated_at"),
        sa.UniqueConstraint("tenant_id", "year_month", name="uq_reconciliation_jobs"),
    )
    op.create_index(
        "ix_billing_reconciliation_jobs_status",
        "billing_reconciliation_jobs",
        ["status", "created_at"],
    )

    op.create_table(
        "provider_credentials",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("provider_key", sa.String(length=32), nullable=False),
        sa.Column("encrypted_payload", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _now("created_at"),
        sa.UniqueConstraint("tenant_id", "provider_key", name="uq_provider_credentials"),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _now("occurred_at"),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(length=32), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(length=128), nullable=False),
        sa.Column("outcome", sa.String(length=16), nullable=False),
        sa.Column("resource_type", sa.String(length=64), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_code", sa.String(length=64), nullable=True),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_tenant_id", "audit_events", ["tenant_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_tenant_id", table_name="audit_events")
    op.drop_index("ix_audit_events_occurred_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_table("provider_credentials")
    op.drop_index("ix_billing_reconciliation_jobs_status", table_name="billing_reconciliation_jobs")
    op.drop_table("billing_reconciliation_jobs")
    op.drop_table("usage_counters")
    op.drop_table("site_usage_monthly")
    op.drop_index("ix_conversion_queue_claim", table_name="conversion_queue")
    op.drop_table("conversion_queue")
    op.drop_index("ix_calls_tenant_created", table_name="calls")
    op.drop_index("ix_calls_tenant_id", table_name="calls")
    op.drop_table("calls")
    op.drop_index("ix_events_session", table_name="events")
    op.drop_index("ix_events_tenant_fingerprint_created", table_name="events")
    op.drop_table("events")
    op.drop_index("ix_sessions_tenant_month", table_name="sessions")
    op.drop_index("ix_sessions_tenant_id", table_name="sessions")
    op.drop_table("sessions")
    op.drop_index("ix_ingest_idempotency_expires_at", table_name="ingest_idempotency")
    op.drop_index("ix_ingest_idempotency_tenant_month", table_name="ingest_idempotency")
    op.drop_index("ix_ingest_idempotency_tenant_id", table_name="ingest_idempotency")
    op.drop_table("ingest_idempotency")
    op.drop_table("site_plans")
    op.drop_index("ix_sites_public_id", table_name="sites")
    op.drop_table("sites")
