"""intel baseline: sources, keywords, settings, events, alerts, run ledger

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def _json_type() -> sa.TypeEngine:
    if op.get_context().dialect.name == "postgresql":
        return postgresql.JSONB()
    return sa.Text()


def _has_table(table_name: str) -> bool:
    return table_name in set(sa.inspect(op.get_bind()).get_table_names())


def _create_index_if_missing(name: str, table_name: str, cols: list[str]) -> None:
    existing = {str(i.get("name", "")) for i in sa.inspect(op.get_bind()).get_indexes(table_name)}
    if name not in existing:
        op.create_index(name, table_name, cols, unique=False)


def upgrade() -> None:
    json_type = _json_type()

    if not _has_table("feed_sources"):
        op.create_table(
            "feed_sources",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("organization_id", sa.String(), nullable=True),
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("url", sa.Text(), nullable=False),
            sa.Column("category", sa.String(), nullable=False),
            sa.Column("country", sa.String(), nullable=True),
            sa.Column("active", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.String(), nullable=False),
            sa.Column("last_scanned_at", sa.String(), nullable=True),
            sa.Column("last_scan_status", sa.String(), nullable=True),
            sa.Column("last_scan_error", sa.Text(), nullable=True),
            sa.Column("events_count", sa.Integer(), nullable=False, server_default="0"),
            sa.UniqueConstraint("organization_id", "url", name="uq_feed_sources_org_url"),
        )
    _create_index_if_missing("idx_feed_sources_org_active", "feed_sources", ["organization_id", "active"])

    if not _has_table("keyword_entries"):
        op.create_table(
            "keyword_entries",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("organization_id", sa.String(), nullable=True),
            sa.Column("category", sa.String(), nullable=False),
            sa.Column("keyword", sa.String(), nullable=False),
            sa.Column("active", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.String(), nullable=False),
            sa.UniqueConstraint("organization_id", "category", "keyword", name="uq_keyword_entries_org_cat_kw"),
        )
    _create_index_if_missing("idx_keyword_entries_org", "keyword_entries", ["organization_id", "active"])

    if not _has_table("org_settings"):
        op.create_table(
            "org_settings",
            sa.Column("organization_id", sa.String(), primary_key=True),
            sa.Column("scanner_mode", sa.String(), nullable=False, server_default="ai"),
            sa.Column("min_confidence_threshold", sa.Float(), nullable=False, server_default="0.6"),
            sa.Column("lookback_days", sa.Integer(), nullable=False, server_default="7"),
            sa.Column("updated_at", sa.String(), nullable=False),
        )

    if not _has_table("external_events"):
        op.create_table(
            "external_events",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("organization_id", sa.String(), nullable=False),
            sa.Column("title", sa.Text(), nullable=False),
            sa.Column("summary", sa.Text(), nullable=False),
            sa.Column("source_name", sa.String(), nullable=False),
            sa.Column("source_url", sa.Text(), nullable=False),
            sa.Column("published_at", sa.String(), nullable=False),
            sa.Column("category", sa.String(), nullable=False),
            sa.Column("matched_keywords", json_type, nullable=False),
            sa.Column("fetched_at", sa.String(), nullable=False),
            sa.Column("analyzed_at", sa.String(), nullable=True),
            sa.UniqueConstraint("organization_id", "source_url", name="uq_external_events_org_url"),
            sqlite_autoincrement=True,
        )
    _create_index_if_missing("idx_external_events_backlog", "external_events", ["organization_id", "analyzed_at", "id"])
    _create_index_if_missing("idx_external_events_published", "external_events", ["organization_id", "published_at"])

    if not _has_table("intelligence_alerts"):
        op.create_table(
            "intelligence_alerts",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("organization_id", sa.String(), nullable=False),
            sa.Column("event_id", sa.Integer(), nullable=False),
            sa.Column("risk_code", sa.String(), nullable=False),
            sa.Column("confidence_score", sa.Float(), nullable=False),
            sa.Column("suggested_likelihood_delta", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("reasoning", sa.Text(), nullable=False),
            sa.Column("impact_assessment", sa.Text(), nullable=False),
            sa.Column("suggested_controls", json_type, nullable=False),
            sa.Column("judgement_source", sa.String(), nullable=False, server_default="model"),
            sa.Column("status", sa.String(), nullable=False, server_default="pending"),
            sa.Column("created_at", sa.String(), nullable=False),
            sa.UniqueConstraint("event_id", "risk_code", name="uq_intelligence_alerts_event_risk"),
            sqlite_autoincrement=True,
        )
    _create_index_if_missing(
        "idx_intelligence_alerts_org_status", "intelligence_alerts", ["organization_id", "status", "created_at"]
    )

    if not _has_table("scan_runs"):
        op.create_table(
            "scan_runs",
            sa.Column("run_id", sa.String(), primary_key=True),
            sa.Column("organization_id", sa.String(), nullable=False),
            sa.Column("operation", sa.String(), nullable=False),
            sa.Column("triggered_by", sa.String(), nullable=False),
            sa.Column("status", sa.String(), nullable=False),
            sa.Column("started_at", sa.String(), nullable=False),
            sa.Column("ended_at", sa.String(), nullable=True),
            sa.Column("summary_json", sa.Text(), nullable=True),
        )
    _create_index_if_missing("idx_scan_runs_org_started", "scan_runs", ["organization_id", "started_at"])

    if not _has_table("source_fetch_events"):
        op.create_table(
            "source_fetch_events",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("run_id", sa.String(), nullable=False),
            sa.Column("organization_id", sa.String(), nullable=False),
            sa.Column("source_name", sa.String(), nullable=False),
            sa.Column("source_url", sa.Text(), nullable=False),
            sa.Column("status", sa.String(), nullable=False),
            sa.Column("http_status", sa.Integer(), nullable=True),
            sa.Column("items_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("duration_ms", sa.Integer(), nullable=False, server_default="0"),
        )
    _create_index_if_missing("idx_source_fetch_events_run", "source_fetch_events", ["run_id", "id"])

    # the register owns this table; created here only so a standalone deployment has it
    if not _has_table("risks"):
        op.create_table(
            "risks",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("organization_id", sa.String(), nullable=False),
            sa.Column("risk_code", sa.String(), nullable=False),
            sa.Column("risk_title", sa.Text(), nullable=False),
            sa.Column("category", sa.String(), nullable=True),
            sa.Column("status", sa.String(), nullable=False, server_default="active"),
            sa.UniqueConstraint("organization_id", "risk_code", name="uq_risks_org_code"),
        )


def downgrade() -> None:
    for table in (
        "source_fetch_events",
        "scan_runs",
        "intelligence_alerts",
        "external_events",
        "org_settings",
        "keyword_entries",
        "feed_sources",
    ):
        if _has_table(table):
            op.drop_table(table)
