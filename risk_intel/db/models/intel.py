from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import Float, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from risk_intel.db.base import Base
from risk_intel.db.types import JSONList


class FeedSource(Base):
    __tablename__ = "feed_sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False, default="other")
    country: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    active: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[str] = mapped_column(String, nullable=False)

    last_scanned_at: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    last_scan_status: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    last_scan_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    events_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("organization_id", "url", name="uq_feed_sources_org_url"),
        Index("idx_feed_sources_org_active", "organization_id", "active"),
    )


class KeywordEntry(Base):
    __tablename__ = "keyword_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    category: Mapped[str] = mapped_column(String, nullable=False)
    keyword: Mapped[str] = mapped_column(String, nullable=False)
    active: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("organization_id", "category", "keyword", name="uq_keyword_entries_org_cat_kw"),
        Index("idx_keyword_entries_org", "organization_id", "active"),
    )


class OrgSettings(Base):
    __tablename__ = "org_settings"

    organization_id: Mapped[str] = mapped_column(String, primary_key=True)
    scanner_mode: Mapped[str] = mapped_column(String, nullable=False, default="ai")
    min_confidence_threshold: Mapped[float] = mapped_column(Float, nullable=False, default=0.6)
    lookback_days: Mapped[int] = mapped_column(Integer, nullable=False, default=7)
    updated_at: Mapped[str] = mapped_column(String, nullable=False)


class ExternalEvent(Base):
    __tablename__ = "external_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False, default="")
    source_name: Mapped[str] = mapped_column(String, nullable=False)
    source_url: Mapped[str] = mapped_column(Text, nullable=False)
    published_at: Mapped[str] = mapped_column(String, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False, default="other")
    matched_keywords: Mapped[list[Any]] = mapped_column(JSONList(), nullable=False, default=list)
    fetched_at: Mapped[str] = mapped_column(String, nullable=False)
    analyzed_at: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    __table_args__ = (
        UniqueConstraint("organization_id", "source_url", name="uq_external_events_org_url"),
        Index("idx_external_events_backlog", "organization_id", "analyzed_at", "id"),
        Index("idx_external_events_published", "organization_id", "published_at"),
        {"sqlite_autoincrement": True},
    )


class IntelligenceAlert(Base):
    __tablename__ = "intelligence_alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String, nullable=False)
    event_id: Mapped[int] = mapped_column(Integer, nullable=False)
    risk_code: Mapped[str] = mapped_column(String, nullable=False)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)
    suggested_likelihood_delta: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reasoning: Mapped[str] = mapped_column(Text, nullable=False, default="")
    impact_assessment: Mapped[str] = mapped_column(Text, nullable=False, default="")
    suggested_controls: Mapped[list[Any]] = mapped_column(JSONList(), nullable=False, default=list)
    judgement_source: Mapped[str] = mapped_column(String, nullable=False, default="model")
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    created_at: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("event_id", "risk_code", name="uq_intelligence_alerts_event_risk"),
        Index("idx_intelligence_alerts_org_status", "organization_id", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )


class ScanRun(Base):
    __tablename__ = "scan_runs"

    run_id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String, nullable=False)
    operation: Mapped[str] = mapped_column(String, nullable=False)
    triggered_by: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)
    started_at: Mapped[str] = mapped_column(String, nullable=False)
    ended_at: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    summary_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_scan_runs_org_started", "organization_id", "started_at"),
    )


class SourceFetchEvent(Base):
    __tablename__ = "source_fetch_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String, nullable=False)
    organization_id: Mapped[str] = mapped_column(String, nullable=False)
    source_name: Mapped[str] = mapped_column(String, nullable=False)
    source_url: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)
    http_status: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    items_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("idx_source_fetch_events_run", "run_id", "id"),
    )


class RegisterRisk(Base):
    """Read-only mapping of the risk register's table; rows are owned by the register."""

    __tablename__ = "risks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String, nullable=False)
    risk_code: Mapped[str] = mapped_column(String, nullable=False)
    risk_title: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")

    __table_args__ = (
        UniqueConstraint("organization_id", "risk_code", name="uq_risks_org_code"),
    )
