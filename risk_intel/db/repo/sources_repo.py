from __future__ import annotations

from typing import Any

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session, sessionmaker

from risk_intel.db.models import FeedSource, KeywordEntry, OrgSettings


class SourcesRepo:
    """Feed sources, keyword additions and per-organization settings."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._Session = session_factory

    @staticmethod
    def _source_to_dict(row: FeedSource) -> dict[str, Any]:
        return {
            "id": int(row.id),
            "organization_id": str(row.organization_id) if row.organization_id is not None else None,
            "name": str(row.name),
            "url": str(row.url),
            "category": str(row.category or "other"),
            "country": str(row.country or ""),
            "active": bool(int(row.active)),
            "created_at": str(row.created_at),
            "last_scanned_at": str(row.last_scanned_at or ""),
            "last_scan_status": str(row.last_scan_status or ""),
            "last_scan_error": str(row.last_scan_error or ""),
            "events_count": int(row.events_count or 0),
        }

    def list_sources(self, organization_id: str | None, *, active_only: bool = False) -> list[dict[str, Any]]:
        """Rows for one scope only; `None` lists the global defaults."""
        with self._Session() as s:
            q = select(FeedSource).order_by(FeedSource.id.asc())
            if organization_id is None:
                q = q.where(FeedSource.organization_id.is_(None))
            else:
                q = q.where(FeedSource.organization_id == organization_id)
            if active_only:
                q = q.where(FeedSource.active == 1)
            rows = list(s.execute(q).scalars().all())
        return [self._source_to_dict(r) for r in rows]

    def upsert_source(self, source: dict[str, Any], *, organization_id: str | None, now: str) -> dict[str, Any]:
        url = str(source.get("url", "")).strip()
        if not url:
            raise ValueError("source url required")
        with self._Session() as s:
            try:
                scope = (
                    FeedSource.organization_id.is_(None)
                    if organization_id is None
                    else FeedSource.organization_id == organization_id
                )
                row = s.execute(select(FeedSource).where(and_(scope, FeedSource.url == url)).limit(1)).scalar_one_or_none()
                if row is None:
                    row = FeedSource(organization_id=organization_id, url=url, created_at=now, events_count=0)
                    s.add(row)
                row.name = str(source.get("name") or url)
                row.category = str(source.get("category") or "other")
                row.country = str(source.get("country") or "") or None
                row.active = 1 if bool(source.get("active", True)) else 0
                s.commit()
                return self._source_to_dict(row)
            except Exception:
                s.rollback()
                raise

    def record_scan(self, source_id: int, *, status: str, error: str | None, events_added: int, now: str) -> None:
        with self._Session() as s:
            row = s.get(FeedSource, int(source_id))
            if row is None:
                return
            row.last_scanned_at = now
            row.last_scan_status = status
            row.last_scan_error = (error or None) if status != "success" else None
            row.events_count = int(row.events_count or 0) + max(0, int(events_added))
            s.commit()

    def list_keywords(self, organization_id: str) -> list[dict[str, Any]]:
        """Global additions followed by the organization's own rows (active or suppressing)."""
        with self._Session() as s:
            rows = list(
                s.execute(
                    select(KeywordEntry)
                    .where(or_(KeywordEntry.organization_id.is_(None), KeywordEntry.organization_id == organization_id))
                    .order_by(KeywordEntry.organization_id.is_not(None), KeywordEntry.id.asc())
                ).scalars().all()
            )
        return [
            {
                "organization_id": r.organization_id,
                "category": str(r.category),
                "keyword": str(r.keyword),
                "active": bool(int(r.active)),
            }
            for r in rows
        ]

    def upsert_keyword(
        self, *, organization_id: str | None, category: str, keyword: str, active: bool, now: str
    ) -> None:
        kw = str(keyword or "").strip().lower()
        if not kw:
            raise ValueError("keyword required")
        with self._Session() as s:
            try:
                scope = (
                    KeywordEntry.organization_id.is_(None)
                    if organization_id is None
                    else KeywordEntry.organization_id == organization_id
                )
                row = s.execute(
                    select(KeywordEntry)
                    .where(and_(scope, KeywordEntry.category == category, KeywordEntry.keyword == kw))
                    .limit(1)
                ).scalar_one_or_none()
                if row is None:
                    row = KeywordEntry(organization_id=organization_id, category=category, keyword=kw, created_at=now)
                    s.add(row)
                row.active = 1 if active else 0
                s.commit()
            except Exception:
                s.rollback()
                raise

    def get_settings(self, organization_id: str) -> dict[str, Any] | None:
        with self._Session() as s:
            row = s.get(OrgSettings, organization_id)
            if row is None:
                return None
            return {
                "organization_id": str(row.organization_id),
                "scanner_mode": str(row.scanner_mode),
                "min_confidence_threshold": float(row.min_confidence_threshold),
                "lookback_days": int(row.lookback_days),
                "updated_at": str(row.updated_at),
            }

    def upsert_settings(
        self,
        organization_id: str,
        *,
        scanner_mode: str,
        min_confidence_threshold: float,
        lookback_days: int,
        now: str,
    ) -> None:
        with self._Session() as s:
            try:
                row = s.get(OrgSettings, organization_id)
                if row is None:
                    row = OrgSettings(organization_id=organization_id)
                    s.add(row)
                row.scanner_mode = scanner_mode
                row.min_confidence_threshold = float(min_confidence_threshold)
                row.lookback_days = int(lookback_days)
                row.updated_at = now
                s.commit()
            except Exception:
                s.rollback()
                raise
