from __future__ import annotations

import json
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from risk_intel.db.models import ScanRun, SourceFetchEvent


class RunsRepo:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._Session = session_factory

    def start_run(
        self, *, run_id: str, organization_id: str, operation: str, triggered_by: str, started_at: str
    ) -> None:
        with self._Session() as s:
            s.add(
                ScanRun(
                    run_id=run_id,
                    organization_id=organization_id,
                    operation=operation,
                    triggered_by=triggered_by,
                    status="running",
                    started_at=started_at,
                )
            )
            s.commit()

    def finish_run(self, *, run_id: str, status: str, ended_at: str, summary: dict[str, Any] | None) -> None:
        with self._Session() as s:
            row = s.get(ScanRun, run_id)
            if row is None:
                return
            row.status = status
            row.ended_at = ended_at
            row.summary_json = json.dumps(summary or {}, ensure_ascii=False, sort_keys=True)
            s.commit()

    def insert_fetch_event(
        self,
        *,
        run_id: str,
        organization_id: str,
        source_name: str,
        source_url: str,
        status: str,
        http_status: int | None,
        items_count: int,
        error: str | None,
        duration_ms: int,
    ) -> int:
        with self._Session() as s:
            row = SourceFetchEvent(
                run_id=run_id,
                organization_id=organization_id,
                source_name=source_name,
                source_url=source_url,
                status=status,
                http_status=http_status,
                items_count=int(items_count),
                error=error,
                duration_ms=int(duration_ms),
            )
            s.add(row)
            s.commit()
            return int(row.id)

    def recent_runs(self, organization_id: str, *, limit: int = 20) -> list[dict[str, Any]]:
        with self._Session() as s:
            rows = list(
                s.execute(
                    select(ScanRun)
                    .where(ScanRun.organization_id == organization_id)
                    .order_by(ScanRun.started_at.desc(), ScanRun.run_id.desc())
                    .limit(max(1, int(limit)))
                ).scalars().all()
            )
        out: list[dict[str, Any]] = []
        for r in rows:
            try:
                summary = json.loads(r.summary_json) if r.summary_json else {}
            except ValueError:
                summary = {}
            out.append(
                {
                    "run_id": str(r.run_id),
                    "operation": str(r.operation),
                    "triggered_by": str(r.triggered_by),
                    "status": str(r.status),
                    "started_at": str(r.started_at),
                    "ended_at": str(r.ended_at or ""),
                    "summary": summary,
                }
            )
        return out

    def fetch_events(self, run_id: str) -> list[dict[str, Any]]:
        with self._Session() as s:
            rows = list(
                s.execute(
                    select(SourceFetchEvent).where(SourceFetchEvent.run_id == run_id).order_by(SourceFetchEvent.id.asc())
                ).scalars().all()
            )
        return [
            {
                "source_name": str(r.source_name),
                "source_url": str(r.source_url),
                "status": str(r.status),
                "http_status": int(r.http_status) if r.http_status is not None else None,
                "items_count": int(r.items_count),
                "error": str(r.error or ""),
                "duration_ms": int(r.duration_ms),
            }
            for r in rows
        ]
