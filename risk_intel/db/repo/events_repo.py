from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.orm import Session, sessionmaker

from risk_intel.db.models import ExternalEvent, IntelligenceAlert


class EventsRepo:
    """
    External events and the alerts derived from them.

    Every query is scoped by organization_id. `analyzed_at` is the only column
    written after an event is inserted.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._Session = session_factory

    @staticmethod
    def _event_to_dict(row: ExternalEvent) -> dict[str, Any]:
        return {
            "id": int(row.id),
            "organization_id": str(row.organization_id),
            "title": str(row.title),
            "summary": str(row.summary or ""),
            "source_name": str(row.source_name),
            "source_url": str(row.source_url),
            "published_at": str(row.published_at),
            "category": str(row.category or "other"),
            "matched_keywords": list(row.matched_keywords or []),
            "fetched_at": str(row.fetched_at),
            "analyzed_at": str(row.analyzed_at) if row.analyzed_at else None,
        }

    @staticmethod
    def _alert_to_dict(row: IntelligenceAlert) -> dict[str, Any]:
        return {
            "id": int(row.id),
            "organization_id": str(row.organization_id),
            "event_id": int(row.event_id),
            "risk_code": str(row.risk_code),
            "confidence_score": float(row.confidence_score),
            "suggested_likelihood_delta": int(row.suggested_likelihood_delta or 0),
            "reasoning": str(row.reasoning or ""),
            "impact_assessment": str(row.impact_assessment or ""),
            "suggested_controls": list(row.suggested_controls or []),
            "judgement_source": str(row.judgement_source),
            "status": str(row.status),
            "created_at": str(row.created_at),
        }

    def find_by_url(self, organization_id: str, source_url: str) -> dict[str, Any] | None:
        with self._Session() as s:
            row = s.execute(
                select(ExternalEvent)
                .where(and_(ExternalEvent.organization_id == organization_id, ExternalEvent.source_url == source_url))
                .limit(1)
            ).scalar_one_or_none()
            return self._event_to_dict(row) if row is not None else None

    def insert_event(self, organization_id: str, fields: dict[str, Any], *, now: str) -> int:
        """Insert one pending event. IntegrityError propagates to the caller on a URL collision."""
        with self._Session() as s:
            try:
                row = ExternalEvent(
                    organization_id=organization_id,
                    title=str(fields.get("title") or "Untitled"),
                    summary=str(fields.get("summary") or ""),
                    source_name=str(fields.get("source_name") or ""),
                    source_url=str(fields["source_url"]),
                    published_at=str(fields.get("published_at") or now),
                    category=str(fields.get("category") or "other"),
                    matched_keywords=list(fields.get("matched_keywords") or []),
                    fetched_at=now,
                    analyzed_at=None,
                )
                s.add(row)
                s.commit()
                return int(row.id)
            except Exception:
                s.rollback()
                raise

    def get_event(self, organization_id: str, event_id: int) -> dict[str, Any] | None:
        with self._Session() as s:
            row = s.get(ExternalEvent, int(event_id))
            if row is None or row.organization_id != organization_id:
                return None
            return self._event_to_dict(row)

    def list_unanalyzed(
        self, organization_id: str, *, limit: int, prefer_ids: Iterable[int] = ()
    ) -> list[dict[str, Any]]:
        """Pending events: `prefer_ids` first (in the given order), then the oldest backlog."""
        limit = max(0, int(limit))
        if limit == 0:
            return []
        preferred = [int(x) for x in prefer_ids]
        pending = and_(ExternalEvent.organization_id == organization_id, ExternalEvent.analyzed_at.is_(None))
        out: list[dict[str, Any]] = []
        with self._Session() as s:
            if preferred:
                rows = s.execute(select(ExternalEvent).where(and_(pending, ExternalEvent.id.in_(preferred)))).scalars().all()
                by_id = {int(r.id): r for r in rows}
                for eid in preferred:
                    if eid in by_id and len(out) < limit:
                        out.append(self._event_to_dict(by_id.pop(eid)))
            remaining = limit - len(out)
            if remaining > 0:
                q = select(ExternalEvent).where(pending).order_by(ExternalEvent.id.asc()).limit(remaining)
                if preferred:
                    q = q.where(ExternalEvent.id.not_in(preferred))
                out.extend(self._event_to_dict(r) for r in s.execute(q).scalars().all())
        return out

    def count_unanalyzed(self, organization_id: str) -> int:
        with self._Session() as s:
            return int(
                s.execute(
                    select(func.count(ExternalEvent.id)).where(
                        and_(ExternalEvent.organization_id == organization_id, ExternalEvent.analyzed_at.is_(None))
                    )
                ).scalar_one()
            )

    def recent_analyzed_titles(self, organization_id: str, *, since: str, limit: int = 200) -> list[tuple[int, str]]:
        """`(id, title)` of analyzed events fetched at or after `since`, newest first."""
        q = (
            select(ExternalEvent.id, ExternalEvent.title)
            .where(
                and_(
                    ExternalEvent.organization_id == organization_id,
                    ExternalEvent.analyzed_at.is_not(None),
                    ExternalEvent.fetched_at >= since,
                )
            )
            .order_by(ExternalEvent.id.desc())
            .limit(max(1, int(limit)))
        )
        with self._Session() as s:
            return [(int(r[0]), str(r[1])) for r in s.execute(q).all()]

    def publish(
        self, organization_id: str, event_id: int, alerts: list[dict[str, Any]], *, analyzed_at: str
    ) -> int:
        """
        Insert the alerts not already present for this event and stamp `analyzed_at`,
        all in one transaction. Returns the number of alerts created.
        """
        with self._Session() as s:
            try:
                existing = set(
                    s.execute(
                        select(IntelligenceAlert.risk_code).where(IntelligenceAlert.event_id == int(event_id))
                    ).scalars().all()
                )
                created = 0
                for a in alerts:
                    code = str(a["risk_code"])
                    if code in existing:
                        continue
                    s.add(
                        IntelligenceAlert(
                            organization_id=organization_id,
                            event_id=int(event_id),
                            risk_code=code,
                            confidence_score=float(a["confidence_score"]),
                            suggested_likelihood_delta=int(a.get("suggested_likelihood_delta", 0)),
                            reasoning=str(a.get("reasoning") or ""),
                            impact_assessment=str(a.get("impact_assessment") or ""),
                            suggested_controls=list(a.get("suggested_controls") or []),
                            judgement_source=str(a.get("judgement_source") or "model"),
                            status="pending",
                            created_at=analyzed_at,
                        )
                    )
                    existing.add(code)
                    created += 1
                s.execute(
                    update(ExternalEvent)
                    .where(and_(ExternalEvent.id == int(event_id), ExternalEvent.organization_id == organization_id))
                    .values(analyzed_at=analyzed_at)
                )
                s.commit()
                return created
            except Exception:
                s.rollback()
                raise

    def reset_analysis(
        self,
        organization_id: str,
        *,
        event_ids: list[int] | None = None,
        category: str | None = None,
        since: str | None = None,
    ) -> int:
        conds = [ExternalEvent.organization_id == organization_id, ExternalEvent.analyzed_at.is_not(None)]
        if event_ids is not None:
            conds.append(ExternalEvent.id.in_([int(x) for x in event_ids]))
        if category:
            conds.append(ExternalEvent.category == category)
        if since:
            conds.append(ExternalEvent.published_at >= since)
        with self._Session() as s:
            res = s.execute(update(ExternalEvent).where(and_(*conds)).values(analyzed_at=None))
            s.commit()
            return int(res.rowcount or 0)

    def purge(self, organization_id: str, *, scope: str, include_alerts: bool = False) -> dict[str, int]:
        conds = [ExternalEvent.organization_id == organization_id]
        if scope == "unanalyzed":
            conds.append(ExternalEvent.analyzed_at.is_(None))
        with self._Session() as s:
            try:
                ids = list(s.execute(select(ExternalEvent.id).where(and_(*conds))).scalars().all())
                alerts_deleted = 0
                if include_alerts and ids:
                    res = s.execute(
                        delete(IntelligenceAlert).where(
                            and_(
                                IntelligenceAlert.organization_id == organization_id,
                                IntelligenceAlert.event_id.in_(ids),
                            )
                        )
                    )
                    alerts_deleted = int(res.rowcount or 0)
                events_deleted = 0
                if ids:
                    res = s.execute(delete(ExternalEvent).where(ExternalEvent.id.in_(ids)))
                    events_deleted = int(res.rowcount or 0)
                s.commit()
                return {"events_deleted": events_deleted, "alerts_deleted": alerts_deleted}
            except Exception:
                s.rollback()
                raise

    def insert_test_alert(
        self, organization_id: str, *, risk_code: str, source_url: str, now: str
    ) -> int:
        """Synthetic analyzed event plus one pending alert, for exercising the review UI."""
        with self._Session() as s:
            try:
                ev = ExternalEvent(
                    organization_id=organization_id,
                    title=f"Test alert for {risk_code}",
                    summary="Synthetic event created by the test-alert hook.",
                    source_name="risk-intel test hook",
                    source_url=source_url,
                    published_at=now,
                    category="other",
                    matched_keywords=[],
                    fetched_at=now,
                    analyzed_at=now,
                )
                s.add(ev)
                s.flush()
                alert = IntelligenceAlert(
                    organization_id=organization_id,
                    event_id=int(ev.id),
                    risk_code=risk_code,
                    confidence_score=1.0,
                    suggested_likelihood_delta=0,
                    reasoning="Test alert; no external event was analyzed.",
                    impact_assessment="None. Created to verify the review workflow.",
                    suggested_controls=[],
                    judgement_source="test",
                    status="pending",
                    created_at=now,
                )
                s.add(alert)
                s.commit()
                return int(alert.id)
            except Exception:
                s.rollback()
                raise

    def list_events(self, organization_id: str, *, status: str = "all", limit: int = 100) -> list[dict[str, Any]]:
        q = select(ExternalEvent).where(ExternalEvent.organization_id == organization_id)
        if status == "pending":
            q = q.where(ExternalEvent.analyzed_at.is_(None))
        elif status == "analyzed":
            q = q.where(ExternalEvent.analyzed_at.is_not(None))
        q = q.order_by(ExternalEvent.published_at.desc(), ExternalEvent.id.desc()).limit(max(1, int(limit)))
        with self._Session() as s:
            rows = list(s.execute(q).scalars().all())
        return [self._event_to_dict(r) for r in rows]

    def list_alerts(
        self,
        organization_id: str,
        *,
        status: str | None = None,
        event_id: int | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        q = select(IntelligenceAlert).where(IntelligenceAlert.organization_id == organization_id)
        if status:
            q = q.where(IntelligenceAlert.status == status)
        if event_id is not None:
            q = q.where(IntelligenceAlert.event_id == int(event_id))
        q = q.order_by(IntelligenceAlert.id.desc()).limit(max(1, int(limit)))
        with self._Session() as s:
            rows = list(s.execute(q).scalars().all())
        return [self._alert_to_dict(r) for r in rows]
