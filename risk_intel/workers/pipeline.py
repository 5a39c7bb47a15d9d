from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable

from risk_intel.config import PipelineSettings, get_pipeline_settings
from risk_intel.core.dedup import find_duplicate, tokenize_title
from risk_intel.core.keywords import (
    KeywordDictionaries,
    KeywordSet,
    build_keyword_set,
    classify_item,
    load_keyword_dictionaries,
    score_relevance,
)
from risk_intel.db.database import IntelDatabase
from risk_intel.errors import InvalidRequestError, PersistenceError
from risk_intel.services.alert_publisher import AlertPublisher
from risk_intel.services.event_store import DUPLICATE, ERROR, FILTERED, STORED, EventStoreGateway
from risk_intel.services.feed_fetcher import FeedFetchResult, fetch_all
from risk_intel.services.model_client import ModelClient, build_model_client
from risk_intel.services.org_settings import OrgConfig, resolve_org_config
from risk_intel.services.relevance_analyzer import (
    SOURCE_MODEL,
    AnalysisThrottle,
    MatchingRules,
    RelevanceAnalyzer,
    RelevanceJudgement,
    load_matching_rules,
)
from risk_intel.services.risk_register import RiskRegister, SqlRiskRegister
from risk_intel.services.run_lock import acquire_run_lock, lock_path_for
from risk_intel.services.source_registry import SourceRegistry
from risk_intel.utils.clock import parse_iso, to_iso, utc_now


PURGE_SCOPES = {"unanalyzed", "all"}
SOURCE_PREFILTER = "prefilter"
SOURCE_DUPLICATE = "duplicate"

logger = logging.getLogger("risk_intel.pipeline")

_UNSET: Any = object()


class IntelPipeline:
    """
    Drives fetch, classify, store, analyze and publish for one organization at a time,
    plus the maintenance operations an operator needs around that backlog.

    Collaborators are injectable so tests can swap the fetcher, the model client,
    the risk register and the clocks.
    """

    def __init__(
        self,
        database: IntelDatabase,
        *,
        settings: PipelineSettings | None = None,
        risk_register: RiskRegister | None = None,
        model_client: ModelClient | None = _UNSET,
        fetcher: Callable[..., list[FeedFetchResult]] = fetch_all,
        keyword_dictionaries: KeywordDictionaries | None = None,
        matching_rules: MatchingRules | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = database
        self.settings = settings or get_pipeline_settings()
        self.risk_register = risk_register or SqlRiskRegister(database.session_factory)
        self.model_client = build_model_client(self.settings) if model_client is _UNSET else model_client
        self.fetcher = fetcher
        self.dictionaries = keyword_dictionaries or load_keyword_dictionaries()
        self.rules = matching_rules or load_matching_rules()
        self.registry = SourceRegistry(database.sources)
        self._sleep = sleep
        self._clock = clock
        self._now = now
        self.store = EventStoreGateway(
            database.events,
            retry_backoff_seconds=self.settings.persist_retry_backoff_seconds,
            sleep=sleep,
            now=self._now_iso,
        )
        self.publisher = AlertPublisher(
            database.events,
            retry_backoff_seconds=self.settings.persist_retry_backoff_seconds,
            sleep=sleep,
            now=self._now_iso,
        )

    def _now_iso(self) -> str:
        return to_iso(self._now())

    @staticmethod
    def _require_org(organization_id: str) -> str:
        org = str(organization_id or "").strip()
        if not org:
            raise InvalidRequestError("organization_id is required")
        return org

    def _keyword_set(self, organization_id: str) -> KeywordSet:
        return build_keyword_set(self.dictionaries, self.db.sources.list_keywords(organization_id))

    def _ledger(self, organization_id: str, operation: str, triggered_by: str, fn: Callable[[str], dict[str, Any]]):
        self.db.ping()
        run_id = uuid.uuid4().hex
        self.db.runs.start_run(
            run_id=run_id,
            organization_id=organization_id,
            operation=operation,
            triggered_by=triggered_by,
            started_at=self._now_iso(),
        )
        try:
            summary = fn(run_id)
        except Exception as e:
            self.db.runs.finish_run(
                run_id=run_id, status="failed", ended_at=self._now_iso(), summary={"error": str(e)}
            )
            raise
        status = "partial" if summary.get("per_source_errors") or summary.get("per_event_errors") else "success"
        self.db.runs.finish_run(run_id=run_id, status=status, ended_at=self._now_iso(), summary=summary)
        summary["run_id"] = run_id
        return summary

    # full run

    def run_full_scan(
        self,
        organization_id: str,
        *,
        triggered_by: str = "manual",
        deadline_seconds: float | None = None,
    ) -> dict[str, Any]:
        org = self._require_org(organization_id)
        started = self._clock()
        budget = self.settings.run_deadline_seconds if deadline_seconds is None else float(deadline_seconds)
        deadline_at = started + budget if budget and budget > 0 else None

        def _run(run_id: str) -> dict[str, Any]:
            with acquire_run_lock(lock_path_for(self.settings.lock_dir, org), run_id=run_id, purpose="scan"):
                return self._full_scan(org, run_id, deadline_at)

        return self._ledger(org, "scan", triggered_by, _run)

    def _full_scan(self, org: str, run_id: str, deadline_at: float | None) -> dict[str, Any]:
        s = self.settings
        config = resolve_org_config(self.db.sources, org, s)
        keyword_set = self._keyword_set(org)
        sources = self.registry.active_sources(org, max_feeds=s.max_feeds_per_run)
        now = self._now()
        results = self.fetcher(
            sources,
            max_workers=s.fetch_max_workers,
            limit=s.items_per_feed,
            timeout_seconds=s.fetch_timeout_seconds,
            retries=s.fetch_retries,
            now=now,
        )

        counts = {STORED: 0, FILTERED: 0, DUPLICATE: 0, ERROR: 0}
        stored_ids: list[int] = []
        per_source_errors: list[dict[str, Any]] = []
        for res in results:
            src = res.source
            stored_here = 0
            if res.ok:
                for item in res.items:
                    classified = classify_item(
                        item,
                        source_name=str(src.get("name") or ""),
                        keyword_set=keyword_set,
                        lookback_days=config.lookback_days,
                        now=now,
                        dictionaries=self.dictionaries,
                    )
                    outcome = self.store.store_if_new(org, classified)
                    counts[outcome.status] += 1
                    if outcome.status == STORED and outcome.event_id is not None:
                        stored_ids.append(outcome.event_id)
                        stored_here += 1
            else:
                per_source_errors.append(
                    {
                        "source": str(src.get("name") or ""),
                        "url": str(src.get("url") or ""),
                        "error_type": res.error_type,
                        "error": res.error_message,
                    }
                )
            self._record_source(org, run_id, res, stored_here)

        summary: dict[str, Any] = {
            "feeds_processed": len(results),
            "items_stored": counts[STORED],
            "items_filtered": counts[FILTERED],
            "items_duplicate": counts[DUPLICATE],
            "items_failed": counts[ERROR],
            "per_source_errors": per_source_errors,
        }
        analysis = self._analyze(org, config, keyword_set, prefer_ids=stored_ids, deadline_at=deadline_at)
        summary.update(analysis)
        logger.info(
            "scan done org=%s feeds=%d stored=%d filtered=%d dup=%d analyzed=%d prefiltered=%d same_story=%d "
            "alerts=%d source_errors=%d",
            org,
            summary["feeds_processed"],
            summary["items_stored"],
            summary["items_filtered"],
            summary["items_duplicate"],
            summary["events_analyzed"],
            summary["events_prefiltered"],
            summary["events_deduplicated"],
            summary["alerts_created"],
            len(per_source_errors),
        )
        return summary

    def _record_source(self, org: str, run_id: str, res: FeedFetchResult, stored: int) -> None:
        src = res.source
        self.db.runs.insert_fetch_event(
            run_id=run_id,
            organization_id=org,
            source_name=str(src.get("name") or ""),
            source_url=str(src.get("url") or ""),
            status=res.status,
            http_status=res.http_status,
            items_count=len(res.items),
            error=res.error_message or None,
            duration_ms=res.duration_ms,
        )
        if src.get("id") is not None:
            self.db.sources.record_scan(
                int(src["id"]), status=res.status, error=res.error_message, events_added=stored, now=self._now_iso()
            )

    # analysis

    def _analyze(
        self,
        org: str,
        config: OrgConfig,
        keyword_set: KeywordSet,
        *,
        prefer_ids: list[int],
        deadline_at: float | None,
        limit: int | None = None,
    ) -> dict[str, Any]:
        out: dict[str, Any] = {
            "events_analyzed": 0,
            "alerts_created": 0,
            "model_judgements": 0,
            "fallback_judgements": 0,
            "events_prefiltered": 0,
            "events_deduplicated": 0,
            "per_event_errors": [],
            "stopped_early": False,
        }
        risks = self.risk_register.get_active_risks(org)
        if not risks:
            out["skipped_reason"] = "no_active_risks"
            logger.info("analysis skipped org=%s: no active risks", org)
            return out

        analyzer = RelevanceAnalyzer(
            self.model_client,
            keyword_set,
            rules=self.rules,
            scanner_mode=config.scanner_mode,
            fallback_confidence=self.settings.fallback_confidence,
            throttle=AnalysisThrottle(self.settings.ai_call_delay_seconds, sleep=self._sleep, clock=self._clock),
        )
        batch = self.settings.analyze_batch_limit if limit is None else max(1, int(limit))
        events = self.db.events.list_unanalyzed(org, limit=batch, prefer_ids=prefer_ids)
        now = self._now()
        min_score = self.settings.prefilter_min_score
        similarity = self.settings.dedup_similarity
        seen: list[tuple[int, list[str]]] = []
        if similarity > 0:
            since = to_iso(now - timedelta(days=self.settings.dedup_window_days))
            seen = [(eid, tokenize_title(t)) for eid, t in self.db.events.recent_analyzed_titles(org, since=since)]
        for i, ev in enumerate(events):
            if deadline_at is not None and self._clock() >= deadline_at:
                out["stopped_early"] = True
                logger.warning("run deadline reached org=%s; %d events left for the next run", org, len(events) - i)
                break
            if min_score > 0:
                scored = score_relevance(ev, keyword_set, self.dictionaries, now=now)
                if not scored.passes(min_score):
                    reason = f"Relevance score {scored.score} below {min_score:g}: {'; '.join(scored.reasons)}"
                    self._skip(org, ev, SOURCE_PREFILTER, reason, out, "events_prefiltered")
                    continue
            dup = find_duplicate(ev.get("title"), seen, similarity) if similarity > 0 else None
            if dup is not None:
                reason = f"Similar to event {dup[0]} (title similarity {dup[1]:.2f})"
                self._skip(org, ev, SOURCE_DUPLICATE, reason, out, "events_deduplicated")
                continue
            judgement = analyzer.analyze(ev, risks)
            if judgement.source == SOURCE_MODEL:
                out["model_judgements"] += 1
                threshold = config.min_confidence_threshold
            else:
                # keyword fallback is published at its fixed confidence
                out["fallback_judgements"] += 1
                threshold = 0.0
            try:
                created = self.publisher.publish(org, ev, judgement, threshold)
            except PersistenceError as e:
                out["per_event_errors"].append({"event_id": int(ev["id"]), "error": str(e)})
                continue
            out["events_analyzed"] += 1
            out["alerts_created"] += created
            seen.append((int(ev["id"]), tokenize_title(ev.get("title"))))
        return out

    def _skip(self, org: str, ev: dict[str, Any], source: str, reason: str, out: dict[str, Any], counter: str) -> None:
        """Close out an event without analysis: stamped analyzed, no alerts."""
        logger.info("event skipped org=%s event_id=%s source=%s: %s", org, ev.get("id"), source, reason)
        try:
            self.publisher.publish(org, ev, RelevanceJudgement(relevant=False, reasoning=reason, source=source), 1.0)
        except PersistenceError as e:
            out["per_event_errors"].append({"event_id": int(ev["id"]), "error": str(e)})
            return
        out[counter] += 1

    def analyze_backlog(
        self,
        organization_id: str,
        max_batch: int | None = None,
        *,
        triggered_by: str = "manual",
        deadline_seconds: float | None = None,
    ) -> dict[str, Any]:
        org = self._require_org(organization_id)
        if max_batch is not None and int(max_batch) < 1:
            raise InvalidRequestError("max_batch must be >= 1")
        budget = self.settings.run_deadline_seconds if deadline_seconds is None else float(deadline_seconds)
        deadline_at = self._clock() + budget if budget and budget > 0 else None

        def _run(run_id: str) -> dict[str, Any]:
            config = resolve_org_config(self.db.sources, org, self.settings)
            out = self._analyze(
                org, config, self._keyword_set(org), prefer_ids=[], deadline_at=deadline_at, limit=max_batch
            )
            out["remaining"] = self.db.events.count_unanalyzed(org)
            return out

        return self._ledger(org, "analyze", triggered_by, _run)

    # maintenance

    def reset_analysis(
        self, organization_id: str, filter: dict[str, Any] | None = None, *, triggered_by: str = "manual"
    ) -> dict[str, Any]:
        org = self._require_org(organization_id)
        f = dict(filter or {})
        event_ids = f.get("event_ids")
        if event_ids is not None:
            if not isinstance(event_ids, (list, tuple)):
                raise InvalidRequestError("event_ids must be a list")
            try:
                event_ids = [int(x) for x in event_ids]
            except (TypeError, ValueError) as e:
                raise InvalidRequestError("event_ids must be integers") from e
        category = str(f.get("category") or "").strip() or None
        since: str | None = None
        raw_since = str(f.get("since") or "").strip()
        if raw_since:
            parsed = parse_iso(raw_since)
            if parsed is None:
                raise InvalidRequestError(f"since must be an ISO-8601 timestamp: {raw_since!r}")
            since = to_iso(parsed)
        if event_ids is None and category is None and since is None and not bool(f.get("all")):
            raise InvalidRequestError("reset needs event_ids, category, since or all=true")

        def _run(run_id: str) -> dict[str, Any]:
            n = self.db.events.reset_analysis(org, event_ids=event_ids, category=category, since=since)
            logger.info("analysis reset org=%s events=%d", org, n)
            return {"events_reset": n}

        return self._ledger(org, "reset", triggered_by, _run)

    def purge_events(
        self,
        organization_id: str,
        scope: str = "unanalyzed",
        *,
        include_alerts: bool = False,
        triggered_by: str = "manual",
    ) -> dict[str, Any]:
        org = self._require_org(organization_id)
        if scope not in PURGE_SCOPES:
            raise InvalidRequestError(f"scope must be one of {sorted(PURGE_SCOPES)}: {scope!r}")

        def _run(run_id: str) -> dict[str, Any]:
            res = self.db.events.purge(org, scope=scope, include_alerts=include_alerts)
            logger.info(
                "purge org=%s scope=%s events=%d alerts=%d", org, scope, res["events_deleted"], res["alerts_deleted"]
            )
            return res

        return self._ledger(org, "purge", triggered_by, _run)

    def create_test_alert(self, organization_id: str, risk_code: str, *, triggered_by: str = "manual") -> dict[str, Any]:
        org = self._require_org(organization_id)
        code = str(risk_code or "").strip()
        if not code:
            raise InvalidRequestError("risk_code is required")

        def _run(run_id: str) -> dict[str, Any]:
            alert_id = self.db.events.insert_test_alert(
                org, risk_code=code, source_url=f"test://alert/{uuid.uuid4().hex}", now=self._now_iso()
            )
            return {"alert_id": alert_id, "risk_code": code}

        return self._ledger(org, "test-alert", triggered_by, _run)
