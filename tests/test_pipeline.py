from __future__ import annotations

import tempfile
import unittest
from unittest.mock import patch
from urllib.error import URLError

from sqlalchemy.exc import OperationalError

from _support import SCENARIO_A_ITEM, StubModel, _Resp, make_db, make_pipeline, make_settings, rss

from risk_intel.errors import InvalidRequestError, RunLockError
from risk_intel.services.risk_register import StaticRiskRegister
from risk_intel.services.run_lock import acquire_run_lock, lock_path_for


ORG = "org-a"
NOW = "2026-10-18T00:00:00Z"
FEED_URL = "https://news.test/rss"


class _ClockModel:
    """Model stand-in whose every call costs `step` seconds on a shared fake clock."""

    def __init__(self, clock: list[float], step: float) -> None:
        self.clock = clock
        self.step = step
        self.calls = 0

    def complete(self, prompt: str) -> str:
        self.calls += 1
        self.clock[0] += self.step
        return '{"relevant": true, "risk_codes": ["FIN-MKT-001"], "confidence": 0.9, "likelihood_change": 1}'


class PipelineTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.td = self._td.name
        self.db = make_db(self.td)
        self.db.sources.upsert_source(
            {"name": "News", "url": FEED_URL, "category": "market"}, organization_id=None, now=NOW
        )

    def tearDown(self) -> None:
        self.db.dispose()
        self._td.cleanup()

    def _serve(self, mock_urlopen, items: list[dict]) -> None:
        body = rss(items)
        mock_urlopen.side_effect = lambda req, timeout=None: _Resp(body)

    def _run(self, run_id: str) -> dict:
        return next(r for r in self.db.runs.recent_runs(ORG, limit=50) if r["run_id"] == run_id)


class FullScanTests(PipelineTestCase):
    @patch("risk_intel.services.feed_fetcher.urlopen")
    def test_rate_hike_creates_one_fallback_alert(self, mock_urlopen) -> None:
        self._serve(mock_urlopen, [SCENARIO_A_ITEM])
        out = make_pipeline(self.db, self.td).run_full_scan(ORG)

        self.assertEqual(out["feeds_processed"], 1)
        self.assertEqual(out["items_stored"], 1)
        self.assertEqual(out["events_analyzed"], 1)
        self.assertEqual(out["fallback_judgements"], 1)
        self.assertEqual(out["alerts_created"], 1)
        self.assertEqual(out["per_source_errors"], [])

        alerts = self.db.events.list_alerts(ORG)
        self.assertEqual(len(alerts), 1)
        self.assertEqual(alerts[0]["risk_code"], "FIN-MKT-001")
        self.assertEqual(alerts[0]["confidence_score"], 0.5)
        self.assertEqual(alerts[0]["judgement_source"], "keyword-fallback")
        self.assertIn("interest rate", alerts[0]["reasoning"])
        self.assertEqual(self.db.events.count_unanalyzed(ORG), 0)

        run = self._run(out["run_id"])
        self.assertEqual(run["operation"], "scan")
        self.assertEqual(run["status"], "success")
        self.assertEqual(run["summary"]["items_stored"], 1)
        fetches = self.db.runs.fetch_events(out["run_id"])
        self.assertEqual([f["status"] for f in fetches], ["success"])
        src = self.db.sources.list_sources(None)[0]
        self.assertEqual(src["last_scan_status"], "success")
        self.assertEqual(src["events_count"], 1)

    @patch("risk_intel.services.feed_fetcher.urlopen")
    def test_stale_item_is_not_stored(self, mock_urlopen) -> None:
        self._serve(mock_urlopen, [dict(SCENARIO_A_ITEM, age_days=10)])
        out = make_pipeline(self.db, self.td).run_full_scan(ORG)
        self.assertEqual(out["items_stored"], 0)
        self.assertEqual(out["items_filtered"], 1)
        self.assertEqual(self.db.events.list_events(ORG), [])

    @patch("risk_intel.services.feed_fetcher.urlopen")
    def test_second_run_reports_duplicate(self, mock_urlopen) -> None:
        self._serve(mock_urlopen, [SCENARIO_A_ITEM])
        pipeline = make_pipeline(self.db, self.td)
        pipeline.run_full_scan(ORG)
        out = pipeline.run_full_scan(ORG)
        self.assertEqual(out["items_stored"], 0)
        self.assertEqual(out["items_duplicate"], 1)
        self.assertEqual(out["alerts_created"], 0)
        self.assertEqual(len(self.db.events.list_alerts(ORG)), 1)

    @patch("risk_intel.services.feed_fetcher.urlopen")
    def test_failing_source_does_not_stop_the_run(self, mock_urlopen) -> None:
        self.db.sources.upsert_source(
            {"name": "Broken", "url": "https://broken.test/rss"}, organization_id=None, now=NOW
        )
        body = rss([SCENARIO_A_ITEM])

        def _open(req, timeout=None):
            if "broken" in req.full_url:
                raise URLError("connection refused")
            return _Resp(body)

        mock_urlopen.side_effect = _open
        out = make_pipeline(self.db, self.td).run_full_scan(ORG)
        self.assertEqual(out["feeds_processed"], 2)
        self.assertEqual(out["items_stored"], 1)
        self.assertEqual(len(out["per_source_errors"]), 1)
        err = out["per_source_errors"][0]
        self.assertEqual(err["source"], "Broken")
        self.assertEqual(err["error_type"], "network_error")
        self.assertEqual(self._run(out["run_id"])["status"], "partial")

    @patch("risk_intel.services.feed_fetcher.urlopen")
    def test_model_judgement_respects_org_threshold(self, mock_urlopen) -> None:
        self._serve(mock_urlopen, [SCENARIO_A_ITEM])
        model = StubModel({"relevant": True, "risk_codes": ["FIN-MKT-001"], "confidence": 0.55})
        out = make_pipeline(self.db, self.td, model_client=model).run_full_scan(ORG)
        self.assertEqual(out["model_judgements"], 1)
        self.assertEqual(out["alerts_created"], 0)
        self.assertEqual(self.db.events.count_unanalyzed(ORG), 0)
        self.assertEqual(len(model.prompts), 1)

    @patch("risk_intel.services.feed_fetcher.urlopen")
    def test_keyword_only_mode_skips_model(self, mock_urlopen) -> None:
        self._serve(mock_urlopen, [SCENARIO_A_ITEM])
        self.db.sources.upsert_settings(
            ORG, scanner_mode="keyword-only", min_confidence_threshold=0.6, lookback_days=7, now=NOW
        )
        model = StubModel({"relevant": True, "risk_codes": ["CYB-001"], "confidence": 0.9})
        out = make_pipeline(self.db, self.td, model_client=model).run_full_scan(ORG)
        self.assertEqual(model.prompts, [])
        self.assertEqual(out["fallback_judgements"], 1)

    @patch("risk_intel.services.feed_fetcher.urlopen")
    def test_no_active_risks_leaves_backlog(self, mock_urlopen) -> None:
        self._serve(mock_urlopen, [SCENARIO_A_ITEM])
        out = make_pipeline(self.db, self.td, register=StaticRiskRegister({})).run_full_scan(ORG)
        self.assertEqual(out["items_stored"], 1)
        self.assertEqual(out["skipped_reason"], "no_active_risks")
        self.assertEqual(out["events_analyzed"], 0)
        self.assertEqual(self.db.events.count_unanalyzed(ORG), 1)

    @patch("risk_intel.services.feed_fetcher.urlopen")
    def test_malformed_model_answer_falls_back_without_aborting(self, mock_urlopen) -> None:
        self._serve(mock_urlopen, [SCENARIO_A_ITEM])
        model = StubModel({"relevant": True, "risk_codes": 5, "confidence": 0.9})
        out = make_pipeline(self.db, self.td, model_client=model).run_full_scan(ORG)
        self.assertEqual(out["model_judgements"], 0)
        self.assertEqual(out["fallback_judgements"], 1)
        self.assertEqual(out["alerts_created"], 1)
        self.assertEqual(self._run(out["run_id"])["status"], "success")

    @patch("risk_intel.services.feed_fetcher.urlopen")
    def test_org_keyword_admits_item(self, mock_urlopen) -> None:
        item = {
            "title": "Cassava harvest shortfall hits agro exporters",
            "link": "https://news.test/cassava",
            "description": "",
            "age_days": 1,
        }
        self._serve(mock_urlopen, [item])
        pipeline = make_pipeline(self.db, self.td)
        self.assertEqual(pipeline.run_full_scan("org-b")["items_filtered"], 1)

        self.db.sources.upsert_keyword(organization_id=ORG, category="strategic", keyword="Cassava", active=True, now=NOW)
        out = pipeline.run_full_scan(ORG)
        self.assertEqual(out["items_stored"], 1)
        self.assertEqual(self.db.events.list_events(ORG)[0]["matched_keywords"], ["cassava"])

    @patch("risk_intel.services.feed_fetcher.urlopen")
    def test_same_story_from_two_links_is_analyzed_once(self, mock_urlopen) -> None:
        again = dict(SCENARIO_A_ITEM, link="https://news.test/cbn-rates-wire",
                     title="Central Bank raises interest rates amid inflation concerns again")
        self._serve(mock_urlopen, [SCENARIO_A_ITEM, again])
        out = make_pipeline(self.db, self.td).run_full_scan(ORG)
        self.assertEqual(out["items_stored"], 2)
        self.assertEqual(out["events_analyzed"], 1)
        self.assertEqual(out["events_deduplicated"], 1)
        self.assertEqual(out["alerts_created"], 1)
        self.assertEqual(self.db.events.count_unanalyzed(ORG), 0)

    @patch("risk_intel.services.feed_fetcher.urlopen")
    def test_title_dedup_can_be_switched_off(self, mock_urlopen) -> None:
        again = dict(SCENARIO_A_ITEM, link="https://news.test/cbn-rates-wire")
        self._serve(mock_urlopen, [SCENARIO_A_ITEM, again])
        settings = make_settings(self.td, dedup_similarity=0.0)
        out = make_pipeline(self.db, self.td, settings=settings).run_full_scan(ORG)
        self.assertEqual(out["events_analyzed"], 2)
        self.assertEqual(out["events_deduplicated"], 0)
        self.assertEqual(out["alerts_created"], 2)

    @patch("risk_intel.services.feed_fetcher.urlopen")
    def test_low_scoring_events_skip_analysis(self, mock_urlopen) -> None:
        low = {"title": "Weekly trading note", "link": "https://news.test/note", "description": "", "age_days": 4}
        critical = {"title": "Ransomware hits regional lender", "link": "https://news.test/rw", "description": "",
                    "age_days": 4}
        self._serve(mock_urlopen, [SCENARIO_A_ITEM, low, critical])
        model = StubModel({"relevant": True, "risk_codes": ["FIN-MKT-001"], "confidence": 0.9})
        settings = make_settings(self.td, prefilter_min_score=30)
        out = make_pipeline(self.db, self.td, model_client=model, settings=settings).run_full_scan(ORG)
        self.assertEqual(out["items_stored"], 3)
        self.assertEqual(out["events_prefiltered"], 1)
        self.assertEqual(out["events_analyzed"], 2)
        self.assertEqual(len(model.prompts), 2)
        self.assertNotIn("Weekly trading note", "".join(model.prompts))
        self.assertEqual(self.db.events.count_unanalyzed(ORG), 0)

    @patch("risk_intel.services.feed_fetcher.urlopen")
    def test_deadline_stops_analysis_between_events(self, mock_urlopen) -> None:
        self._serve(
            mock_urlopen,
            [
                {"title": title, "link": f"https://news.test/i{i}", "description": "", "age_days": 1}
                for i, title in enumerate(
                    ["Inflation climbs past forecasts", "Bond market sells off", "Currency weakens on reserves drop"]
                )
            ],
        )
        clock = [0.0]
        model = _ClockModel(clock, step=6.0)
        pipeline = make_pipeline(self.db, self.td, model_client=model, clock=lambda: clock[0])
        out = pipeline.run_full_scan(ORG, deadline_seconds=10)
        self.assertEqual(out["items_stored"], 3)
        self.assertEqual(out["events_analyzed"], 2)
        self.assertTrue(out["stopped_early"])
        self.assertEqual(model.calls, 2)
        self.assertEqual(self.db.events.count_unanalyzed(ORG), 1)

        rest = pipeline.analyze_backlog(ORG)
        self.assertEqual(rest["events_analyzed"], 1)
        self.assertEqual(rest["remaining"], 0)

    @patch("risk_intel.services.feed_fetcher.urlopen")
    def test_publish_failure_keeps_event_pending(self, mock_urlopen) -> None:
        self._serve(mock_urlopen, [SCENARIO_A_ITEM])
        boom = OperationalError("INSERT", {}, Exception("database is locked"))
        with patch.object(self.db.events, "publish", side_effect=boom):
            out = make_pipeline(self.db, self.td).run_full_scan(ORG)
        self.assertEqual(out["items_stored"], 1)
        self.assertEqual(out["events_analyzed"], 0)
        self.assertEqual(len(out["per_event_errors"]), 1)
        self.assertEqual(self.db.events.count_unanalyzed(ORG), 1)
        self.assertEqual(self._run(out["run_id"])["status"], "partial")

    def test_scan_refused_while_lock_held(self) -> None:
        pipeline = make_pipeline(self.db, self.td)
        lock = lock_path_for(pipeline.settings.lock_dir, ORG)
        with acquire_run_lock(lock, run_id="other", purpose="scan"):
            with self.assertRaises(RunLockError):
                pipeline.run_full_scan(ORG)
        runs = self.db.runs.recent_runs(ORG)
        self.assertEqual([r["status"] for r in runs], ["failed"])
        self.assertIn("PIPE_RUN_LOCKED", runs[0]["summary"]["error"])

    def test_blank_org_is_rejected(self) -> None:
        with self.assertRaises(InvalidRequestError):
            make_pipeline(self.db, self.td).run_full_scan("  ")


class MaintenanceTests(PipelineTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.pipeline = make_pipeline(self.db, self.td)
        with patch("risk_intel.services.feed_fetcher.urlopen") as mock_urlopen:
            self._serve(mock_urlopen, [SCENARIO_A_ITEM])
            self.pipeline.run_full_scan(ORG)

    def test_reset_then_reanalyze_does_not_duplicate_alerts(self) -> None:
        res = self.pipeline.reset_analysis(ORG, {"all": True})
        self.assertEqual(res["events_reset"], 1)
        out = self.pipeline.analyze_backlog(ORG, 10)
        self.assertEqual(out["events_analyzed"], 1)
        self.assertEqual(out["alerts_created"], 0)
        self.assertEqual(out["remaining"], 0)
        self.assertEqual(len(self.db.events.list_alerts(ORG)), 1)

    def test_reset_by_category_and_ids(self) -> None:
        self.assertEqual(self.pipeline.reset_analysis(ORG, {"category": "cybersecurity"})["events_reset"], 0)
        ev_id = self.db.events.list_events(ORG)[0]["id"]
        self.assertEqual(self.pipeline.reset_analysis(ORG, {"event_ids": [ev_id]})["events_reset"], 1)

    def test_reset_since_is_compared_in_utc(self) -> None:
        # the event was published at 2026-10-17T02:00:00Z
        self.assertEqual(self.pipeline.reset_analysis(ORG, {"since": "2026-10-17T04:00:00+01:00"})["events_reset"], 0)
        self.assertEqual(self.pipeline.reset_analysis(ORG, {"since": "2026-10-17T03:00:00+01:00"})["events_reset"], 1)

    def test_reset_rejects_unparseable_since(self) -> None:
        with self.assertRaises(InvalidRequestError):
            self.pipeline.reset_analysis(ORG, {"since": "yesterday"})
        self.assertEqual(self.db.events.count_unanalyzed(ORG), 0)

    def test_reset_without_filter_is_rejected(self) -> None:
        with self.assertRaises(InvalidRequestError):
            self.pipeline.reset_analysis(ORG, {})
        with self.assertRaises(InvalidRequestError):
            self.pipeline.reset_analysis(ORG, {"event_ids": ["x"]})

    def test_analyze_rejects_zero_batch(self) -> None:
        with self.assertRaises(InvalidRequestError):
            self.pipeline.analyze_backlog(ORG, 0)

    def test_purge_scopes(self) -> None:
        self.assertEqual(self.pipeline.purge_events(ORG)["events_deleted"], 0)
        res = self.pipeline.purge_events(ORG, "all")
        self.assertEqual(res["events_deleted"], 1)
        self.assertEqual(res["alerts_deleted"], 0)
        self.assertIn("run_id", res)
        self.assertEqual(len(self.db.events.list_alerts(ORG)), 1)

    def test_purge_with_alerts(self) -> None:
        res = self.pipeline.purge_events(ORG, "all", include_alerts=True)
        self.assertEqual((res["events_deleted"], res["alerts_deleted"]), (1, 1))
        self.assertEqual(self.db.events.list_alerts(ORG), [])

    def test_event_ids_are_not_reused_after_purge(self) -> None:
        old_id = self.db.events.list_alerts(ORG)[0]["event_id"]
        self.pipeline.purge_events(ORG, "all")
        item = {
            "title": "Exchange rate slides as bond yields climb",
            "link": "https://news.test/fx-slide",
            "description": "The currency weakened against the dollar.",
            "age_days": 1,
        }
        with patch("risk_intel.services.feed_fetcher.urlopen") as mock_urlopen:
            self._serve(mock_urlopen, [item])
            out = self.pipeline.run_full_scan(ORG)
        self.assertEqual(out["items_stored"], 1)
        self.assertEqual(out["alerts_created"], 1)
        new_id = self.db.events.list_events(ORG)[0]["id"]
        self.assertGreater(new_id, old_id)
        self.assertEqual(len(self.db.events.list_alerts(ORG)), 2)

    def test_purge_rejects_unknown_scope(self) -> None:
        with self.assertRaises(InvalidRequestError):
            self.pipeline.purge_events(ORG, "everything")

    def test_test_alert(self) -> None:
        res = self.pipeline.create_test_alert(ORG, "CYB-001")
        alert = self.db.events.list_alerts(ORG, status="pending")[0]
        self.assertEqual(alert["id"], res["alert_id"])
        self.assertEqual(alert["judgement_source"], "test")
        ev = self.db.events.get_event(ORG, alert["event_id"])
        self.assertTrue(ev["source_url"].startswith("test://alert/"))
        self.assertIsNotNone(ev["analyzed_at"])

    def test_every_operation_is_in_the_ledger(self) -> None:
        self.pipeline.analyze_backlog(ORG)
        self.pipeline.reset_analysis(ORG, {"all": True})
        self.pipeline.purge_events(ORG)
        self.pipeline.create_test_alert(ORG, "CYB-001")
        ops = sorted(r["operation"] for r in self.db.runs.recent_runs(ORG, limit=50))
        self.assertEqual(ops, ["analyze", "purge", "reset", "scan", "test-alert"])


if __name__ == "__main__":
    unittest.main()
