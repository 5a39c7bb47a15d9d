from __future__ import annotations

import tempfile
import unittest
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from _support import make_db

from risk_intel.core.keywords import ClassifiedItem
from risk_intel.errors import PersistenceError
from risk_intel.services.alert_publisher import AlertPublisher, alerts_for
from risk_intel.services.event_store import EventStoreGateway
from risk_intel.services.relevance_analyzer import RelevanceJudgement


def _judgement(confidence: float, codes=("CYB-001", "REG-002")) -> RelevanceJudgement:
    return RelevanceJudgement(
        relevant=True,
        matched_risk_codes=list(codes),
        confidence=confidence,
        likelihood_delta=1,
        reasoning="Breach at a peer bank",
        impact_assessment="Similar exposure",
        suggested_controls=["Review backups"],
    )


class AlertsForTests(unittest.TestCase):
    def test_below_threshold_creates_nothing(self) -> None:
        self.assertEqual(alerts_for(_judgement(0.59), 0.6), [])

    def test_at_threshold_creates_one_per_code(self) -> None:
        rows = alerts_for(_judgement(0.6), 0.6)
        self.assertEqual([r["risk_code"] for r in rows], ["CYB-001", "REG-002"])
        self.assertEqual(rows[0]["suggested_controls"], ["Review backups"])

    def test_irrelevant_creates_nothing(self) -> None:
        j = _judgement(0.9)
        j.relevant = False
        self.assertEqual(alerts_for(j, 0.1), [])

    def test_repeated_codes_collapse(self) -> None:
        self.assertEqual(len(alerts_for(_judgement(0.9, codes=("CYB-001", "CYB-001")), 0.6)), 1)


class AlertPublisherTests(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.db = make_db(self._td.name)
        self.publisher = AlertPublisher(self.db.events, retry_backoff_seconds=0, sleep=lambda _s: None)
        out = EventStoreGateway(self.db.events).store_if_new(
            "org-a",
            ClassifiedItem(
                title="Bank hit by ransomware",
                summary="",
                source_name="News",
                source_url="https://news.test/r",
                published_at="2026-10-17T00:00:00Z",
                category="cybersecurity",
                matched_keywords=["ransomware"],
            ),
        )
        self.event = self.db.events.get_event("org-a", out.event_id)

    def tearDown(self) -> None:
        self.db.dispose()
        self._td.cleanup()

    def test_publish_creates_alerts_and_marks_analyzed(self) -> None:
        self.assertEqual(self.publisher.publish("org-a", self.event, _judgement(0.8), 0.6), 2)
        self.assertIsNotNone(self.db.events.get_event("org-a", self.event["id"])["analyzed_at"])
        alerts = self.db.events.list_alerts("org-a", event_id=self.event["id"])
        self.assertEqual({a["status"] for a in alerts}, {"pending"})

    def test_below_threshold_still_marks_analyzed(self) -> None:
        self.assertEqual(self.publisher.publish("org-a", self.event, _judgement(0.3), 0.6), 0)
        self.assertEqual(self.db.events.count_unanalyzed("org-a"), 0)

    def test_republish_does_not_duplicate(self) -> None:
        self.publisher.publish("org-a", self.event, _judgement(0.8), 0.6)
        self.db.events.reset_analysis("org-a", event_ids=[self.event["id"]])
        self.assertEqual(self.publisher.publish("org-a", self.event, _judgement(0.8, codes=("CYB-001", "OPS-3")), 0.6), 1)
        codes = sorted(a["risk_code"] for a in self.db.events.list_alerts("org-a"))
        self.assertEqual(codes, ["CYB-001", "OPS-3", "REG-002"])

    def test_second_failure_raises_and_leaves_backlog(self) -> None:
        boom = OperationalError("INSERT", {}, Exception("database is locked"))
        with patch.object(self.db.events, "publish", side_effect=boom) as pub:
            with self.assertRaises(PersistenceError):
                self.publisher.publish("org-a", self.event, _judgement(0.8), 0.6)
        self.assertEqual(pub.call_count, 2)
        self.assertEqual(self.db.events.count_unanalyzed("org-a"), 1)


if __name__ == "__main__":
    unittest.main()
