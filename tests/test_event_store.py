from __future__ import annotations

import tempfile
import unittest
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from _support import make_db

from risk_intel.core.keywords import FILTER_TOO_OLD, ClassifiedItem
from risk_intel.errors import PipelineFatalError
from risk_intel.services.event_store import DUPLICATE, ERROR, FILTERED, STORED, EventStoreGateway


def _item(url: str = "https://news.test/a", **kw) -> ClassifiedItem:
    base = {
        "title": "Inflation climbs again",
        "summary": "Prices rose for a sixth month.",
        "source_name": "News",
        "source_url": url,
        "published_at": "2026-10-17T00:00:00Z",
        "category": "market",
        "matched_keywords": ["inflation"],
    }
    base.update(kw)
    return ClassifiedItem(**base)


class EventStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.db = make_db(self._td.name)
        self.store = EventStoreGateway(self.db.events, retry_backoff_seconds=0, sleep=lambda _s: None)

    def tearDown(self) -> None:
        self.db.dispose()
        self._td.cleanup()

    def test_first_store_then_duplicate(self) -> None:
        first = self.store.store_if_new("org-a", _item())
        self.assertEqual(first.status, STORED)
        second = self.store.store_if_new("org-a", _item())
        self.assertEqual(second.status, DUPLICATE)
        self.assertEqual(second.event_id, first.event_id)
        self.assertEqual(self.db.events.count_unanalyzed("org-a"), 1)

    def test_same_url_is_independent_per_organization(self) -> None:
        self.assertEqual(self.store.store_if_new("org-a", _item()).status, STORED)
        self.assertEqual(self.store.store_if_new("org-b", _item()).status, STORED)

    def test_stored_event_keeps_fields(self) -> None:
        out = self.store.store_if_new("org-a", _item())
        ev = self.db.events.get_event("org-a", out.event_id)
        self.assertEqual(ev["matched_keywords"], ["inflation"])
        self.assertIsNone(ev["analyzed_at"])
        self.assertIsNone(self.db.events.get_event("org-b", out.event_id))

    def test_filtered_items_are_not_written(self) -> None:
        out = self.store.store_if_new("org-a", _item(filter_reason=FILTER_TOO_OLD))
        self.assertEqual(out.status, FILTERED)
        self.assertEqual(out.reason, FILTER_TOO_OLD)
        self.assertEqual(self.store.store_if_new("org-a", _item(url="")).reason, "no_link")
        self.assertEqual(self.db.events.count_unanalyzed("org-a"), 0)

    def test_insert_race_reports_duplicate(self) -> None:
        self.store.store_if_new("org-a", _item())
        with patch.object(self.db.events, "find_by_url", return_value=None):
            out = self.store.store_if_new("org-a", _item())
        self.assertEqual(out.status, DUPLICATE)
        self.assertEqual(self.db.events.count_unanalyzed("org-a"), 1)

    def test_write_failure_retried_once_then_error(self) -> None:
        boom = OperationalError("INSERT", {}, Exception("disk I/O error"))
        with patch.object(self.db.events, "insert_event", side_effect=boom) as ins:
            out = self.store.store_if_new("org-a", _item())
        self.assertEqual(out.status, ERROR)
        self.assertEqual(ins.call_count, 2)

    def test_unreachable_store_is_fatal(self) -> None:
        boom = OperationalError("SELECT", {}, Exception("unable to open database file"))
        with patch.object(self.db.events, "find_by_url", side_effect=boom):
            with self.assertRaises(PipelineFatalError):
                self.store.store_if_new("org-a", _item())


if __name__ == "__main__":
    unittest.main()
