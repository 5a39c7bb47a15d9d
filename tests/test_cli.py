from __future__ import annotations

import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from unittest.mock import patch

from _support import make_db, make_pipeline

from risk_intel.workers.cli import main


class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.db = make_db(self._td.name)
        self.pipeline = make_pipeline(self.db, self._td.name)
        self._patch = patch("risk_intel.workers.cli._build_pipeline", return_value=self.pipeline)
        self._patch.start()

    def tearDown(self) -> None:
        self._patch.stop()
        self.db.dispose()
        self._td.cleanup()

    def _main(self, *argv: str) -> tuple[int, dict]:
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = main(list(argv))
        text = out.getvalue().strip()
        return code, (json.loads(text) if text else {})

    def test_usage_and_unknown_command(self) -> None:
        self.assertEqual(self._main()[0], 2)
        self.assertEqual(self._main("explode", "--org", "o")[0], 2)

    def test_org_is_required(self) -> None:
        with patch.dict(os.environ, {"RISK_INTEL_ORG": ""}):
            code, out = self._main("analyze")
        self.assertEqual(code, 2)
        self.assertEqual(out["error_code"], "PIPE_INVALID_REQUEST")

    def test_org_from_environment(self) -> None:
        with patch.dict(os.environ, {"RISK_INTEL_ORG": "org-a"}):
            code, out = self._main("analyze", "--max-batch", "5")
        self.assertEqual(code, 0)
        self.assertEqual(out["events_analyzed"], 0)

    def test_test_alert_then_purge_with_alerts(self) -> None:
        code, out = self._main("test-alert", "--org", "org-a", "--risk-code", "CYB-001")
        self.assertEqual(code, 0)
        self.assertEqual(out["risk_code"], "CYB-001")
        code, out = self._main("purge", "--org", "org-a", "--scope", "all", "--include-alerts")
        self.assertEqual(code, 0)
        self.assertEqual(out["events_deleted"], 1)
        self.assertEqual(out["alerts_deleted"], 1)

    def test_reset_needs_a_filter(self) -> None:
        self.assertEqual(self._main("reset", "--org", "org-a")[0], 2)
        code, out = self._main("reset", "--org", "org-a", "--all")
        self.assertEqual(code, 0)
        self.assertEqual(out["events_reset"], 0)

    def test_bad_number_is_invalid_request(self) -> None:
        code, out = self._main("analyze", "--org", "org-a", "--max-batch", "lots")
        self.assertEqual(code, 2)
        self.assertIn("--max-batch", out["error"])

    def test_sources_lists_defaults(self) -> None:
        code, out = self._main("sources", "--org", "org-a")
        self.assertEqual(code, 0)
        self.assertEqual(out["count"], 9)


if __name__ == "__main__":
    unittest.main()
