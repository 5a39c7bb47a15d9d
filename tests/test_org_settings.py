from __future__ import annotations

import tempfile
import unittest

from _support import make_db, make_settings

from risk_intel.db.models import RegisterRisk
from risk_intel.errors import InvalidRequestError
from risk_intel.services.org_settings import resolve_org_config, update_org_config
from risk_intel.services.risk_register import SqlRiskRegister


class OrgSettingsTests(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.db = make_db(self._td.name)
        self.defaults = make_settings(self._td.name)

    def tearDown(self) -> None:
        self.db.dispose()
        self._td.cleanup()

    def test_defaults_without_row(self) -> None:
        cfg = resolve_org_config(self.db.sources, "org-a", self.defaults)
        self.assertEqual(cfg.scanner_mode, "ai")
        self.assertEqual(cfg.min_confidence_threshold, 0.6)
        self.assertEqual(cfg.lookback_days, 7)

    def test_partial_update_keeps_other_fields(self) -> None:
        update_org_config(self.db.sources, "org-a", self.defaults, {"min_confidence_threshold": 0.75})
        cfg = update_org_config(self.db.sources, "org-a", self.defaults, {"scanner_mode": "keyword_only"})
        self.assertEqual(cfg.scanner_mode, "keyword-only")
        self.assertEqual(cfg.min_confidence_threshold, 0.75)
        self.assertEqual(resolve_org_config(self.db.sources, "org-b", self.defaults).scanner_mode, "ai")

    def test_invalid_values_are_rejected(self) -> None:
        for changes in ({"scanner_mode": "turbo"}, {"min_confidence_threshold": -0.1}, {"lookback_days": 0}):
            with self.assertRaises(InvalidRequestError):
                update_org_config(self.db.sources, "org-a", self.defaults, changes)


class SqlRiskRegisterTests(unittest.TestCase):
    def test_only_active_risks_of_the_org(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            db = make_db(td)
            with db.session_factory() as s:
                s.add_all(
                    [
                        RegisterRisk(organization_id="org-a", risk_code="REG-002", risk_title="Filings", status="Active"),
                        RegisterRisk(organization_id="org-a", risk_code="CYB-001", risk_title="Ransomware",
                                     category="Cybersecurity", status="active"),
                        RegisterRisk(organization_id="org-a", risk_code="OLD-1", risk_title="Retired", status="closed"),
                        RegisterRisk(organization_id="org-b", risk_code="MKT-9", risk_title="Other org"),
                    ]
                )
                s.commit()
            risks = SqlRiskRegister(db.session_factory).get_active_risks("org-a")
            db.dispose()
        self.assertEqual([r.risk_code for r in risks], ["CYB-001", "REG-002"])
        self.assertEqual(risks[0].category, "Cybersecurity")
        self.assertEqual(risks[1].category, "")


if __name__ == "__main__":
    unittest.main()
