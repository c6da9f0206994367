"""
test_reporter.py — Tests for the recovery worklist workbook and config loading.
"""

import sys
from datetime import datetime
from pathlib import Path
from types import SimpleNamespace

import pytest
from openpyxl import load_workbook

sys.path.insert(0, str(Path(__file__).parent.parent))

from revleak.config import DEFAULTS, ledger_base_url, load_config
from revleak.models import LeakStatus, LeakType, Priority
from revleak.reporter import generate_worklist
from revleak.scorer import build_leak_summary, leaks_frame


def _make_leak(**overrides) -> SimpleNamespace:
    base = {
        "id": "leak-1",
        "leak_type": LeakType.MISSING_PAYMENT,
        "status": LeakStatus.DETECTED,
        "priority": Priority.HIGH,
        "amount": 2000.0,
        "currency": "USD",
        "confidence": 90,
        "source_key": "INV-001",
        "aging": 65,
        "detected_at": datetime(2026, 3, 1, 12, 0),
        "root_cause": "Invoice INV-001 is 65 days overdue",
        "description": "Payment missing for invoice INV-001",
        "recommended_action": "Escalate to collections or legal team",
    }
    base.update(overrides)
    return SimpleNamespace(**base)


# ---------------------------------------------------------------------------
# Worklist
# ---------------------------------------------------------------------------

class TestGenerateWorklist:

    @pytest.fixture
    def cfg(self, tmp_path):
        return {
            "paths": {
                "output_dir": str(tmp_path / "out"),
                "report_filename": "recovery_worklist_{date}.xlsx",
            }
        }

    @pytest.fixture
    def leaks(self):
        return leaks_frame([
            _make_leak(),
            _make_leak(id="leak-2", leak_type=LeakType.UNCOLLECTED_RECEIVABLE,
                       priority=Priority.CRITICAL, source_key="INV-001"),
            _make_leak(id="leak-3", leak_type=LeakType.UNDER_BILLING,
                       priority=Priority.MEDIUM, amount=1000.0, aging=None,
                       source_key="CTR-001", confidence=85),
        ])

    def test_writes_workbook_named_after_company(self, cfg, leaks):
        summary = build_leak_summary(leaks)
        path = generate_worklist(leaks, summary, cfg, "Northwind Traders")

        assert path.exists()
        assert path.parent == Path(cfg["paths"]["output_dir"])
        assert path.name.startswith("northwind_traders_recovery_worklist_")
        assert path.suffix == ".xlsx"

    def test_sheets_and_rows(self, cfg, leaks):
        path = generate_worklist(leaks, build_leak_summary(leaks), cfg, "Northwind Traders")
        wb = load_workbook(path)

        assert wb.sheetnames == ["Summary", "Open Leaks"]
        ws = wb["Open Leaks"]
        assert ws.cell(row=1, column=1).value == "Priority"
        assert ws.max_row == 4  # header + 3 leaks
        assert ws.cell(row=2, column=1).value == "critical"
        assert ws.cell(row=2, column=2).value == "Uncollected Receivable"
        assert ws.freeze_panes == "A2"

    def test_summary_sheet_shows_amount_at_risk(self, cfg, leaks):
        path = generate_worklist(leaks, build_leak_summary(leaks), cfg, "Northwind Traders")
        ws = load_workbook(path)["Summary"]
        assert ws["A1"].value == "REVENUE LEAK RECOVERY WORKLIST"
        assert ws.cell(row=4, column=1).value == "AMOUNT AT RISK"
        assert ws.cell(row=5, column=1).value == "USD 5,000.00"


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

class TestLoadConfig:

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_file_values_merge_over_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        path = tmp_path / "config.yaml"
        path.write_text("detection:\n  escalation_days: 45\n")

        cfg = load_config(str(path))

        assert cfg["detection"]["escalation_days"] == 45
        assert cfg["detection"]["aging_threshold_days"] == 60
        assert cfg["paths"]["database_url"] == DEFAULTS["paths"]["database_url"]

    def test_environment_overrides(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("")
        monkeypatch.setenv("LEDGER_CLIENT_ID", "cid")
        monkeypatch.setenv("LEDGER_CLIENT_SECRET", "secret")
        monkeypatch.setenv("LEDGER_ENVIRONMENT", "production")
        monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")

        cfg = load_config(str(path))

        assert cfg["ledger"]["client_id"] == "cid"
        assert cfg["paths"]["database_url"] == "sqlite:///:memory:"
        assert ledger_base_url(cfg) == "https://quickbooks.api.intuit.com"

    def test_unknown_environment_rejected(self):
        cfg = {"ledger": {"environment": "staging", "base_urls": {}}}
        with pytest.raises(ValueError, match="staging"):
            ledger_base_url(cfg)

    def test_defaults_are_not_mutated(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LEDGER_CLIENT_ID", "cid")
        path = tmp_path / "config.yaml"
        path.write_text("")
        load_config(str(path))
        assert "client_id" not in DEFAULTS["ledger"]
