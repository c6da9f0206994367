"""
test_jobs.py — Tests for the per-tenant cycle, multi-tenant runs and the
scheduler's retry loop.
"""

import copy
import logging
import sys
from pathlib import Path

import pytest
import yaml
from sqlalchemy import inspect

sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import FakeLedgerClient
from revleak.config import DEFAULTS
from revleak.detector import LeakDetector
from revleak.errors import AuthError, ValidationError
from revleak.jobs import (
    Services,
    build_services,
    connected_company_ids,
    run_all,
    run_cycle,
)
from revleak.models import Company
from revleak.sync import IngestionPipeline

WIRE_INVOICE = {
    "Id": "101",
    "DocNumber": "1001",
    "TxnDate": "2026-01-20",
    "DueDate": "2026-02-19",
    "TotalAmt": 1000.0,
    "Balance": 1000.0,
    "CustomerRef": {"value": "58", "name": "Acme Corp"},
}


def _services(store, clock, client) -> Services:
    return Services(
        store=store,
        tokens=None,
        client=client,
        pipeline=IngestionPipeline(store, client, clock=clock),
        detector=LeakDetector(store, clock=clock),
    )


# ---------------------------------------------------------------------------
# run_cycle
# ---------------------------------------------------------------------------

class TestRunCycle:

    def test_sync_then_detect(self, store, company, clock):
        services = _services(store, clock, FakeLedgerClient(invoices=[WIRE_INVOICE]))

        summary = run_cycle(services, company.id)

        assert summary["success"] is True
        assert summary["sync"]["success"] is True
        assert summary["sync"]["count"] == 1
        assert summary["sync"]["invoices"]["count"] == 1
        assert summary["sync"]["payments"]["count"] == 0
        assert summary["detect"]["success"] is True
        assert summary["detect"]["count"] == 1
        assert summary["detect"]["missing_payment"]["count"] == 1

    def test_sync_failure_skips_detection(self, store, company, clock):
        client = FakeLedgerClient(error=AuthError("refresh rejected", company.id))
        services = _services(store, clock, client)

        summary = run_cycle(services, company.id)

        assert summary["success"] is False
        assert summary["sync"] == {"success": False, "error": "refresh rejected", "count": 0}
        assert "detect" not in summary

    def test_validation_failure_is_reported(self, store, company, clock):
        bad = {**WIRE_INVOICE, "DueDate": None}
        services = _services(store, clock, FakeLedgerClient(invoices=[bad]))
        summary = run_cycle(services, company.id)
        assert summary["sync"]["success"] is False
        assert "DueDate" in summary["sync"]["error"]

    def test_detect_only_stage(self, store, company, clock):
        client = FakeLedgerClient()
        summary = run_cycle(_services(store, clock, client), company.id, stages=("detect",))
        assert "sync" not in summary
        assert summary["detect"]["count"] == 0
        assert client.queries == []

    def test_failing_rule_marks_cycle_unsuccessful(self, store, company, clock):
        services = _services(store, clock, FakeLedgerClient())

        def boom(repo, company, now):
            raise RuntimeError("boom")

        services.detector.detect_failed_renewals = boom
        summary = run_cycle(services, company.id)

        assert summary["success"] is False
        assert summary["detect"]["success"] is False
        assert summary["detect"]["failed_renewal"]["error"] == "boom"

    def test_unknown_company(self, store, clock):
        summary = run_cycle(_services(store, clock, FakeLedgerClient()), "no-such-id")
        assert summary["success"] is False
        assert "no-such-id" in summary["error"]


# ---------------------------------------------------------------------------
# run_all
# ---------------------------------------------------------------------------

class TestRunAll:

    def test_only_connected_tenants_by_default(self, store, company, clock):
        with store.transaction() as repo:
            repo.add(Company(name="Disconnected", ledger_connected=False))
        assert connected_company_ids(store) == [company.id]

        results = run_all(_services(store, clock, FakeLedgerClient()), max_workers=2)
        assert [r["company_id"] for r in results] == [company.id]

    def test_one_tenant_failure_does_not_stop_others(self, store, company, clock):
        with store.transaction() as repo:
            other = repo.add(Company(name="Other Co", ledger_connected=True,
                                     ledger_account_id="777"))

        class _PerTenantClient(FakeLedgerClient):
            def query(self, company_, entity, max_results=None):
                if company_.id == other.id:
                    raise ValidationError("broken ledger")
                return super().query(company_, entity, max_results)

        services = _services(store, clock, _PerTenantClient(invoices=[WIRE_INVOICE]))
        results = {
            r["company_id"]: r
            for r in run_all(services, [company.id, other.id], max_workers=1)
        }

        assert results[company.id]["success"] is True
        assert results[other.id]["success"] is False

    def test_unexpected_sync_exception_is_contained(self, store, company, clock):
        with store.transaction() as repo:
            other = repo.add(Company(name="Other Co", ledger_connected=True,
                                     ledger_account_id="777"))

        class _PerTenantClient(FakeLedgerClient):
            def query(self, company_, entity, max_results=None):
                if company_.id == other.id:
                    raise RuntimeError("connection pool exhausted")
                return super().query(company_, entity, max_results)

        services = _services(store, clock, _PerTenantClient(invoices=[WIRE_INVOICE]))
        results = {
            r["company_id"]: r
            for r in run_all(services, [company.id, other.id], max_workers=1)
        }

        assert results[company.id]["success"] is True
        assert results[other.id]["success"] is False
        assert results[other.id]["sync"] == {
            "success": False, "error": "connection pool exhausted", "count": 0
        }
        assert "detect" not in results[other.id]

    def test_crashed_cycle_keeps_other_summaries(self, store, company, clock):
        with store.transaction() as repo:
            other = repo.add(Company(name="Other Co", ledger_connected=True,
                                     ledger_account_id="777"))

        services = _services(store, clock, FakeLedgerClient())
        detect_leaks = services.detector.detect_leaks

        def flaky_detect(company_):
            if company_.id == other.id:
                raise RuntimeError("detector crashed")
            return detect_leaks(company_)

        services.detector.detect_leaks = flaky_detect
        results = run_all(services, [company.id, other.id], stages=("detect",), max_workers=1)

        assert [r["company_id"] for r in results] == [company.id, other.id]
        assert results[0]["success"] is True
        assert results[1] == {
            "company_id": other.id, "success": False, "error": "detector crashed"
        }

    def test_no_tenants(self, store, clock):
        assert run_all(_services(store, clock, FakeLedgerClient())) == []


# ---------------------------------------------------------------------------
# Wiring and schema creation
# ---------------------------------------------------------------------------

class TestBuildServices:

    @pytest.fixture
    def cfg(self, tmp_path):
        cfg = copy.deepcopy(DEFAULTS)
        cfg["paths"]["database_url"] = f"sqlite:///{tmp_path / 'revleak.db'}"
        cfg["paths"]["output_dir"] = str(tmp_path / "out")
        return cfg

    def test_does_not_create_tables(self, cfg):
        services = build_services(cfg)
        assert inspect(services.store.engine).get_table_names() == []

    def test_init_db_creates_tables(self, cfg, tmp_path, monkeypatch):
        import main

        monkeypatch.delenv("DATABASE_URL", raising=False)
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.safe_dump(cfg))

        args = main._parse_args(["--config", str(config_path), "--init-db"])
        assert main.run_pipeline(args, logging.getLogger("test")) == 0

        tables = inspect(build_services(cfg).store.engine).get_table_names()
        assert {"companies", "invoices", "payments", "contracts", "leaks"} <= set(tables)


# ---------------------------------------------------------------------------
# Scheduler retry loop
# ---------------------------------------------------------------------------

class TestScheduledCycle:

    def test_retries_only_failed_tenants(self, monkeypatch):
        import scheduler

        calls = []
        outcomes = iter([
            [{"company_id": "a", "success": True}, {"company_id": "b", "success": False}],
            [{"company_id": "b", "success": True}],
        ])

        def fake_run_all(services, company_ids=None, stages=None, max_workers=4):
            calls.append(company_ids)
            return next(outcomes)

        sleeps = []
        monkeypatch.setattr(scheduler, "run_all", fake_run_all)

        results = scheduler.run_scheduled_cycle(
            services=None, max_retries=3, retry_delay=5, sleep=sleeps.append
        )

        assert calls == [None, ["b"]]
        assert sleeps == [5]
        assert {r["company_id"]: r["success"] for r in results} == {"a": True, "b": True}

    def test_gives_up_after_max_retries(self, monkeypatch):
        import scheduler

        monkeypatch.setattr(
            scheduler, "run_all",
            lambda services, company_ids=None, stages=None, max_workers=4: [
                {"company_id": "a", "success": False}
            ],
        )
        sleeps = []
        results = scheduler.run_scheduled_cycle(
            services=None, max_retries=2, retry_delay=1, sleep=sleeps.append
        )
        assert sleeps == [1]
        assert results == [{"company_id": "a", "success": False}]


@pytest.mark.parametrize("stages", [("sync",), ("sync", "detect")])
def test_sync_stage_queries_invoices_before_payments(store, company, clock, stages):
    client = FakeLedgerClient()
    run_cycle(_services(store, clock, client), company.id, stages=stages)
    assert client.queries == ["Invoice", "Payment"]
