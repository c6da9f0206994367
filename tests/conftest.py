"""
conftest.py — Shared fixtures: in-memory store, fixed clock, record builders
and HTTP fakes.
"""

import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

# Ensure the package is importable from project root
sys.path.insert(0, str(Path(__file__).parent.parent))

from revleak.models import (
    BillingFrequency,
    Company,
    Contract,
    ContractStatus,
    Invoice,
    InvoiceStatus,
)
from revleak.store import init_store
from revleak.sync import derive_invoice_state

NOW = datetime(2026, 3, 1, 12, 0, 0)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, days: int = 0, seconds: int = 0) -> None:
        self.now += timedelta(days=days, seconds=seconds)


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, bad_json: bool = False):
        self.status_code = status_code
        self._payload = payload
        self._bad_json = bad_json

    def json(self) -> Any:
        if self._bad_json:
            raise ValueError("Expecting value")
        return self._payload


class FakeSession:
    """Stands in for requests.Session; replays queued responses or exceptions."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def _next(self, method: str, url: str, **kwargs):
        self.calls.append((method, url, kwargs))
        outcome = self.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def post(self, url: str, **kwargs):
        return self._next("POST", url, **kwargs)

    def get(self, url: str, **kwargs):
        return self._next("GET", url, **kwargs)


class FakeLedgerClient:
    """Returns canned wire records per entity, or raises a queued error."""

    def __init__(self, invoices=None, payments=None, error: Exception | None = None):
        self.records = {"Invoice": invoices or [], "Payment": payments or []}
        self.error = error
        self.queries: list[str] = []

    def query(self, company, entity, max_results=None):
        self.queries.append(entity)
        if self.error is not None:
            raise self.error
        return self.records[entity]


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store():
    return init_store("sqlite:///:memory:")


@pytest.fixture
def company(store):
    with store.transaction() as repo:
        return repo.add(Company(
            name="Northwind Traders",
            domain="northwind.example",
            currency="USD",
            ledger_connected=True,
            ledger_account_id="9130355",
            access_token="access-1",
            refresh_token="refresh-1",
            token_expires_at=NOW + timedelta(hours=1),
        ))


@pytest.fixture
def make_invoice(store, company):
    """Insert an invoice whose balance and status follow the derivation rule."""

    def _make(**overrides) -> Invoice:
        fields = {
            "company_id": company.id,
            "external_id": None,
            "invoice_number": "INV-001",
            "customer_id": "C-1",
            "customer_name": "Acme Corp",
            "amount": 1000.0,
            "total_paid": 0.0,
            "currency": "USD",
            "issue_date": NOW - timedelta(days=40),
            "due_date": NOW - timedelta(days=10),
            "source_system": "quickbooks",
        }
        fields.update(overrides)
        state = derive_invoice_state(
            fields["amount"], fields["total_paid"], fields["due_date"], NOW,
            status=fields.pop("status", InvoiceStatus.SENT),
        )
        fields.setdefault("status", state.status)
        fields["balance"] = state.balance
        with store.transaction() as repo:
            return repo.add(Invoice(**fields))

    return _make


@pytest.fixture
def make_contract(store, company):
    def _make(**overrides) -> Contract:
        fields = {
            "company_id": company.id,
            "contract_number": "CTR-001",
            "client_name": "Acme Corp",
            "status": ContractStatus.ACTIVE,
            "start_date": datetime(2026, 1, 1),
            "end_date": datetime(2026, 3, 31),
            "base_fee": 1000.0,
            "commission_percentage": 10.0,
            "billing_frequency": BillingFrequency.MONTHLY,
        }
        fields.update(overrides)
        with store.transaction() as repo:
            return repo.add(Contract(**fields))

    return _make
