"""
ledger_client.py — Read client for the external accounting ledger.

Issues one bounded query per call:

    GET {base_url}/v3/company/{account_id}/query
        ?query=SELECT * FROM {Invoice|Payment} MAXRESULTS {n}

and unwraps `QueryResponse.{Entity}`. The ledger truncates at `n`; there is
no cursoring beyond that single page.

The module-level `map_invoice` / `map_payment` functions turn wire objects
into the canonical field dicts the ingestion pipeline persists.
"""

import logging
from datetime import datetime
from typing import Any

import requests

from revleak.auth import TokenManager
from revleak.config import ledger_base_url
from revleak.errors import LedgerError, ValidationError
from revleak.models import Company, InvoiceStatus, PaymentMethod, PaymentStatus

logger = logging.getLogger(__name__)

SUPPORTED_ENTITIES = frozenset({"Invoice", "Payment"})
SOURCE_SYSTEM = "quickbooks"
PAYMENT_ID_PREFIX = "EXT-"


class LedgerClient:
    """Authenticated, bounded read queries against a tenant's ledger account."""

    def __init__(
        self,
        token_manager: TokenManager,
        base_url: str,
        max_results: int = 1000,
        timeout: float = 30,
        minor_version: int | None = None,
        session: requests.Session | None = None,
    ):
        self.token_manager = token_manager
        self.base_url = base_url.rstrip("/")
        self.max_results = max_results
        self.timeout = timeout
        self.minor_version = minor_version
        self.session = session or requests.Session()

    @classmethod
    def from_config(
        cls,
        cfg: dict[str, Any],
        token_manager: TokenManager,
        session: requests.Session | None = None,
    ) -> "LedgerClient":
        ledger_cfg = cfg["ledger"]
        return cls(
            token_manager=token_manager,
            base_url=ledger_base_url(cfg),
            max_results=ledger_cfg.get("max_results", 1000),
            timeout=ledger_cfg.get("timeout_seconds", 30),
            minor_version=ledger_cfg.get("minor_version"),
            session=session,
        )

    def query(
        self,
        company: Company,
        entity: str,
        max_results: int | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch up to `max_results` raw `entity` records for a tenant.

        Args:
            company: Tenant whose ledger account is queried.
            entity: "Invoice" or "Payment".
            max_results: Page bound; defaults to the client's configured limit.

        Returns:
            List of wire objects exactly as returned by the ledger.

        Raises:
            AuthError: If no valid access token can be obtained.
            LedgerError: On transport failure, timeout, non-2xx or non-JSON body.
        """
        if entity not in SUPPORTED_ENTITIES:
            raise ValueError(f"Unsupported ledger entity: {entity!r}")
        if not company.ledger_account_id:
            raise LedgerError(f"Company {company.id} has no ledger account id")

        access_token = self.token_manager.get_valid_access_token(company)
        limit = max_results or self.max_results

        params: dict[str, Any] = {"query": f"SELECT * FROM {entity} MAXRESULTS {limit}"}
        if self.minor_version:
            params["minorversion"] = self.minor_version
        url = f"{self.base_url}/v3/company/{company.ledger_account_id}/query"

        try:
            response = self.session.get(
                url,
                params=params,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise LedgerError(f"{entity} query failed: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise LedgerError(
                f"{entity} query returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise LedgerError(f"{entity} query returned a non-JSON body") from exc

        records = (body.get("QueryResponse") or {}).get(entity) or []
        logger.info(
            "Fetched %d %s records for company %s", len(records), entity, company.id
        )
        if len(records) >= limit:
            logger.warning(
                "%s query for company %s hit the %d-record limit; results are truncated",
                entity, company.id, limit,
            )
        return records


# ---------------------------------------------------------------------------
# Wire → canonical mapping
# ---------------------------------------------------------------------------

def map_invoice_status(balance: Any, total: Any) -> InvoiceStatus:
    """Ledger-side status: paid when nothing is owed, partial below total."""
    bal = _to_float(balance or 0)
    tot = _to_float(total or 0)
    if bal <= 0:
        return InvoiceStatus.PAID
    if bal < tot:
        return InvoiceStatus.PARTIAL
    return InvoiceStatus.SENT


def map_payment_method(name: str | None) -> PaymentMethod:
    """Classify a free-text payment method name by substring."""
    method = (name or "").lower()
    if "ach" in method or "bank" in method:
        return PaymentMethod.ACH
    if "wire" in method:
        return PaymentMethod.WIRE
    if "check" in method:
        return PaymentMethod.CHECK
    return PaymentMethod.OTHER


def map_invoice(wire: dict[str, Any]) -> dict[str, Any]:
    """Map a ledger Invoice object to canonical invoice fields.

    `balance` and `status` here are the ledger's view; the ingestion
    pipeline re-derives both before persisting.

    Raises:
        ValidationError: If Id / TxnDate / DueDate are missing, a numeric
            field cannot be parsed, or a nested ref or line is not an object.
    """
    external_id = _require_id(wire, "Invoice")
    amount = _to_float(wire.get("TotalAmt") or 0, external_id)
    balance = _to_float(wire.get("Balance") or 0, external_id)
    customer = _object(wire, "CustomerRef", external_id)

    return {
        "external_id": external_id,
        "invoice_number": wire.get("DocNumber"),
        "customer_id": customer.get("value"),
        "customer_name": customer.get("name"),
        "amount": amount,
        "currency": _object(wire, "CurrencyRef", external_id).get("value") or "USD",
        "issue_date": _parse_date(wire.get("TxnDate"), "TxnDate", external_id),
        "due_date": _parse_date(wire.get("DueDate"), "DueDate", external_id),
        "total_paid": amount - balance,
        "balance": balance,
        "status": map_invoice_status(balance, amount),
        "line_items": [
            _map_line(line, external_id) for line in _objects(wire, "Line", external_id)
        ],
        "source_system": SOURCE_SYSTEM,
    }


def map_payment(wire: dict[str, Any]) -> dict[str, Any]:
    """Map a ledger Payment object to canonical payment fields.

    The returned dict carries `linked_txn_id` (first linked transaction of
    the first line, or None), which the pipeline resolves to an invoice.

    Raises:
        ValidationError: If Id / TxnDate are missing, TotalAmt is unparseable,
            or a nested ref or line is not an object.
    """
    external_id = _require_id(wire, "Payment")
    customer = _object(wire, "CustomerRef", external_id)

    linked_txn_id = None
    lines = _objects(wire, "Line", external_id)
    if lines:
        linked = _objects(lines[0], "LinkedTxn", external_id)
        if linked:
            linked_txn_id = linked[0].get("TxnId")

    return {
        "external_id": external_id,
        "payment_id": f"{PAYMENT_ID_PREFIX}{external_id}",
        "customer_id": customer.get("value"),
        "customer_name": customer.get("name"),
        "amount": _to_float(wire.get("TotalAmt") or 0, external_id),
        "currency": _object(wire, "CurrencyRef", external_id).get("value") or "USD",
        "payment_date": _parse_date(wire.get("TxnDate"), "TxnDate", external_id),
        "method": map_payment_method(
            _object(wire, "PaymentMethodRef", external_id).get("name")
        ),
        "status": PaymentStatus.COMPLETED,
        "reference": wire.get("PaymentRefNum"),
        "source_system": SOURCE_SYSTEM,
        "linked_txn_id": linked_txn_id,
    }


def _map_line(line: dict[str, Any], record_id: str) -> dict[str, Any]:
    detail = _object(line, "SalesItemLineDetail", record_id)
    return {
        "description": line.get("Description"),
        "quantity": detail.get("Qty"),
        "unit_price": detail.get("UnitPrice"),
        "amount": _to_float(line.get("Amount") or 0, record_id),
    }


def _require_id(wire: dict[str, Any], entity: str) -> str:
    if not isinstance(wire, dict):
        raise ValidationError(f"{entity} record is not an object: {wire!r}")
    record_id = wire.get("Id")
    if record_id in (None, ""):
        raise ValidationError(f"{entity} record has no Id")
    return str(record_id)


def _object(parent: dict[str, Any], field: str, record_id: str) -> dict[str, Any]:
    """Nested reference object, or {} when absent."""
    value = parent.get(field)
    if not value:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(
            f"Record {record_id} has malformed {field}: {value!r}", record_id
        )
    return value


def _objects(parent: dict[str, Any], field: str, record_id: str) -> list[dict[str, Any]]:
    """List of nested objects, or [] when absent."""
    value = parent.get(field)
    if not value:
        return []
    if not isinstance(value, list) or not all(isinstance(v, dict) for v in value):
        raise ValidationError(
            f"Record {record_id} has malformed {field}: {value!r}", record_id
        )
    return value


def _to_float(value: Any, record_id: str | None = None) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Not a number: {value!r}", record_id) from None


def _parse_date(value: Any, field: str, record_id: str) -> datetime:
    if not value:
        raise ValidationError(f"Record {record_id} is missing {field}", record_id)
    try:
        return datetime.strptime(str(value)[:10], "%Y-%m-%d")
    except ValueError:
        raise ValidationError(
            f"Record {record_id} has invalid {field}: {value!r}", record_id
        ) from None
