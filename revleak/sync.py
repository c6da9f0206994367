"""
sync.py — Idempotent ingestion of ledger invoices and payments.

Each ledger record is mapped and upserted by (company_id, external_id):
inserted when absent, every mapped field overwritten when present. Running
a sync twice against unchanged ledger data leaves the stored records as
they were.

A sync call runs inside one database transaction. The tenant's
`last_sync_at` marker is advanced in that same transaction, so an error on
any record rolls back the whole batch and leaves the marker untouched.
With `skip_invalid_records` enabled, records that fail mapping are logged,
counted in `failed`, and skipped while the rest commit.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, NamedTuple

from revleak.errors import ValidationError
from revleak.ledger_client import LedgerClient, map_invoice, map_payment
from revleak.models import Company, InvoiceStatus, utcnow
from revleak.store import Repository, Store

logger = logging.getLogger(__name__)


class InvoiceState(NamedTuple):
    status: InvoiceStatus
    balance: float


def derive_invoice_state(
    amount: float,
    total_paid: float,
    due_date: datetime,
    now: datetime,
    status: InvoiceStatus = InvoiceStatus.SENT,
) -> InvoiceState:
    """Recompute balance and status from amounts and the due date.

    balance = amount - total_paid, then the first matching rule wins:
        paid     if balance <= 0
        partial  if 0 < balance < amount and total_paid > 0
        overdue  if past due with balance > 0
        otherwise `status` is kept

    Args:
        amount: Invoice total.
        total_paid: Sum received against the invoice.
        due_date: Payment due date.
        now: Evaluation time.
        status: Current status, returned when no rule applies.

    Returns:
        InvoiceState(status, balance).
    """
    balance = amount - total_paid
    if balance <= 0:
        return InvoiceState(InvoiceStatus.PAID, balance)
    if total_paid > 0 and balance < amount:
        return InvoiceState(InvoiceStatus.PARTIAL, balance)
    if now > due_date:
        return InvoiceState(InvoiceStatus.OVERDUE, balance)
    return InvoiceState(status, balance)


class IngestionPipeline:
    """Pulls invoices and payments from the ledger into the store."""

    def __init__(
        self,
        store: Store,
        client: LedgerClient,
        skip_invalid_records: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.client = client
        self.skip_invalid_records = skip_invalid_records
        self._clock = clock

    def sync_invoices(self, company: Company) -> dict[str, Any]:
        """Upsert every ledger invoice for `company`.

        Returns:
            {"success": True, "count": synced, "failed": skipped}

        Raises:
            AuthError / LedgerError: From the ledger query.
            ValidationError: On a malformed record unless skipping is enabled.
        """
        logger.info("Starting invoice sync for company %s", company.id)
        records = self.client.query(company, "Invoice")
        now = self._clock()

        def upsert(repo: Repository, wire: dict[str, Any]) -> None:
            fields = map_invoice(wire)
            external_id = fields.pop("external_id")
            state = derive_invoice_state(
                fields["amount"], fields["total_paid"], fields["due_date"], now,
                status=fields["status"],
            )
            fields["status"] = state.status
            fields["balance"] = state.balance

            fields["paid_date"] = None
            if state.status is InvoiceStatus.PAID:
                existing = repo.find_invoice_by_external_id(company.id, external_id)
                fields["paid_date"] = existing.paid_date if existing and existing.paid_date else now

            repo.upsert_invoice(company.id, external_id, fields)

        result = self._run_batch(company, "invoice", records, upsert, now)
        logger.info(
            "Synced %d invoices for company %s (%d skipped)",
            result["count"], company.id, result["failed"],
        )
        return result

    def sync_payments(self, company: Company) -> dict[str, Any]:
        """Upsert every ledger payment for `company`, linking invoices where possible.

        A payment whose linked transaction matches no stored invoice of the
        same tenant is stored unlinked.
        """
        logger.info("Starting payment sync for company %s", company.id)
        records = self.client.query(company, "Payment")
        now = self._clock()

        def upsert(repo: Repository, wire: dict[str, Any]) -> None:
            fields = map_payment(wire)
            external_id = fields.pop("external_id")
            linked_txn_id = fields.pop("linked_txn_id")

            fields["invoice_id"] = None
            if linked_txn_id:
                invoice = repo.find_invoice_by_external_id(company.id, str(linked_txn_id))
                if invoice is not None:
                    fields["invoice_id"] = invoice.id
                else:
                    logger.debug(
                        "Payment %s links to unknown invoice %s", external_id, linked_txn_id
                    )

            repo.upsert_payment(company.id, external_id, fields)

        result = self._run_batch(company, "payment", records, upsert, now)
        logger.info(
            "Synced %d payments for company %s (%d skipped)",
            result["count"], company.id, result["failed"],
        )
        return result

    def full_sync(self, company: Company) -> dict[str, dict[str, Any]]:
        """Invoices first so payments can link to them in the same run."""
        return {
            "invoices": self.sync_invoices(company),
            "payments": self.sync_payments(company),
        }

    def _run_batch(
        self,
        company: Company,
        kind: str,
        records: list[dict[str, Any]],
        upsert: Callable[[Repository, dict[str, Any]], None],
        now: datetime,
    ) -> dict[str, Any]:
        synced = 0
        failed = 0
        with self.store.transaction() as repo:
            for wire in records:
                try:
                    upsert(repo, wire)
                except ValidationError as exc:
                    if not self.skip_invalid_records:
                        logger.error(
                            "Aborting %s sync for company %s: %s", kind, company.id, exc
                        )
                        raise
                    failed += 1
                    logger.warning("Skipping invalid %s record: %s", kind, exc)
                    continue
                synced += 1
            repo.update_company(company.id, last_sync_at=now)

        company.last_sync_at = now
        return {"success": True, "count": synced, "failed": failed}
