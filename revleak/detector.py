"""
detector.py — Revenue Leak Detection Engine.

Applies four independent rules to a tenant's stored invoices and contracts
and records a Leak for each finding. Rules do not depend on each other and
may fire on the same invoice (an invoice 65 days overdue is both a missing
payment and an uncollected receivable).

Detection Rules:
    1. Missing Payment         — open invoice past its due date
    2. Under-Billing           — active contract billed > 5% below expectation
    3. Failed Renewal          — active contract ended in the last 30 days
                                 with no successor for the same client
    4. Uncollected Receivable  — open invoice 60+ days past due

Deduplication: before creating a leak, each rule looks for a non-terminal
leak with the same (company, leak type, source key). If one exists the
rule refreshes it (missing payments only) or leaves it alone. Recovered and
written-off leaks do not block a new leak for the same key.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import numpy as np
import pandas as pd

from revleak.locks import TenantLocks
from revleak.models import (
    OPEN_INVOICE_STATUSES,
    Company,
    ContractStatus,
    Invoice,
    LeakStatus,
    LeakType,
    Priority,
    utcnow,
)
from revleak.scorer import calculate_confidence, calculate_priority, expected_billing
from revleak.store import Repository, Store

logger = logging.getLogger(__name__)

INVOICE_COLUMNS = [
    "invoice_id", "reference", "customer_id", "customer_name", "balance",
    "amount", "currency", "source_system", "issue_date", "due_date",
]


def invoices_frame(invoices: list[Invoice], now: datetime) -> pd.DataFrame:
    """Build a typed invoice DataFrame with a `days_overdue` column.

    days_overdue = floor((now - due_date) / 1 day); negative before the due date.
    """
    df = pd.DataFrame(
        [
            {
                "invoice_id": inv.id,
                "reference": inv.reference,
                "customer_id": inv.customer_id,
                "customer_name": inv.customer_name,
                "balance": inv.balance,
                "amount": inv.amount,
                "currency": inv.currency,
                "source_system": inv.source_system,
                "issue_date": inv.issue_date,
                "due_date": inv.due_date,
            }
            for inv in invoices
        ],
        columns=INVOICE_COLUMNS,
    )
    df["issue_date"] = pd.to_datetime(df["issue_date"])
    df["due_date"] = pd.to_datetime(df["due_date"])
    df["balance"] = pd.to_numeric(df["balance"]).astype(float)
    df["amount"] = pd.to_numeric(df["amount"]).astype(float)
    df["days_overdue"] = (
        np.floor((pd.Timestamp(now) - df["due_date"]) / pd.Timedelta(days=1))
        .astype(int)
    )
    return df


class LeakDetector:
    """Runs the four leak rules for one tenant at a time."""

    def __init__(
        self,
        store: Store,
        settings: dict[str, Any] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = settings or {}
        self.store = store
        self.escalation_days = settings.get("escalation_days", 60)
        self.aging_threshold_days = settings.get("aging_threshold_days", 60)
        self.renewal_window_days = settings.get("renewal_window_days", 30)
        self.under_billing_tolerance_pct = settings.get("under_billing_tolerance_pct", 5.0)
        self.under_billing_high_amount = settings.get("under_billing_high_amount", 10000)
        self._clock = clock
        self._locks = TenantLocks()

    # -----------------------------------------------------------------------
    # Orchestrator
    # -----------------------------------------------------------------------

    def detect_leaks(self, company: Company) -> dict[str, Any]:
        """Run every rule for `company` and return per-rule results plus a total.

        A failing rule is reported as {"success": False, "error": ..., "count": 0}
        and does not stop the others.
        """
        logger.info("Starting leak detection for company %s", company.id)
        rules = (
            (LeakType.MISSING_PAYMENT, self.detect_missing_payments),
            (LeakType.UNDER_BILLING, self.detect_under_billing),
            (LeakType.FAILED_RENEWAL, self.detect_failed_renewals),
            (LeakType.UNCOLLECTED_RECEIVABLE, self.detect_uncollected_receivables),
        )

        results: dict[str, Any] = {}
        with self._locks.hold(company.id):
            for leak_type, rule in rules:
                results[leak_type.value] = self._run_rule(leak_type, rule, company)

        results["total"] = sum(
            r["count"] for key, r in results.items() if key != "total"
        )
        logger.info(
            "Detected %d new leaks for company %s", results["total"], company.id
        )
        return results

    def _run_rule(
        self,
        leak_type: LeakType,
        rule: Callable[[Repository, Company, datetime], dict[str, Any]],
        company: Company,
    ) -> dict[str, Any]:
        now = self._clock()
        try:
            with self.store.transaction() as repo:
                result = rule(repo, company, now)
        except Exception as exc:
            logger.error(
                "%s detection failed for company %s: %s",
                leak_type.value, company.id, exc, exc_info=True,
            )
            return {"success": False, "error": str(exc), "count": 0}
        return {"success": True, **result}

    # -----------------------------------------------------------------------
    # Shared find-or-refresh-or-create
    # -----------------------------------------------------------------------

    def _record_leak(
        self,
        repo: Repository,
        company: Company,
        leak_type: LeakType,
        source_key: str,
        build: Callable[[], dict[str, Any]],
        refresh: dict[str, Any] | None = None,
    ) -> bool:
        """Create a leak unless an open one exists for the dedup key.

        Args:
            repo: Repository bound to the rule's transaction.
            company: Tenant the leak belongs to.
            leak_type: Rule producing the leak.
            source_key: Invoice number or contract number.
            build: Returns the remaining leak fields; only called on create.
            refresh: Fields to overwrite on an existing open leak.

        Returns:
            True when a new leak was created.
        """
        existing = repo.find_open_leak(company.id, leak_type, source_key)
        if existing is None:
            repo.create_leak(
                company_id=company.id,
                leak_type=leak_type,
                status=LeakStatus.DETECTED,
                source_key=source_key,
                detected_at=self._clock(),
                **build(),
            )
            return True
        if refresh:
            repo.update_leak(existing.id, **refresh)
        return False

    # -----------------------------------------------------------------------
    # Rule 1: Missing Payment
    # -----------------------------------------------------------------------

    def detect_missing_payments(
        self, repo: Repository, company: Company, now: datetime
    ) -> dict[str, Any]:
        """Flag open invoices with a balance that are past their due date.

        An existing open leak for the invoice gets its aging and amount
        refreshed instead of a duplicate being created.
        """
        invoices = repo.find_invoices(
            company.id, statuses=OPEN_INVOICE_STATUSES, min_balance=0
        )
        df = invoices_frame(invoices, now)
        overdue = df[df["days_overdue"] > 0]

        created = refreshed = 0
        for row in overdue.itertuples(index=False):
            days = int(row.days_overdue)
            balance = float(row.balance)

            def build(row=row, days=days, balance=balance) -> dict[str, Any]:
                return {
                    "priority": calculate_priority(balance, days),
                    "confidence": calculate_confidence(days),
                    "amount": balance,
                    "currency": row.currency,
                    "source_system": row.source_system,
                    "source_reference": {
                        "invoiceId": row.reference,
                        "customerId": row.customer_id,
                    },
                    "root_cause": f"Invoice {row.reference} is {days} days overdue",
                    "description": (
                        f"Payment missing for invoice {row.reference} to "
                        f"{row.customer_name}. Outstanding balance: "
                        f"{row.currency} {balance:,.2f}"
                    ),
                    "recommended_action": (
                        "Escalate to collections or legal team"
                        if days > self.escalation_days
                        else "Send payment reminder and follow up with customer"
                    ),
                    "aging": days,
                }

            if self._record_leak(
                repo, company, LeakType.MISSING_PAYMENT, row.reference, build,
                refresh={"aging": days, "amount": balance},
            ):
                created += 1
            else:
                refreshed += 1

        logger.info(
            "Rule 1 (missing_payment) for company %s: %d created, %d refreshed",
            company.id, created, refreshed,
        )
        return {"count": created, "refreshed": refreshed}

    # -----------------------------------------------------------------------
    # Rule 2: Under-Billing
    # -----------------------------------------------------------------------

    def detect_under_billing(
        self, repo: Repository, company: Company, now: datetime
    ) -> dict[str, Any]:
        """Flag active contracts whose invoiced total trails the expected billing.

        Billed total is the sum of the tenant's invoices issued within the
        contract term (inclusive).
        """
        contracts = repo.find_contracts(company.id, status=ContractStatus.ACTIVE)
        if not contracts:
            logger.info("Rule 2 (under_billing) for company %s: no active contracts", company.id)
            return {"count": 0}

        df = invoices_frame(repo.find_invoices(company.id), now)

        created = 0
        for contract in contracts:
            expected = expected_billing(
                contract.base_fee, contract.start_date, contract.end_date,
                contract.billing_frequency,
            )
            if expected <= 0:
                logger.debug("Contract %s has no expected billing", contract.contract_number)
                continue

            in_term = (df["issue_date"] >= pd.Timestamp(contract.start_date)) & (
                df["issue_date"] <= pd.Timestamp(contract.end_date)
            )
            total_billed = float(df.loc[in_term, "amount"].sum())
            under_billed = expected - total_billed
            under_billed_pct = under_billed / expected * 100

            if under_billed_pct <= self.under_billing_tolerance_pct:
                continue

            def build(
                contract=contract,
                expected=expected,
                total_billed=total_billed,
                under_billed=under_billed,
                under_billed_pct=under_billed_pct,
            ) -> dict[str, Any]:
                return {
                    "priority": (
                        Priority.HIGH
                        if under_billed > self.under_billing_high_amount
                        else Priority.MEDIUM
                    ),
                    "confidence": 85,
                    "amount": under_billed,
                    "currency": company.currency,
                    "source_system": "manual",
                    "source_reference": {"contractId": contract.contract_number},
                    "root_cause": (
                        f"Contract {contract.contract_number} under-billed by "
                        f"{under_billed_pct:.1f}%"
                    ),
                    "description": (
                        f"Expected billing: {expected:,.2f}, Actual: {total_billed:,.2f}. "
                        f"Difference: {under_billed:,.2f}"
                    ),
                    "recommended_action": "Review contract terms and issue corrective invoice",
                }

            if self._record_leak(
                repo, company, LeakType.UNDER_BILLING, contract.contract_number, build
            ):
                created += 1

        logger.info("Rule 2 (under_billing) for company %s: %d created", company.id, created)
        return {"count": created}

    # -----------------------------------------------------------------------
    # Rule 3: Failed Renewal
    # -----------------------------------------------------------------------

    def detect_failed_renewals(
        self, repo: Repository, company: Company, now: datetime
    ) -> dict[str, Any]:
        """Flag active contracts that ended recently with no successor.

        A successor is any contract for the same client starting on or
        after this contract's end date.
        """
        window_start = now - timedelta(days=self.renewal_window_days)
        ended = repo.find_contracts(
            company.id,
            status=ContractStatus.ACTIVE,
            end_between=(window_start, now),
        )

        created = 0
        for contract in ended:
            successors = repo.find_contracts(
                company.id,
                client_name=contract.client_name,
                start_on_or_after=contract.end_date,
            )
            if successors:
                logger.debug(
                    "Contract %s renewed as %s",
                    contract.contract_number, successors[0].contract_number,
                )
                continue

            def build(contract=contract) -> dict[str, Any]:
                return {
                    "priority": Priority.HIGH,
                    "confidence": 70,
                    "amount": contract.base_fee,
                    "currency": company.currency,
                    "source_system": "manual",
                    "source_reference": {"contractId": contract.contract_number},
                    "root_cause": f"Contract {contract.contract_number} expired without renewal",
                    "description": (
                        f"Contract with {contract.client_name} expired on "
                        f"{contract.end_date:%a %b %d %Y}. No renewal detected."
                    ),
                    "recommended_action": "Contact client immediately to discuss renewal terms",
                }

            if self._record_leak(
                repo, company, LeakType.FAILED_RENEWAL, contract.contract_number, build
            ):
                created += 1

        logger.info("Rule 3 (failed_renewal) for company %s: %d created", company.id, created)
        return {"count": created}

    # -----------------------------------------------------------------------
    # Rule 4: Uncollected Receivable
    # -----------------------------------------------------------------------

    def detect_uncollected_receivables(
        self, repo: Repository, company: Company, now: datetime
    ) -> dict[str, Any]:
        """Flag open invoices whose due date is at least 60 days in the past."""
        cutoff = now - timedelta(days=self.aging_threshold_days)
        invoices = repo.find_invoices(
            company.id,
            statuses=OPEN_INVOICE_STATUSES,
            min_balance=0,
            due_on_or_before=cutoff,
        )
        df = invoices_frame(invoices, now)

        created = 0
        for row in df.itertuples(index=False):
            days = int(row.days_overdue)
            balance = float(row.balance)

            def build(row=row, days=days, balance=balance) -> dict[str, Any]:
                return {
                    "priority": Priority.CRITICAL,
                    "confidence": 90,
                    "amount": balance,
                    "currency": row.currency,
                    "source_system": row.source_system,
                    "source_reference": {
                        "invoiceId": row.reference,
                        "customerId": row.customer_id,
                    },
                    "root_cause": f"Invoice {row.reference} uncollected for {days} days",
                    "description": (
                        f"Critical aging receivable from {row.customer_name}. "
                        f"Outstanding: {row.currency} {balance:,.2f}"
                    ),
                    "recommended_action": "Immediate escalation to legal/collections team",
                    "aging": days,
                }

            if self._record_leak(
                repo, company, LeakType.UNCOLLECTED_RECEIVABLE, row.reference, build
            ):
                created += 1

        logger.info(
            "Rule 4 (uncollected_receivable) for company %s: %d created",
            company.id, created,
        )
        return {"count": created}
