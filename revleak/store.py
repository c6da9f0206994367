"""
store.py — Persistence layer for tenants, billing records and leaks.

The store hands out one `Repository` per database transaction:

    with store.transaction() as repo:
        repo.upsert_invoice(company_id, external_id, fields)
        repo.update_company(company_id, last_sync_at=now)

Everything inside the block commits together or not at all, which is what
gives invoice / payment sync its all-or-nothing batch semantics.
"""

import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import create_engine, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from revleak.models import (
    TERMINAL_LEAK_STATUSES,
    Base,
    Company,
    Contract,
    ContractStatus,
    Invoice,
    InvoiceStatus,
    Leak,
    LeakType,
    Payment,
)

logger = logging.getLogger(__name__)


class Repository:
    """Filtered finds, upsert-by-key, create and update-by-id over one session."""

    def __init__(self, session: Session):
        self.session = session

    # -----------------------------------------------------------------------
    # Generic
    # -----------------------------------------------------------------------

    def add(self, record: Base) -> Base:
        """Insert a new record of any kind and flush it so its id is assigned."""
        self.session.add(record)
        self.session.flush()
        return record

    # -----------------------------------------------------------------------
    # Companies
    # -----------------------------------------------------------------------

    def get_company(self, company_id: str) -> Company | None:
        return self.session.get(Company, company_id)

    def list_companies(self, connected_only: bool = False) -> list[Company]:
        stmt = select(Company).where(Company.is_active.is_(True))
        if connected_only:
            stmt = stmt.where(Company.ledger_connected.is_(True))
        return list(self.session.scalars(stmt.order_by(Company.name)))

    def update_company(self, company_id: str, **fields: Any) -> int:
        """Apply all `fields` to one company in a single UPDATE statement.

        Returns:
            Number of rows changed (0 when the company does not exist).
        """
        result = self.session.execute(
            update(Company).where(Company.id == company_id).values(**fields)
        )
        return result.rowcount

    # -----------------------------------------------------------------------
    # Invoices
    # -----------------------------------------------------------------------

    def find_invoices(
        self,
        company_id: str,
        statuses: Iterable[InvoiceStatus] | None = None,
        min_balance: float | None = None,
        due_on_or_before: datetime | None = None,
        issued_between: tuple[datetime, datetime] | None = None,
    ) -> list[Invoice]:
        stmt = select(Invoice).where(Invoice.company_id == company_id)
        if statuses is not None:
            stmt = stmt.where(Invoice.status.in_(list(statuses)))
        if min_balance is not None:
            stmt = stmt.where(Invoice.balance > min_balance)
        if due_on_or_before is not None:
            stmt = stmt.where(Invoice.due_date <= due_on_or_before)
        if issued_between is not None:
            start, end = issued_between
            stmt = stmt.where(Invoice.issue_date >= start, Invoice.issue_date <= end)
        return list(self.session.scalars(stmt.order_by(Invoice.due_date)))

    def find_invoice_by_external_id(
        self, company_id: str, external_id: str
    ) -> Invoice | None:
        stmt = select(Invoice).where(
            Invoice.company_id == company_id,
            Invoice.external_id == external_id,
        )
        return self.session.scalars(stmt).first()

    def upsert_invoice(
        self, company_id: str, external_id: str, fields: dict[str, Any]
    ) -> Invoice:
        """Insert the invoice or overwrite every given field on the existing row."""
        invoice = self.find_invoice_by_external_id(company_id, external_id)
        if invoice is None:
            invoice = Invoice(company_id=company_id, external_id=external_id, **fields)
            self.session.add(invoice)
        else:
            for name, value in fields.items():
                setattr(invoice, name, value)
        self.session.flush()
        return invoice

    # -----------------------------------------------------------------------
    # Payments
    # -----------------------------------------------------------------------

    def find_payments(self, company_id: str) -> list[Payment]:
        stmt = select(Payment).where(Payment.company_id == company_id)
        return list(self.session.scalars(stmt.order_by(Payment.payment_date)))

    def upsert_payment(
        self, company_id: str, external_id: str, fields: dict[str, Any]
    ) -> Payment:
        stmt = select(Payment).where(
            Payment.company_id == company_id,
            Payment.external_id == external_id,
        )
        payment = self.session.scalars(stmt).first()
        if payment is None:
            payment = Payment(company_id=company_id, external_id=external_id, **fields)
            self.session.add(payment)
        else:
            for name, value in fields.items():
                setattr(payment, name, value)
        self.session.flush()
        return payment

    # -----------------------------------------------------------------------
    # Contracts
    # -----------------------------------------------------------------------

    def find_contracts(
        self,
        company_id: str,
        status: ContractStatus | None = None,
        client_name: str | None = None,
        start_on_or_after: datetime | None = None,
        end_between: tuple[datetime, datetime] | None = None,
    ) -> list[Contract]:
        stmt = select(Contract).where(Contract.company_id == company_id)
        if status is not None:
            stmt = stmt.where(Contract.status == status)
        if client_name is not None:
            stmt = stmt.where(Contract.client_name == client_name)
        if start_on_or_after is not None:
            stmt = stmt.where(Contract.start_date >= start_on_or_after)
        if end_between is not None:
            start, end = end_between
            stmt = stmt.where(Contract.end_date >= start, Contract.end_date <= end)
        return list(self.session.scalars(stmt.order_by(Contract.contract_number)))

    # -----------------------------------------------------------------------
    # Leaks
    # -----------------------------------------------------------------------

    def find_leaks(
        self,
        company_id: str,
        leak_type: LeakType | None = None,
        open_only: bool = False,
    ) -> list[Leak]:
        stmt = select(Leak).where(Leak.company_id == company_id)
        if leak_type is not None:
            stmt = stmt.where(Leak.leak_type == leak_type)
        if open_only:
            stmt = stmt.where(Leak.status.not_in(list(TERMINAL_LEAK_STATUSES)))
        return list(self.session.scalars(stmt.order_by(Leak.detected_at)))

    def find_open_leak(
        self, company_id: str, leak_type: LeakType, source_key: str
    ) -> Leak | None:
        """Return the non-terminal leak for a dedup key, if there is one."""
        stmt = select(Leak).where(
            Leak.company_id == company_id,
            Leak.leak_type == leak_type,
            Leak.source_key == source_key,
            Leak.status.not_in(list(TERMINAL_LEAK_STATUSES)),
        )
        return self.session.scalars(stmt).first()

    def create_leak(self, **fields: Any) -> Leak:
        return self.add(Leak(**fields))

    def update_leak(self, leak_id: str, **fields: Any) -> Leak | None:
        leak = self.session.get(Leak, leak_id)
        if leak is None:
            return None
        for name, value in fields.items():
            setattr(leak, name, value)
        self.session.flush()
        return leak


class Store:
    """Owns the engine and session factory; opens transactional repositories."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Repository]:
        """Yield a repository whose work commits on exit or rolls back on error."""
        session = self._session_factory()
        try:
            yield Repository(session)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def init_store(database_url: str, echo: bool = False, create: bool = True) -> Store:
    """Build a Store for `database_url`, creating tables when `create` is set.

    In-memory SQLite URLs share a single connection so every transaction
    sees the same database.
    """
    kwargs: dict[str, Any] = {"echo": echo}
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}
    engine = create_engine(database_url, **kwargs)

    store = Store(engine)
    if create:
        store.create_schema()
    logger.info("Store initialised (%s)", engine.url.render_as_string(hide_password=True))
    return store
