"""
models.py — Canonical entities and closed vocabularies.

Tables:
    companies  — tenant identity, settings and the embedded ledger
                 credential block (token pair, expiry, last sync marker)
    invoices   — keyed by (company_id, external_id) when synced from the ledger
    payments   — keyed by (company_id, external_id), optionally linked to an invoice
    contracts  — read-only input to the renewal and under-billing rules
    leaks      — detected revenue leaks; at most one open leak per
                 (company_id, leak_type, source_key)

All timestamps are stored as naive UTC datetimes.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------

class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


# Invoices still expecting money from the customer
OPEN_INVOICE_STATUSES = (
    InvoiceStatus.SENT,
    InvoiceStatus.VIEWED,
    InvoiceStatus.PARTIAL,
    InvoiceStatus.OVERDUE,
)


class PaymentMethod(str, Enum):
    ACH = "ach"
    WIRE = "wire"
    CHECK = "check"
    OTHER = "other"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class ContractStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    EXPIRED = "expired"
    RENEWED = "renewed"
    CANCELLED = "cancelled"


class BillingFrequency(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


class LeakType(str, Enum):
    MISSING_PAYMENT = "missing_payment"
    UNDER_BILLING = "under_billing"
    FAILED_RENEWAL = "failed_renewal"
    UNCOLLECTED_RECEIVABLE = "uncollected_receivable"
    DUPLICATE_CREDIT = "duplicate_credit"
    PRICING_MISMATCH = "pricing_mismatch"
    CONTRACT_VIOLATION = "contract_violation"


class LeakStatus(str, Enum):
    DETECTED = "detected"
    INVESTIGATING = "investigating"
    IN_RECOVERY = "in_recovery"
    RECOVERED = "recovered"
    WRITTEN_OFF = "written_off"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_LEAK_STATUSES


TERMINAL_LEAK_STATUSES = frozenset({LeakStatus.RECOVERED, LeakStatus.WRITTEN_OFF})


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


def _enum(enum_cls: type[Enum]) -> SAEnum:
    # Persist the lowercase values, not the member names
    return SAEnum(
        enum_cls,
        native_enum=False,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )


class Company(TimestampMixin, Base):
    __tablename__ = "companies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(200))
    domain: Mapped[str | None] = mapped_column(String(200), unique=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    timezone: Mapped[str] = mapped_column(String(64), default="America/New_York")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Ledger credential block
    ledger_connected: Mapped[bool] = mapped_column(Boolean, default=False)
    ledger_account_id: Mapped[str | None] = mapped_column(String(64))
    access_token: Mapped[str | None] = mapped_column(String(4096))
    refresh_token: Mapped[str | None] = mapped_column(String(512))
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime)

    def __repr__(self) -> str:
        return f"<Company {self.id} {self.name!r}>"


class Invoice(TimestampMixin, Base):
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("company_id", "external_id", name="uq_invoices_company_external"),
        Index("ix_invoices_company_status", "company_id", "status"),
        Index("ix_invoices_due_date", "due_date"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    company_id: Mapped[str] = mapped_column(ForeignKey("companies.id"))
    external_id: Mapped[str | None] = mapped_column(String(64))
    invoice_number: Mapped[str | None] = mapped_column(String(64))
    customer_id: Mapped[str | None] = mapped_column(String(64))
    customer_name: Mapped[str | None] = mapped_column(String(200))
    amount: Mapped[float] = mapped_column(Float)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    issue_date: Mapped[datetime] = mapped_column(DateTime)
    due_date: Mapped[datetime] = mapped_column(DateTime)
    paid_date: Mapped[datetime | None] = mapped_column(DateTime)
    total_paid: Mapped[float] = mapped_column(Float, default=0.0)
    balance: Mapped[float] = mapped_column(Float, default=0.0)
    status: Mapped[InvoiceStatus] = mapped_column(
        _enum(InvoiceStatus), default=InvoiceStatus.DRAFT
    )
    line_items: Mapped[list] = mapped_column(JSON, default=list)
    source_system: Mapped[str] = mapped_column(String(32), default="manual")

    @property
    def reference(self) -> str:
        """Customer-facing identifier used to key leaks back to this invoice."""
        return self.invoice_number or self.external_id or self.id

    def __repr__(self) -> str:
        return f"<Invoice {self.reference} {self.status.value} balance={self.balance}>"


class Payment(TimestampMixin, Base):
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("company_id", "external_id", name="uq_payments_company_external"),
        Index("ix_payments_invoice", "invoice_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    company_id: Mapped[str] = mapped_column(ForeignKey("companies.id"))
    external_id: Mapped[str | None] = mapped_column(String(64))
    payment_id: Mapped[str] = mapped_column(String(80))
    invoice_id: Mapped[str | None] = mapped_column(ForeignKey("invoices.id"))
    customer_id: Mapped[str | None] = mapped_column(String(64))
    customer_name: Mapped[str | None] = mapped_column(String(200))
    amount: Mapped[float] = mapped_column(Float)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    payment_date: Mapped[datetime] = mapped_column(DateTime)
    method: Mapped[PaymentMethod] = mapped_column(
        _enum(PaymentMethod), default=PaymentMethod.OTHER
    )
    status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus), default=PaymentStatus.COMPLETED
    )
    reference: Mapped[str | None] = mapped_column(String(64))
    source_system: Mapped[str] = mapped_column(String(32), default="manual")


class Contract(TimestampMixin, Base):
    __tablename__ = "contracts"
    __table_args__ = (
        UniqueConstraint("company_id", "contract_number", name="uq_contracts_company_number"),
        Index("ix_contracts_end_date", "end_date"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    company_id: Mapped[str] = mapped_column(ForeignKey("companies.id"))
    contract_number: Mapped[str] = mapped_column(String(64))
    client_name: Mapped[str] = mapped_column(String(200))
    status: Mapped[ContractStatus] = mapped_column(
        _enum(ContractStatus), default=ContractStatus.DRAFT
    )
    start_date: Mapped[datetime] = mapped_column(DateTime)
    end_date: Mapped[datetime] = mapped_column(DateTime)
    base_fee: Mapped[float] = mapped_column(Float)
    commission_percentage: Mapped[float] = mapped_column(Float, default=0.0)
    billing_frequency: Mapped[BillingFrequency] = mapped_column(
        _enum(BillingFrequency), default=BillingFrequency.MONTHLY
    )


class Leak(TimestampMixin, Base):
    __tablename__ = "leaks"
    __table_args__ = (
        Index("ix_leaks_company_status_priority", "company_id", "status", "priority"),
        # One open leak per dedup key; recovered / written-off leaks do not count
        Index(
            "uq_leaks_open_source",
            "company_id",
            "leak_type",
            "source_key",
            unique=True,
            sqlite_where=text("status NOT IN ('recovered', 'written_off')"),
            postgresql_where=text("status NOT IN ('recovered', 'written_off')"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    company_id: Mapped[str] = mapped_column(ForeignKey("companies.id"))
    leak_type: Mapped[LeakType] = mapped_column(_enum(LeakType))
    status: Mapped[LeakStatus] = mapped_column(
        _enum(LeakStatus), default=LeakStatus.DETECTED
    )
    priority: Mapped[Priority] = mapped_column(_enum(Priority), default=Priority.MEDIUM)
    amount: Mapped[float] = mapped_column(Float)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    confidence: Mapped[int] = mapped_column(Integer, default=75)
    source_system: Mapped[str | None] = mapped_column(String(32))
    source_key: Mapped[str] = mapped_column(String(64))
    source_reference: Mapped[dict] = mapped_column(JSON, default=dict)
    root_cause: Mapped[str | None] = mapped_column(String(500))
    description: Mapped[str | None] = mapped_column(String(1000))
    recommended_action: Mapped[str | None] = mapped_column(String(500))
    aging: Mapped[int] = mapped_column(Integer, default=0)
    detected_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    recovered_amount: Mapped[float] = mapped_column(Float, default=0.0)
    recovered_at: Mapped[datetime | None] = mapped_column(DateTime)

    @property
    def is_open(self) -> bool:
        return not self.status.is_terminal

    def __repr__(self) -> str:
        return (
            f"<Leak {self.leak_type.value} {self.source_key} "
            f"{self.status.value} {self.priority.value}>"
        )
