"""
scorer.py — Priority, Confidence and Expected-Billing Scoring.

Pure functions shared by the leak detectors:
    calculate_priority     — tier from outstanding amount and days overdue
    calculate_confidence   — certainty score (70–95) from days overdue
    expected_billing       — what a contract should have billed over its term

Priority tiers (first matching tier wins, checked top-down):
    Critical  amount > 50,000 or > 90 days overdue
    High      amount > 10,000 or > 60 days overdue
    Medium    amount >  5,000 or > 30 days overdue
    Low       everything else

Also builds the open-leak summary used by the recovery worklist.
"""

import logging
import math
from collections.abc import Iterable
from datetime import datetime
from typing import Any

import pandas as pd

from revleak.models import BillingFrequency, Leak, LeakType, Priority

logger = logging.getLogger(__name__)

# Priority ordering for sort/comparison
PRIORITY_ORDER = {
    Priority.CRITICAL: 4,
    Priority.HIGH: 3,
    Priority.MEDIUM: 2,
    Priority.LOW: 1,
}

# (tier, amount strictly above, days overdue strictly above)
PRIORITY_BANDS = (
    (Priority.CRITICAL, 50000, 90),
    (Priority.HIGH, 10000, 60),
    (Priority.MEDIUM, 5000, 30),
)

# (days overdue strictly above, confidence)
CONFIDENCE_BANDS = (
    (90, 95),
    (60, 90),
    (30, 85),
    (15, 80),
)
BASE_CONFIDENCE = 70

BILLING_PERIOD_DAYS = 30


def calculate_priority(amount: float, days_overdue: int) -> Priority:
    """Map an outstanding amount and its aging to a priority tier.

    Args:
        amount: Outstanding amount at risk.
        days_overdue: Whole days past the due date.

    Returns:
        The highest tier whose amount or aging threshold is exceeded.
    """
    for tier, amount_above, days_above in PRIORITY_BANDS:
        if amount > amount_above or days_overdue > days_above:
            return tier
    return Priority.LOW


def calculate_confidence(days_overdue: int) -> int:
    """Confidence that an overdue balance is a genuine leak, in [70, 95]."""
    for days_above, confidence in CONFIDENCE_BANDS:
        if days_overdue > days_above:
            return confidence
    return BASE_CONFIDENCE


def billing_periods(
    start_date: datetime,
    end_date: datetime,
    frequency: BillingFrequency,
) -> int:
    """Number of billing cycles in a contract term.

    Monthly cycles are 30-day blocks, rounded up; quarterly cycles are the
    monthly count divided by three, rounded up; anything else bills once.
    """
    if frequency is BillingFrequency.ANNUALLY:
        return 1
    duration_days = (end_date - start_date).total_seconds() / 86400
    months = math.ceil(duration_days / BILLING_PERIOD_DAYS)
    if frequency is BillingFrequency.MONTHLY:
        return months
    return math.ceil(months / 3)


def expected_billing(
    base_fee: float,
    start_date: datetime,
    end_date: datetime,
    frequency: BillingFrequency,
) -> float:
    """Base fee multiplied by the number of billing cycles in the term."""
    return base_fee * billing_periods(start_date, end_date, frequency)


# ---------------------------------------------------------------------------
# Leak summary
# ---------------------------------------------------------------------------

LEAK_COLUMNS = [
    "leak_id", "leak_type", "status", "priority", "priority_rank", "amount",
    "currency", "confidence", "source_key", "aging", "detected_at",
    "root_cause", "description", "recommended_action",
]


def leaks_frame(leaks: Iterable[Leak]) -> pd.DataFrame:
    """Flatten Leak records into a DataFrame sorted by priority then amount."""
    rows = [
        {
            "leak_id": leak.id,
            "leak_type": leak.leak_type.value,
            "status": leak.status.value,
            "priority": leak.priority.value,
            "priority_rank": PRIORITY_ORDER[leak.priority],
            "amount": leak.amount,
            "currency": leak.currency,
            "confidence": leak.confidence,
            "source_key": leak.source_key,
            "aging": leak.aging,
            "detected_at": leak.detected_at,
            "root_cause": leak.root_cause,
            "description": leak.description,
            "recommended_action": leak.recommended_action,
        }
        for leak in leaks
    ]
    df = pd.DataFrame(rows, columns=LEAK_COLUMNS)
    if df.empty:
        return df
    return df.sort_values(
        ["priority_rank", "amount"], ascending=[False, False]
    ).reset_index(drop=True)


def build_leak_summary(leaks: pd.DataFrame, currency: str = "USD") -> dict[str, Any]:
    """Aggregate open leaks into headline figures for the recovery worklist.

    Args:
        leaks: Output of leaks_frame().
        currency: Reporting currency label.

    Returns:
        Dict with keys:
            total_amount, total_leaks, priority_breakdown, by_type,
            average_confidence, oldest_aging, currency
    """
    priority_breakdown = {
        tier.value.title(): int((leaks["priority"] == tier.value).sum())
        for tier in sorted(PRIORITY_ORDER, key=PRIORITY_ORDER.get, reverse=True)
    }

    by_type: dict[str, dict[str, float]] = {}
    if not leaks.empty:
        by_type = (
            leaks.groupby("leak_type")
            .agg(count=("leak_id", "count"), amount=("amount", "sum"))
            .round(2)
            .to_dict(orient="index")
        )
    for leak_type in (
        LeakType.MISSING_PAYMENT,
        LeakType.UNDER_BILLING,
        LeakType.FAILED_RENEWAL,
        LeakType.UNCOLLECTED_RECEIVABLE,
    ):
        by_type.setdefault(leak_type.value, {"count": 0, "amount": 0.0})

    summary = {
        "total_amount": round(float(leaks["amount"].sum()), 2) if not leaks.empty else 0.0,
        "total_leaks": len(leaks),
        "priority_breakdown": priority_breakdown,
        "by_type": by_type,
        "average_confidence": (
            round(float(leaks["confidence"].mean()), 1) if not leaks.empty else 0.0
        ),
        "oldest_aging": int(leaks["aging"].max()) if not leaks.empty else 0,
        "currency": currency,
    }

    logger.info(
        "Leak summary built — %s %.2f at risk | %d Critical | %d High",
        currency,
        summary["total_amount"],
        priority_breakdown["Critical"],
        priority_breakdown["High"],
    )
    return summary
