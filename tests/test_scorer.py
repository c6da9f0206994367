"""
test_scorer.py — Unit tests for priority, confidence and billing scoring.

Tests cover:
    - Priority tiers at amount and aging boundaries
    - Confidence bands and monotonicity
    - Billing period counts per frequency
    - Leak DataFrame ordering and the worklist summary structure
"""

import sys
from datetime import datetime
from pathlib import Path
from types import SimpleNamespace

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from revleak.models import BillingFrequency, LeakStatus, LeakType, Priority
from revleak.scorer import (
    PRIORITY_ORDER,
    billing_periods,
    build_leak_summary,
    calculate_confidence,
    calculate_priority,
    expected_billing,
    leaks_frame,
)


def _make_leak(**overrides) -> SimpleNamespace:
    """Leak-shaped record with sensible defaults."""
    base = {
        "id": "leak-1",
        "leak_type": LeakType.MISSING_PAYMENT,
        "status": LeakStatus.DETECTED,
        "priority": Priority.LOW,
        "amount": 1000.0,
        "currency": "USD",
        "confidence": 70,
        "source_key": "INV-001",
        "aging": 10,
        "detected_at": datetime(2026, 3, 1),
        "root_cause": "Invoice INV-001 is 10 days overdue",
        "description": "Payment missing",
        "recommended_action": "Send payment reminder and follow up with customer",
    }
    base.update(overrides)
    return SimpleNamespace(**base)


# ---------------------------------------------------------------------------
# Priority
# ---------------------------------------------------------------------------

class TestCalculatePriority:

    def test_small_recent_amount_is_low(self):
        assert calculate_priority(1000, 10) == Priority.LOW

    @pytest.mark.parametrize("amount,days,expected", [
        (50000, 0, Priority.HIGH),
        (50000.01, 0, Priority.CRITICAL),
        (10000, 0, Priority.MEDIUM),
        (10000.01, 0, Priority.HIGH),
        (5000, 0, Priority.LOW),
        (5000.01, 0, Priority.MEDIUM),
    ])
    def test_amount_thresholds_are_strict(self, amount, days, expected):
        assert calculate_priority(amount, days) == expected

    @pytest.mark.parametrize("days,expected", [
        (30, Priority.LOW),
        (31, Priority.MEDIUM),
        (60, Priority.MEDIUM),
        (61, Priority.HIGH),
        (90, Priority.HIGH),
        (91, Priority.CRITICAL),
    ])
    def test_aging_thresholds_are_strict(self, days, expected):
        assert calculate_priority(100, days) == expected

    def test_either_condition_is_enough(self):
        assert calculate_priority(60000, 1) == Priority.CRITICAL
        assert calculate_priority(1, 120) == Priority.CRITICAL

    def test_priority_never_decreases(self):
        """Raising amount or aging must never lower the tier."""
        amounts = [0, 4000, 6000, 12000, 60000]
        days = [0, 20, 45, 75, 120]
        for a in amounts:
            for d in days:
                base = PRIORITY_ORDER[calculate_priority(a, d)]
                for a2 in amounts:
                    for d2 in days:
                        if a2 >= a and d2 >= d:
                            assert PRIORITY_ORDER[calculate_priority(a2, d2)] >= base


# ---------------------------------------------------------------------------
# Confidence
# ---------------------------------------------------------------------------

class TestCalculateConfidence:

    @pytest.mark.parametrize("days,expected", [
        (0, 70),
        (15, 70),
        (16, 80),
        (30, 80),
        (31, 85),
        (60, 85),
        (61, 90),
        (90, 90),
        (91, 95),
        (400, 95),
    ])
    def test_bands(self, days, expected):
        assert calculate_confidence(days) == expected

    def test_confidence_stays_in_range_and_never_decreases(self):
        scores = [calculate_confidence(d) for d in range(0, 200)]
        assert all(70 <= s <= 95 for s in scores)
        for i in range(1, len(scores)):
            assert scores[i] >= scores[i - 1]


# ---------------------------------------------------------------------------
# Expected billing
# ---------------------------------------------------------------------------

class TestBillingPeriods:

    START = datetime(2026, 1, 1)

    def test_monthly_rounds_partial_month_up(self):
        # 89 days → ceil(89 / 30) = 3
        assert billing_periods(self.START, datetime(2026, 3, 31), BillingFrequency.MONTHLY) == 3

    def test_monthly_exact_blocks(self):
        assert billing_periods(self.START, datetime(2026, 3, 2), BillingFrequency.MONTHLY) == 2

    def test_quarterly_divides_months_by_three(self):
        # 364 days → 13 months → ceil(13 / 3) = 5
        assert billing_periods(self.START, datetime(2026, 12, 31), BillingFrequency.QUARTERLY) == 5

    def test_annual_bills_once(self):
        assert billing_periods(self.START, datetime(2027, 6, 30), BillingFrequency.ANNUALLY) == 1

    def test_zero_length_term_has_no_monthly_periods(self):
        assert billing_periods(self.START, self.START, BillingFrequency.MONTHLY) == 0

    def test_expected_billing_multiplies_base_fee(self):
        assert expected_billing(
            1000.0, self.START, datetime(2026, 3, 31), BillingFrequency.MONTHLY
        ) == pytest.approx(3000.0)


# ---------------------------------------------------------------------------
# Leak frame and summary
# ---------------------------------------------------------------------------

class TestLeaksFrame:

    def test_sorted_by_priority_then_amount(self):
        df = leaks_frame([
            _make_leak(id="a", priority=Priority.LOW, amount=9000.0),
            _make_leak(id="b", priority=Priority.CRITICAL, amount=100.0),
            _make_leak(id="c", priority=Priority.CRITICAL, amount=500.0),
            _make_leak(id="d", priority=Priority.HIGH, amount=50.0),
        ])
        assert list(df["leak_id"]) == ["c", "b", "d", "a"]

    def test_enum_values_are_flattened(self):
        df = leaks_frame([_make_leak()])
        assert df.loc[0, "leak_type"] == "missing_payment"
        assert df.loc[0, "priority"] == "low"
        assert df.loc[0, "status"] == "detected"

    def test_empty_input_keeps_columns(self):
        df = leaks_frame([])
        assert df.empty
        assert "priority_rank" in df.columns


class TestBuildLeakSummary:

    REQUIRED_KEYS = {
        "total_amount", "total_leaks", "priority_breakdown", "by_type",
        "average_confidence", "oldest_aging", "currency",
    }

    def _summary(self):
        df = leaks_frame([
            _make_leak(id="a", priority=Priority.CRITICAL, amount=2000.0,
                       leak_type=LeakType.UNCOLLECTED_RECEIVABLE, confidence=90, aging=65),
            _make_leak(id="b", priority=Priority.HIGH, amount=2000.0, confidence=90, aging=65),
            _make_leak(id="c", priority=Priority.MEDIUM, amount=1000.0,
                       leak_type=LeakType.UNDER_BILLING, confidence=85, aging=None),
        ])
        return build_leak_summary(df, currency="EUR")

    def test_required_keys_present(self):
        assert self.REQUIRED_KEYS.issubset(self._summary().keys())

    def test_totals(self):
        summary = self._summary()
        assert summary["total_amount"] == pytest.approx(5000.0)
        assert summary["total_leaks"] == 3
        assert summary["currency"] == "EUR"
        assert summary["oldest_aging"] == 65

    def test_priority_breakdown_has_every_tier(self):
        breakdown = self._summary()["priority_breakdown"]
        assert breakdown == {"Critical": 1, "High": 1, "Medium": 1, "Low": 0}

    def test_by_type_includes_rules_without_findings(self):
        by_type = self._summary()["by_type"]
        assert by_type["failed_renewal"] == {"count": 0, "amount": 0.0}
        assert by_type["missing_payment"]["count"] == 1
        assert by_type["under_billing"]["amount"] == pytest.approx(1000.0)

    def test_empty_frame(self):
        summary = build_leak_summary(leaks_frame([]))
        assert summary["total_amount"] == 0.0
        assert summary["total_leaks"] == 0
        assert summary["oldest_aging"] == 0
