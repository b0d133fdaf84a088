"""
Tests for receivables aging and overdue detection
"""

import pytest
from decimal import Decimal

from credit.aging import bucket_for, is_overdue
from credit.ledger import CreditReference
from conftest import STATION_ID

AS_OF = "2024-06-30"


def extend(credit, creditor, amount, on_date):
    return credit.extend_credit(
        STATION_ID, creditor.creditor_id, amount, CreditReference(transaction_date=on_date)
    )


class TestBuckets:

    @pytest.mark.parametrize("age,bucket", [
        (0, "0-30"), (30, "0-30"), (31, "31-60"), (60, "31-60"),
        (61, "61-90"), (90, "61-90"), (91, "over_90"),
    ])
    def test_bucket_edges(self, age, bucket):
        assert bucket_for(age) == bucket


class TestAgingReport:

    def test_buckets_scaled_by_balance(self, credit, aging, creditor):
        extend(credit, creditor, "300", "2024-03-22")   # 100 days
        extend(credit, creditor, "200", "2024-05-16")   # 45 days
        extend(credit, creditor, "100", "2024-06-20")   # 10 days

        report = aging.aging_report(STATION_ID, AS_OF)
        assert report.creditors[0].buckets == {
            "0-30": Decimal("100"), "31-60": Decimal("200"),
            "61-90": Decimal("0"), "over_90": Decimal("300"),
        }

        credit.record_settlement(STATION_ID, creditor.creditor_id, "300")
        report = aging.aging_report(STATION_ID, AS_OF)

        assert report.total_outstanding == Decimal("300")
        assert report.totals == {
            "0-30": Decimal("50"), "31-60": Decimal("100"),
            "61-90": Decimal("0"), "over_90": Decimal("150"),
        }

    def test_settled_creditors_are_left_out(self, credit, aging, creditor):
        extend(credit, creditor, "300", "2024-06-01")
        credit.record_settlement(STATION_ID, creditor.creditor_id, "300")

        report = aging.aging_report(STATION_ID, AS_OF)
        assert report.creditors == []
        assert report.total_outstanding == 0

    def test_largest_balance_first(self, credit, aging, creditor):
        small = credit.create_creditor(STATION_ID, "Auto Stand")
        extend(credit, small, "50", "2024-06-01")
        extend(credit, creditor, "900", "2024-06-01")

        report = aging.aging_report(STATION_ID, AS_OF)
        assert [c.creditor.name for c in report.creditors] == ["Sharma Transport", "Auto Stand"]
        assert report.to_dict()["totals"]["0-30"] == "950.00"


class TestOverdue:
    """Overdue: balance owed and no credit taken within the credit period."""

    def test_overdue_after_credit_period(self, credit, aging, creditor):
        extend(credit, creditor, "400", "2024-05-01")

        stored = credit.get_creditor(creditor.creditor_id)
        assert not is_overdue(stored, "2024-05-31")
        assert is_overdue(stored, "2024-06-01")
        assert [c.creditor_id for c in aging.overdue_creditors(STATION_ID, AS_OF)] == [creditor.creditor_id]

    def test_custom_credit_period(self, credit, aging, station):
        weekly = credit.create_creditor(STATION_ID, "Weekly Payer", credit_period_days=7)
        extend(credit, weekly, "80", "2024-06-20")

        assert [c.name for c in aging.overdue_creditors(STATION_ID, AS_OF)] == ["Weekly Payer"]

    def test_cleared_balance_is_not_overdue(self, credit, aging, creditor):
        extend(credit, creditor, "400", "2024-01-01")
        credit.record_settlement(STATION_ID, creditor.creditor_id, "400")

        assert aging.overdue_creditors(STATION_ID, AS_OF) == []
