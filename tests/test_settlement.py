"""
Tests for the Settlement Allocator

Per-credit-line caps on allocated settlements.
"""

import pytest
from decimal import Decimal

from core.errors import InvalidInput, NotFound, OverSettlement
from credit.allocator import Allocation, normalize_allocations
from conftest import STATION_ID, assert_balance_matches_log


@pytest.fixture
def line(credit, creditor):
    """A single 1000.00 credit line."""
    return credit.extend_credit(STATION_ID, creditor.creditor_id, "1000")


def pay(credit, creditor, line_id, amount, total=None):
    return credit.record_settlement(
        STATION_ID, creditor.creditor_id, total,
        allocations=[{"credit_transaction_id": line_id, "amount": amount}],
    )


class TestNormalizeAllocations:

    def test_duplicates_are_merged(self):
        parts = normalize_allocations([
            {"credit_transaction_id": "ct-1", "amount": "250"},
            Allocation(credit_transaction_id="ct-2", amount=Decimal("10")),
            {"credit_transaction_id": "ct-1", "amount": "100.5"},
        ])

        assert [(p.credit_transaction_id, p.amount) for p in parts] == [
            ("ct-1", Decimal("350.50")),
            ("ct-2", Decimal("10.00")),
        ]

    def test_missing_line_id(self):
        with pytest.raises(InvalidInput):
            normalize_allocations([{"amount": "10"}])

    def test_non_positive_amount(self):
        with pytest.raises(InvalidInput):
            normalize_allocations([{"credit_transaction_id": "ct-1", "amount": "-5"}])


class TestAllocationCap:
    """sum(links) + allocation <= line amount + tolerance."""

    def test_partial_settlements_until_exhausted(self, credit, allocator, creditor, line):
        pay(credit, creditor, line.credit_transaction_id, "700")

        with pytest.raises(OverSettlement) as exc:
            pay(credit, creditor, line.credit_transaction_id, "400")

        assert exc.value.details["already_settled"] == "700.00"
        assert exc.value.details["remaining"] == "300.00"
        assert credit.get_creditor_balance(creditor.creditor_id) == Decimal("300")
        assert allocator.links.settled_amount(line.credit_transaction_id) == Decimal("700")
        assert_balance_matches_log(credit, creditor.creditor_id)

    def test_balance_checked_after_line_caps(self, credit, creditor, line):
        credit.record_settlement(STATION_ID, creditor.creditor_id, "800")

        with pytest.raises(OverSettlement) as exc:
            pay(credit, creditor, line.credit_transaction_id, "500")

        assert exc.value.details["current_balance"] == "200.00"
        assert credit.get_creditor_balance(creditor.creditor_id) == Decimal("200")

    def test_line_can_be_settled_exactly(self, credit, allocator, creditor, line):
        pay(credit, creditor, line.credit_transaction_id, "700")
        pay(credit, creditor, line.credit_transaction_id, "300")

        assert allocator.outstanding_credits(creditor.creditor_id) == []
        assert credit.get_creditor_balance(creditor.creditor_id) == 0

    def test_merged_duplicates_hit_the_cap(self, credit, creditor, line):
        # 600 twice on a 1000 line; the creditor's balance alone would not stop it
        credit.extend_credit(STATION_ID, creditor.creditor_id, "5000")

        with pytest.raises(OverSettlement):
            credit.record_settlement(STATION_ID, creditor.creditor_id, allocations=[
                {"credit_transaction_id": line.credit_transaction_id, "amount": "600"},
                {"credit_transaction_id": line.credit_transaction_id, "amount": "600"},
            ])
        assert credit.get_creditor_balance(creditor.creditor_id) == Decimal("6000")

    def test_cap_failure_on_second_line_rolls_back_first(self, credit, allocator, creditor, line):
        other = credit.extend_credit(STATION_ID, creditor.creditor_id, "200")

        with pytest.raises(OverSettlement):
            credit.record_settlement(STATION_ID, creditor.creditor_id, allocations=[
                {"credit_transaction_id": line.credit_transaction_id, "amount": "500"},
                {"credit_transaction_id": other.credit_transaction_id, "amount": "250"},
            ])

        assert allocator.links.settled_amount(line.credit_transaction_id) == 0
        assert len(credit.get_ledger(creditor.creditor_id)) == 2


class TestAllocationAmount:
    """Settlement amount versus the allocations that make it up."""

    def test_amount_derived_from_allocations(self, credit, allocator, creditor, line):
        settlement = pay(credit, creditor, line.credit_transaction_id, "450")

        assert settlement.amount == Decimal("450.00")
        links = allocator.links_for_settlement(settlement.credit_transaction_id)
        assert [(l.credit_transaction_id, l.amount) for l in links] == [
            (line.credit_transaction_id, Decimal("450.00")),
        ]

    def test_amount_must_match_allocations(self, credit, creditor, line):
        with pytest.raises(InvalidInput):
            pay(credit, creditor, line.credit_transaction_id, "450", total="500")

    def test_amount_matching_within_tolerance(self, credit, creditor, line):
        settlement = pay(credit, creditor, line.credit_transaction_id, "450", total="450.01")
        assert settlement.amount == Decimal("450.01")


class TestAllocationTargets:
    """Allocations may only point at this creditor's credit lines."""

    def test_unknown_line(self, credit, creditor, line):
        with pytest.raises(NotFound):
            pay(credit, creditor, "ct-missing", "10")

    def test_line_of_another_creditor(self, credit, creditor, line):
        other = credit.create_creditor(STATION_ID, "Other Carrier")
        credit.extend_credit(STATION_ID, other.creditor_id, "50")

        with pytest.raises(NotFound):
            pay(credit, other, line.credit_transaction_id, "10")

    def test_settlement_line_is_not_a_target(self, credit, creditor, line):
        settlement = credit.record_settlement(STATION_ID, creditor.creditor_id, "100")

        with pytest.raises(NotFound):
            pay(credit, creditor, settlement.credit_transaction_id, "10")


class TestOutstandingCredits:

    def test_remaining_per_line(self, credit, allocator, creditor, line):
        second = credit.extend_credit(STATION_ID, creditor.creditor_id, "300")
        pay(credit, creditor, line.credit_transaction_id, "1000")
        pay(credit, creditor, second.credit_transaction_id, "120")

        open_lines = allocator.outstanding_credits(creditor.creditor_id)
        assert [(o.credit_transaction_id, o.remaining) for o in open_lines] == [
            (second.credit_transaction_id, Decimal("180.00")),
        ]

        every_line = allocator.outstanding_credits(creditor.creditor_id, include_settled=True)
        assert len(every_line) == 2
        assert every_line[0].settled == Decimal("1000")
