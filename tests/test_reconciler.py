"""
Tests for the Daily Transaction Reconciler

Tender reconciliation, credit allocation and all-or-nothing rollback.
"""

import pytest
from decimal import Decimal

from core.errors import (
    CreditLimitExceeded,
    InvalidInput,
    InvalidState,
    NotFound,
    ReconciliationMismatch,
)
from conftest import OTHER_STATION_ID, STATION_ID, assert_balance_matches_log

DAY = "2024-01-02"


@pytest.fixture
def day_readings(readings, nozzle, second_nozzle, petrol_price):
    """Two sales on DAY: 50 L (5000) and 20 L (2000)."""
    readings.record_reading(nozzle.nozzle_id, "2024-01-01", "1000")
    readings.record_reading(second_nozzle.nozzle_id, "2024-01-01", "500")
    return [
        readings.record_reading(nozzle.nozzle_id, DAY, "1050"),
        readings.record_reading(second_nozzle.nozzle_id, DAY, "520"),
    ]


def ids(rows):
    return [r.reading_id for r in rows]


class TestCreateDailyTransaction:
    """Successful reconciliation."""

    def test_totals_come_from_readings(self, reconciler, day_readings):
        result = reconciler.create_daily_transaction(
            STATION_ID, DAY, ids(day_readings), {"cash": "4000", "online": "3000"}
        )
        txn = result.transaction

        assert txn.total_liters == Decimal("70")
        assert txn.total_sale_value == Decimal("7000")
        assert txn.payment_breakdown == {
            "cash": Decimal("4000"),
            "online": Decimal("3000"),
            "credit": Decimal("0"),
        }
        assert result.credit_transactions == []

    def test_readings_are_stamped(self, reconciler, readings, day_readings):
        result = reconciler.create_daily_transaction(
            STATION_ID, DAY, ids(day_readings), {"cash": "7000"}
        )

        for reading_id in ids(day_readings):
            assert readings.get_reading(reading_id).transaction_id == result.transaction.transaction_id

    def test_round_trip_through_storage(self, reconciler, day_readings, creditor):
        result = reconciler.create_daily_transaction(
            STATION_ID, DAY, ids(day_readings),
            {"cash": "4000", "credit": "3000"},
            [{"creditor_id": creditor.creditor_id, "amount": "3000"}],
        )
        stored = reconciler.get_transaction(result.transaction.transaction_id)

        assert stored.to_dict() == result.transaction.to_dict()

    def test_tolerance_absorbs_rounding(self, reconciler, day_readings):
        result = reconciler.create_daily_transaction(
            STATION_ID, DAY, ids(day_readings), {"cash": "6999.99"}
        )
        assert result.transaction.total_sale_value == Decimal("7000")

    def test_credit_tender_extends_credit(self, reconciler, credit, day_readings, creditor):
        result = reconciler.create_daily_transaction(
            STATION_ID, DAY, ids(day_readings),
            {"cash": "5000", "credit": "2000"},
            [{"creditor_id": creditor.creditor_id, "amount": "2000"}],
        )

        assert len(result.credit_transactions) == 1
        line = result.credit_transactions[0]
        assert line.amount == Decimal("2000")
        assert line.daily_transaction_id == result.transaction.transaction_id
        assert line.nozzle_reading_id == day_readings[0].reading_id
        assert line.transaction_date == DAY
        assert credit.get_creditor_balance(creditor.creditor_id) == Decimal("2000")
        assert_balance_matches_log(credit, creditor.creditor_id)

    def test_multiple_transactions_per_day(self, reconciler, day_readings):
        reconciler.create_daily_transaction(STATION_ID, DAY, [day_readings[0].reading_id], {"cash": "5000"})
        reconciler.create_daily_transaction(STATION_ID, DAY, [day_readings[1].reading_id], {"online": "2000"})

        assert len(reconciler.get_transactions_for_date(STATION_ID, DAY)) == 2

        summary = reconciler.daily_summary(STATION_ID, DAY, DAY)
        assert summary.transaction_count == 2
        assert summary.total_sale_value == Decimal("7000")
        assert summary.payment_breakdown["cash"] == Decimal("5000")
        assert summary.payment_breakdown["online"] == Decimal("2000")
        assert summary.by_date[DAY]["total_liters"] == Decimal("70")

    def test_readings_keep_requested_order(self, reconciler, day_readings, creditor):
        requested = list(reversed(ids(day_readings)))
        result = reconciler.create_daily_transaction(
            STATION_ID, DAY, requested,
            {"cash": "5000", "credit": "2000"},
            [{"creditor_id": creditor.creditor_id, "amount": "2000"}],
        )

        assert result.transaction.reading_ids == requested
        assert result.credit_transactions[0].nozzle_reading_id == requested[0]

    def test_credit_lines_follow_creditor_id_order(self, reconciler, credit, day_readings, creditor):
        other = credit.create_creditor(STATION_ID, "Auto Stand")
        by_id = sorted([creditor.creditor_id, other.creditor_id])

        result = reconciler.create_daily_transaction(
            STATION_ID, DAY, ids(day_readings),
            {"cash": "5000", "credit": "2000"},
            [
                {"creditor_id": by_id[1], "amount": "1500"},
                {"creditor_id": by_id[0], "amount": "500"},
            ],
        )

        assert [t.creditor_id for t in result.credit_transactions] == by_id
        assert [t.amount for t in result.credit_transactions] == [Decimal("500"), Decimal("1500")]


class TestReadingResolution:
    """Which reading IDs count."""

    def test_unresolved_ids_are_excluded(self, reconciler, readings, day_readings):
        initial = readings.readings.chain(day_readings[0].nozzle_id)[0]
        result = reconciler.create_daily_transaction(
            STATION_ID, DAY,
            [day_readings[0].reading_id, initial.reading_id, "rd-unknown"],
            {"cash": "5000"},
        )

        assert result.transaction.reading_ids == [day_readings[0].reading_id]
        assert result.excluded_reading_ids == [initial.reading_id, "rd-unknown"]

    def test_wrong_date_resolves_nothing(self, reconciler, day_readings):
        with pytest.raises(InvalidInput):
            reconciler.create_daily_transaction(STATION_ID, "2024-01-03", ids(day_readings), {"cash": "7000"})

    def test_wrong_station_resolves_nothing(self, reconciler, day_readings):
        with pytest.raises(InvalidInput):
            reconciler.create_daily_transaction(OTHER_STATION_ID, DAY, ids(day_readings), {"cash": "7000"})

    def test_empty_reading_list(self, reconciler, day_readings):
        with pytest.raises(InvalidInput):
            reconciler.create_daily_transaction(STATION_ID, DAY, [], {"cash": "0"})

    def test_unknown_station(self, reconciler, day_readings):
        with pytest.raises(NotFound):
            reconciler.create_daily_transaction("stn-missing", DAY, ids(day_readings), {"cash": "7000"})

    def test_reading_cannot_be_booked_twice(self, reconciler, day_readings):
        reconciler.create_daily_transaction(STATION_ID, DAY, ids(day_readings), {"cash": "7000"})

        with pytest.raises(InvalidState) as exc:
            reconciler.create_daily_transaction(STATION_ID, DAY, [day_readings[0].reading_id], {"cash": "5000"})
        assert day_readings[0].reading_id in exc.value.details["already_linked"]
        assert len(reconciler.get_transactions_for_date(STATION_ID, DAY)) == 1


class TestTenderValidation:
    """Payment breakdown checks."""

    def test_mismatch_reports_difference(self, reconciler, day_readings):
        with pytest.raises(ReconciliationMismatch) as exc:
            reconciler.create_daily_transaction(STATION_ID, DAY, ids(day_readings), {"cash": "6900"})

        assert Decimal(exc.value.details["difference"]) == Decimal("-100")
        assert len(exc.value.details["per_reading"]) == 2
        assert reconciler.get_transactions_for_date(STATION_ID, DAY) == []

    def test_unknown_tender(self, reconciler, day_readings):
        with pytest.raises(InvalidInput):
            reconciler.create_daily_transaction(STATION_ID, DAY, ids(day_readings), {"cheque": "7000"})

    def test_negative_tender(self, reconciler, day_readings):
        with pytest.raises(InvalidInput):
            reconciler.create_daily_transaction(
                STATION_ID, DAY, ids(day_readings), {"cash": "7100", "online": "-100"}
            )

    def test_credit_requires_allocations(self, reconciler, day_readings):
        with pytest.raises(InvalidInput):
            reconciler.create_daily_transaction(
                STATION_ID, DAY, ids(day_readings), {"cash": "5000", "credit": "2000"}
            )

    def test_allocations_must_match_credit(self, reconciler, day_readings, creditor):
        with pytest.raises(InvalidInput):
            reconciler.create_daily_transaction(
                STATION_ID, DAY, ids(day_readings),
                {"cash": "5000", "credit": "2000"},
                [{"creditor_id": creditor.creditor_id, "amount": "1500"}],
            )

    def test_allocations_without_credit(self, reconciler, day_readings, creditor):
        with pytest.raises(InvalidInput):
            reconciler.create_daily_transaction(
                STATION_ID, DAY, ids(day_readings),
                {"cash": "7000"},
                [{"creditor_id": creditor.creditor_id, "amount": "100"}],
            )

    def test_creditor_of_other_station(self, reconciler, credit, day_readings):
        outsider = credit.create_creditor(OTHER_STATION_ID, "Outsider")

        with pytest.raises(NotFound):
            reconciler.create_daily_transaction(
                STATION_ID, DAY, ids(day_readings),
                {"cash": "5000", "credit": "2000"},
                [{"creditor_id": outsider.creditor_id, "amount": "2000"}],
            )

    def test_inactive_creditor(self, reconciler, credit, day_readings, creditor):
        credit.set_creditor_active(creditor.creditor_id, False)

        with pytest.raises(InvalidState):
            reconciler.create_daily_transaction(
                STATION_ID, DAY, ids(day_readings),
                {"cash": "5000", "credit": "2000"},
                [{"creditor_id": creditor.creditor_id, "amount": "2000"}],
            )


class TestAtomicity:
    """A rejected credit allocation undoes the whole reconciliation."""

    def test_credit_limit_failure_rolls_everything_back(
        self, reconciler, credit, readings, day_readings, creditor
    ):
        tight = credit.create_creditor(STATION_ID, "Small Account", credit_limit="500")

        with pytest.raises(CreditLimitExceeded):
            reconciler.create_daily_transaction(
                STATION_ID, DAY, ids(day_readings),
                {"cash": "4000", "credit": "3000"},
                [
                    {"creditor_id": creditor.creditor_id, "amount": "2000"},
                    {"creditor_id": tight.creditor_id, "amount": "1000"},
                ],
            )

        # the first allocation had already raised this balance inside the unit of work
        assert credit.get_creditor_balance(creditor.creditor_id) == 0
        assert credit.get_ledger(creditor.creditor_id) == []
        assert credit.get_creditor_balance(tight.creditor_id) == 0
        assert reconciler.get_transactions_for_date(STATION_ID, DAY) == []
        for reading_id in ids(day_readings):
            assert readings.get_reading(reading_id).transaction_id is None

    def test_readings_bookable_after_rollback(self, reconciler, credit, day_readings, creditor):
        credit.flag_creditor(creditor.creditor_id, "cheque bounced")
        with pytest.raises(CreditLimitExceeded):
            reconciler.create_daily_transaction(
                STATION_ID, DAY, ids(day_readings),
                {"cash": "5000", "credit": "2000"},
                [{"creditor_id": creditor.creditor_id, "amount": "2000"}],
            )

        result = reconciler.create_daily_transaction(STATION_ID, DAY, ids(day_readings), {"cash": "7000"})
        assert result.transaction.reading_ids == ids(day_readings)
