"""
Tests for the Meter Reading Ledger

Covers sale computation, the monotonic chain, tender splits and the
cascading recompute on edit.
"""

import pytest
from decimal import Decimal

from core.errors import (
    InvalidInput,
    InvalidReading,
    InvalidSplit,
    InvalidState,
    NotFound,
    PriceNotSet,
)
from persistence.models import NozzleStatus
from persistence.repository import NozzleRepository
from conftest import STATION_ID, make_nozzle


def assert_chain_consistent(ledger, nozzle_id):
    chain = ledger.readings.chain(nozzle_id)
    assert chain[0].is_initial_reading
    assert chain[0].litres_sold == 0
    for before, after in zip(chain, chain[1:]):
        assert after.previous_reading == before.reading_value
        assert after.litres_sold == after.reading_value - before.reading_value
        assert after.total_amount == (after.litres_sold * after.price_per_litre).quantize(Decimal("0.01"))
    return chain


class TestRecordReading:
    """Recording readings and computing sales."""

    def test_first_reading_is_initial(self, readings, nozzle, petrol_price):
        reading = readings.record_reading(nozzle.nozzle_id, "2024-01-01", "1000")

        assert reading.is_initial_reading is True
        assert reading.litres_sold == 0
        assert reading.total_amount == 0
        assert reading.previous_reading == Decimal("1000")

    def test_initial_reading_needs_no_price(self, readings, station, db):
        make_nozzle(db, "nz-diesel", fuel_type="diesel")
        reading = readings.record_reading("nz-diesel", "2024-01-01", "1000")
        assert reading.is_initial_reading

    def test_sale_from_meter_delta(self, readings, nozzle, petrol_price):
        """1000 L -> 1050 L at 100/L is 50 L worth 5000."""
        readings.record_reading(nozzle.nozzle_id, "2024-01-01", "1000")
        reading = readings.record_reading(nozzle.nozzle_id, "2024-01-02", "1050")

        assert reading.is_initial_reading is False
        assert reading.litres_sold == Decimal("50")
        assert reading.price_per_litre == Decimal("100")
        assert reading.total_amount == Decimal("5000")
        assert reading.cash_amount == Decimal("5000")
        assert reading.online_amount == 0

    def test_nozzle_cache_updated(self, readings, nozzle, petrol_price, db):
        readings.record_reading(nozzle.nozzle_id, "2024-01-01", "1000")
        readings.record_reading(nozzle.nozzle_id, "2024-01-02", "1050.5")

        cached = NozzleRepository(db).get(nozzle.nozzle_id)
        assert cached.last_reading == Decimal("1050.5")
        assert cached.last_reading_date == "2024-01-02"

    def test_same_day_readings_chain_in_entry_order(self, readings, nozzle, petrol_price):
        readings.record_reading(nozzle.nozzle_id, "2024-01-01", "1000")
        readings.record_reading(nozzle.nozzle_id, "2024-01-02", "1010")
        second = readings.record_reading(nozzle.nozzle_id, "2024-01-02", "1025")

        assert second.previous_reading == Decimal("1010")
        assert second.litres_sold == Decimal("15")
        assert_chain_consistent(readings, nozzle.nozzle_id)

    def test_price_of_reading_date_is_used(self, readings, prices, nozzle, petrol_price):
        prices.set_price(STATION_ID, "petrol", "110", "2024-01-05")
        readings.record_reading(nozzle.nozzle_id, "2024-01-01", "1000")
        early = readings.record_reading(nozzle.nozzle_id, "2024-01-04", "1010")
        late = readings.record_reading(nozzle.nozzle_id, "2024-01-05", "1020")

        assert early.total_amount == Decimal("1000")
        assert late.total_amount == Decimal("1100")


class TestMonotonicChain:
    """Meters only move forward."""

    def test_equal_reading_rejected(self, readings, nozzle, petrol_price):
        readings.record_reading(nozzle.nozzle_id, "2024-01-01", "1000")
        readings.record_reading(nozzle.nozzle_id, "2024-01-02", "1050")

        with pytest.raises(InvalidReading) as exc:
            readings.record_reading(nozzle.nozzle_id, "2024-01-03", "1050")
        assert Decimal(exc.value.details["previous_reading"]) == Decimal("1050")

    def test_lower_reading_rejected(self, readings, nozzle, petrol_price):
        readings.record_reading(nozzle.nozzle_id, "2024-01-01", "1000")

        with pytest.raises(InvalidReading):
            readings.record_reading(nozzle.nozzle_id, "2024-01-02", "999.999")

    def test_initial_below_baseline_rejected(self, readings, nozzle):
        with pytest.raises(InvalidReading):
            readings.record_reading(nozzle.nozzle_id, "2024-01-01", "900")

    def test_back_dated_reading_rejected(self, readings, nozzle, petrol_price):
        readings.record_reading(nozzle.nozzle_id, "2024-01-05", "1000")

        with pytest.raises(InvalidReading):
            readings.record_reading(nozzle.nozzle_id, "2024-01-04", "1100")

    def test_rejected_reading_not_persisted(self, readings, nozzle, petrol_price):
        readings.record_reading(nozzle.nozzle_id, "2024-01-01", "1000")
        with pytest.raises(InvalidReading):
            readings.record_reading(nozzle.nozzle_id, "2024-01-02", "990")

        assert len(readings.readings.chain(nozzle.nozzle_id)) == 1


class TestRecordReadingFailures:
    """Lookups and pricing failures."""

    def test_unknown_nozzle(self, readings, station):
        with pytest.raises(NotFound):
            readings.record_reading("nz-missing", "2024-01-01", "10")

    def test_inactive_nozzle(self, readings, nozzle, db):
        NozzleRepository(db).set_status(nozzle.nozzle_id, NozzleStatus.INACTIVE)

        with pytest.raises(InvalidState):
            readings.record_reading(nozzle.nozzle_id, "2024-01-01", "1000")

    def test_no_price_for_sale(self, readings, nozzle):
        readings.record_reading(nozzle.nozzle_id, "2024-01-01", "1000")

        with pytest.raises(PriceNotSet):
            readings.record_reading(nozzle.nozzle_id, "2024-01-02", "1010")

    def test_non_numeric_value(self, readings, nozzle):
        with pytest.raises(InvalidInput):
            readings.record_reading(nozzle.nozzle_id, "2024-01-01", "lots")

    def test_value_beyond_decimal_precision(self, readings, nozzle, petrol_price):
        readings.record_reading(nozzle.nozzle_id, "2024-01-01", "1000")

        with pytest.raises(InvalidInput):
            readings.record_reading(nozzle.nozzle_id, "2024-01-02", "1e30")
        assert readings.get_previous_reading(nozzle.nozzle_id).reading_value == Decimal("1000")


class TestTenderSplit:
    """Cash/online sub-split at entry time."""

    @pytest.fixture
    def primed(self, readings, nozzle, petrol_price):
        readings.record_reading(nozzle.nozzle_id, "2024-01-01", "1000")
        return nozzle.nozzle_id

    def test_cash_only_given(self, readings, primed):
        reading = readings.record_reading(primed, "2024-01-02", "1050", cash_amount="3000")

        assert reading.cash_amount == Decimal("3000")
        assert reading.online_amount == Decimal("2000")

    def test_online_only_given(self, readings, primed):
        reading = readings.record_reading(primed, "2024-01-02", "1050", online_amount="1250.50")

        assert reading.cash_amount == Decimal("3749.50")
        assert reading.online_amount == Decimal("1250.50")

    def test_both_given_must_add_up(self, readings, primed):
        with pytest.raises(InvalidSplit):
            readings.record_reading(primed, "2024-01-02", "1050", cash_amount="3000", online_amount="1000")

    def test_both_given_within_tolerance(self, readings, primed):
        reading = readings.record_reading(
            primed, "2024-01-02", "1050", cash_amount="3000", online_amount="1999.99"
        )
        assert reading.online_amount == Decimal("1999.99")

    def test_cash_exceeding_total(self, readings, primed):
        with pytest.raises(InvalidSplit):
            readings.record_reading(primed, "2024-01-02", "1050", cash_amount="6000")


class TestPreviousReading:
    """Predecessor lookups."""

    def test_latest_reading(self, readings, nozzle, petrol_price):
        readings.record_reading(nozzle.nozzle_id, "2024-01-01", "1000")
        latest = readings.record_reading(nozzle.nozzle_id, "2024-01-03", "1040")

        assert readings.get_previous_reading(nozzle.nozzle_id).reading_id == latest.reading_id

    def test_strictly_before_date(self, readings, nozzle, petrol_price):
        first = readings.record_reading(nozzle.nozzle_id, "2024-01-01", "1000")
        readings.record_reading(nozzle.nozzle_id, "2024-01-03", "1040")

        previous = readings.get_previous_reading(nozzle.nozzle_id, "2024-01-03")
        assert previous.reading_id == first.reading_id

    def test_none_without_readings(self, readings, nozzle):
        assert readings.get_previous_reading(nozzle.nozzle_id) is None

    def test_unknown_nozzle(self, readings, station):
        with pytest.raises(NotFound):
            readings.get_previous_reading("nz-missing")


class TestEditCascade:
    """Editing a reading recomputes every later reading of the nozzle."""

    @pytest.fixture
    def chain(self, readings, prices, nozzle, petrol_price):
        prices.set_price(STATION_ID, "petrol", "110", "2024-01-03")
        return [
            readings.record_reading(nozzle.nozzle_id, "2024-01-01", "1000"),
            readings.record_reading(nozzle.nozzle_id, "2024-01-02", "1050", online_amount="1000"),
            readings.record_reading(nozzle.nozzle_id, "2024-01-03", "1120", online_amount="7000"),
            readings.record_reading(nozzle.nozzle_id, "2024-01-04", "1200"),
        ]

    def test_edit_recomputes_successor(self, readings, nozzle, chain):
        edited = readings.edit_reading(chain[1].reading_id, new_reading_value="1060")

        assert edited.litres_sold == Decimal("60")
        assert edited.total_amount == Decimal("6000")

        after = assert_chain_consistent(readings, nozzle.nozzle_id)
        assert after[2].previous_reading == Decimal("1060")
        assert after[2].litres_sold == Decimal("60")
        # repriced at its own date
        assert after[2].total_amount == Decimal("6600")
        assert after[3].total_amount == Decimal("8800")

    def test_edit_keeps_online_portion_when_it_fits(self, readings, chain):
        readings.edit_reading(chain[1].reading_id, new_reading_value="1060")
        row = readings.get_reading(chain[1].reading_id)

        assert row.online_amount == Decimal("1000")
        assert row.cash_amount == Decimal("5000")

    def test_edit_moves_overflowing_online_to_cash(self, readings, chain):
        # successor shrinks to 20 L * 110 = 2200, below its 7000 online portion
        readings.edit_reading(chain[1].reading_id, new_reading_value="1100")
        row = readings.get_reading(chain[2].reading_id)

        assert row.total_amount == Decimal("2200")
        assert row.cash_amount == Decimal("2200")
        assert row.online_amount == 0

    def test_edit_initial_reading(self, readings, nozzle, chain):
        readings.edit_reading(chain[0].reading_id, new_reading_value="1010")
        after = assert_chain_consistent(readings, nozzle.nozzle_id)

        assert after[1].litres_sold == Decimal("40")
        assert after[1].total_amount == Decimal("4000")

    def test_edit_breaking_chain_rolls_back(self, readings, nozzle, chain):
        with pytest.raises(InvalidReading):
            readings.edit_reading(chain[1].reading_id, new_reading_value="1130")

        unchanged = readings.get_reading(chain[1].reading_id)
        assert unchanged.reading_value == Decimal("1050")
        assert_chain_consistent(readings, nozzle.nozzle_id)

    def test_edit_last_reading_refreshes_cache(self, readings, nozzle, chain, db):
        readings.edit_reading(chain[3].reading_id, new_reading_value="1210")

        cached = NozzleRepository(db).get(nozzle.nozzle_id)
        assert cached.last_reading == Decimal("1210")

    def test_notes_only_edit(self, readings, chain):
        edited = readings.edit_reading(chain[2].reading_id, notes="meter photo retaken")

        assert edited.notes == "meter photo retaken"
        assert edited.total_amount == chain[2].total_amount

    def test_edit_nothing(self, readings, chain):
        with pytest.raises(InvalidInput):
            readings.edit_reading(chain[1].reading_id)

    def test_edit_unknown_reading(self, readings, chain):
        with pytest.raises(NotFound):
            readings.edit_reading("rd-missing", new_reading_value="1")

    def test_edit_reconciled_reading_refused(self, readings, reconciler, chain):
        reconciler.create_daily_transaction(
            STATION_ID, "2024-01-03", [chain[2].reading_id], {"cash": "700", "online": "7000"}
        )

        with pytest.raises(InvalidState):
            readings.edit_reading(chain[1].reading_id, new_reading_value="1060")
        with pytest.raises(InvalidState):
            readings.edit_reading(chain[2].reading_id, new_reading_value="1125")


class TestReadingQueries:
    """Listing and gaps."""

    def test_list_readings_filters(self, readings, nozzle, second_nozzle, petrol_price):
        readings.record_reading(nozzle.nozzle_id, "2024-01-01", "1000")
        readings.record_reading(nozzle.nozzle_id, "2024-01-02", "1010")
        readings.record_reading(second_nozzle.nozzle_id, "2024-01-02", "500")

        assert len(readings.list_readings(STATION_ID)) == 3
        assert len(readings.list_readings(STATION_ID, nozzle_id=nozzle.nozzle_id)) == 2
        assert len(readings.list_readings(STATION_ID, start_date="2024-01-02")) == 2

    def test_missed_days(self, readings, nozzle, petrol_price):
        readings.record_reading(nozzle.nozzle_id, "2024-01-01", "1000")
        readings.record_reading(nozzle.nozzle_id, "2024-01-02", "1010")
        readings.record_reading(nozzle.nozzle_id, "2024-01-04", "1020")

        missed = readings.missed_days(nozzle.nozzle_id, "2024-01-01", "2024-01-05")
        # the initial reading is not a sale
        assert missed == ["2024-01-01", "2024-01-03", "2024-01-05"]
