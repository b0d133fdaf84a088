"""
Meter Reading Ledger

Converts cumulative nozzle meter readings into sales. Each reading's
litres_sold is the distance from its predecessor's meter value, priced at
the fuel price in force on the reading date.

Chain invariants per nozzle:
- readings are ordered by (reading_date, sequence)
- the first reading is the initial reading and sells nothing
- every later reading_value is strictly greater than the one before it

Recording locks the nozzle row, so two readings for one nozzle can never
both read the same predecessor. Readings for different nozzles do not
contend on that lock.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, List, Optional
import structlog

from core.config import LedgerConfig
from core.dates import optional_day, to_day
from core.errors import InvalidInput, InvalidReading, InvalidSplit, InvalidState, NotFound
from core.money import ZERO, litres, money, optional_decimal, to_decimal, within_tolerance
from persistence.database import Database, get_database
from persistence.models import NozzleRecord, ReadingRecord, new_id
from persistence.repository import NozzleRepository, ReadingRepository
from .pricing import PriceResolver

logger = structlog.get_logger()


@dataclass
class TenderSplit:
    """Cash/online portions of one reading's sale value."""
    cash: Decimal
    online: Decimal


def split_tender(
    total_amount: Decimal,
    cash_amount: Optional[Decimal],
    online_amount: Optional[Decimal],
    tolerance: Decimal,
) -> TenderSplit:
    """
    Resolve the cash/online sub-split of a sale.

    Both sides given: they must add up to the total. One side given: the
    other is the remainder and may not go negative. Neither given: all cash.
    """
    if total_amount <= ZERO:
        return TenderSplit(cash=ZERO, online=ZERO)

    for name, value in (("cash_amount", cash_amount), ("online_amount", online_amount)):
        if value is not None and value < ZERO:
            raise InvalidSplit(f"{name} cannot be negative", {name: str(value)})

    if cash_amount is not None and online_amount is not None:
        if not within_tolerance(cash_amount + online_amount, total_amount, tolerance):
            raise InvalidSplit(
                f"Cash ({cash_amount}) + Online ({online_amount}) must equal Total ({total_amount})",
                {
                    "cash_amount": str(cash_amount),
                    "online_amount": str(online_amount),
                    "total_amount": str(total_amount),
                    "difference": str(cash_amount + online_amount - total_amount),
                },
            )
        return TenderSplit(cash=money(cash_amount), online=money(online_amount))

    if cash_amount is not None:
        online = money(total_amount - cash_amount)
        if online < ZERO:
            raise InvalidSplit(
                f"Cash amount ({cash_amount}) cannot exceed total ({total_amount})",
                {"cash_amount": str(cash_amount), "total_amount": str(total_amount)},
            )
        return TenderSplit(cash=money(cash_amount), online=online)

    if online_amount is not None:
        cash = money(total_amount - online_amount)
        if cash < ZERO:
            raise InvalidSplit(
                f"Online amount ({online_amount}) cannot exceed total ({total_amount})",
                {"online_amount": str(online_amount), "total_amount": str(total_amount)},
            )
        return TenderSplit(cash=cash, online=money(online_amount))

    return TenderSplit(cash=total_amount, online=ZERO)


class MeterReadingLedger:
    """Owns nozzle readings and the sale values derived from them."""

    def __init__(
        self,
        db: Optional[Database] = None,
        prices: Optional[PriceResolver] = None,
        config: Optional[LedgerConfig] = None,
    ):
        self.db = db or get_database()
        self.config = config or LedgerConfig.from_env()
        self.prices = prices or PriceResolver(self.db)
        self.nozzles = NozzleRepository(self.db)
        self.readings = ReadingRepository(self.db)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_reading(
        self,
        nozzle_id: str,
        reading_date: Any,
        reading_value: Any,
        cash_amount: Any = None,
        online_amount: Any = None,
        notes: Optional[str] = None,
        entered_by: Optional[str] = None,
    ) -> ReadingRecord:
        """Record the next meter reading of a nozzle and price the sale it implies."""
        day = to_day(reading_date, "reading_date")
        value = litres(to_decimal(reading_value, "reading_value"))
        if value < ZERO:
            raise InvalidInput("reading_value cannot be negative", {"reading_value": str(value)})
        cash = optional_decimal(cash_amount, "cash_amount")
        online = optional_decimal(online_amount, "online_amount")

        with self.db.transaction():
            nozzle = self._active_nozzle_for_update(nozzle_id)
            latest = self.readings.latest_for_nozzle(nozzle_id)

            if latest is None:
                reading = self._initial_reading(nozzle, day, value)
            else:
                if day < latest.reading_date:
                    raise InvalidReading(
                        f"Reading date {day} is before the latest reading on {latest.reading_date}",
                        {"reading_date": day, "latest_reading_date": latest.reading_date},
                    )
                self._check_advances(value, latest.reading_value)

                sold = litres(value - latest.reading_value)
                price = self.prices.require_price(nozzle.station_id, nozzle.fuel_type, day)
                amount = money(sold * price.price)
                split = split_tender(amount, cash, online, self.config.tolerance)

                reading = ReadingRecord(
                    reading_id=new_id(),
                    nozzle_id=nozzle.nozzle_id,
                    station_id=nozzle.station_id,
                    pump_id=nozzle.pump_id,
                    fuel_type=nozzle.fuel_type,
                    reading_date=day,
                    sequence=self.readings.next_sequence(nozzle_id),
                    reading_value=value,
                    previous_reading=latest.reading_value,
                    litres_sold=sold,
                    price_per_litre=price.price,
                    total_amount=amount,
                    cash_amount=split.cash,
                    online_amount=split.online,
                )

            reading.notes = notes
            reading.entered_by = entered_by
            self.readings.create(reading)
            self.nozzles.update_last_reading(nozzle_id, value, day)

        logger.info(
            "reading_recorded",
            reading_id=reading.reading_id,
            nozzle_id=nozzle_id,
            reading_date=day,
            litres_sold=str(reading.litres_sold),
            total_amount=str(reading.total_amount),
            is_initial=reading.is_initial_reading,
        )
        return reading

    def _active_nozzle_for_update(self, nozzle_id: str) -> NozzleRecord:
        nozzle = self.nozzles.get_for_update(nozzle_id)
        if nozzle is None:
            raise NotFound("Nozzle not found", {"nozzle_id": nozzle_id})
        if not nozzle.is_active:
            raise InvalidState("Nozzle is not active", {"nozzle_id": nozzle_id, "status": nozzle.status})
        return nozzle

    def _initial_reading(self, nozzle: NozzleRecord, day: str, value: Decimal) -> ReadingRecord:
        if value < nozzle.initial_reading:
            raise InvalidReading(
                f"Initial reading must be >= the nozzle baseline ({nozzle.initial_reading})",
                {"reading_value": str(value), "previous_reading": str(nozzle.initial_reading)},
            )
        return ReadingRecord(
            reading_id=new_id(),
            nozzle_id=nozzle.nozzle_id,
            station_id=nozzle.station_id,
            pump_id=nozzle.pump_id,
            fuel_type=nozzle.fuel_type,
            reading_date=day,
            sequence=self.readings.next_sequence(nozzle.nozzle_id),
            reading_value=value,
            previous_reading=nozzle.initial_reading,
            is_initial_reading=True,
        )

    @staticmethod
    def _check_advances(value: Decimal, previous: Decimal) -> None:
        if value <= previous:
            raise InvalidReading(
                f"Reading must be greater than previous reading ({previous}). Meter readings only go forward.",
                {"reading_value": str(value), "previous_reading": str(previous)},
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_reading(self, reading_id: str) -> ReadingRecord:
        reading = self.readings.get(reading_id)
        if reading is None:
            raise NotFound("Reading not found", {"reading_id": reading_id})
        return reading

    def get_previous_reading(self, nozzle_id: str, as_of_date: Any = None) -> Optional[ReadingRecord]:
        """Latest reading of the nozzle, or the latest one strictly before as_of_date."""
        if self.nozzles.get(nozzle_id) is None:
            raise NotFound("Nozzle not found", {"nozzle_id": nozzle_id})
        day = optional_day(as_of_date, "as_of_date")
        if day is None:
            return self.readings.latest_for_nozzle(nozzle_id)
        return self.readings.latest_before(nozzle_id, day)

    def list_readings(
        self,
        station_id: str,
        nozzle_id: Optional[str] = None,
        start_date: Any = None,
        end_date: Any = None,
        limit: int = 500,
    ) -> List[ReadingRecord]:
        return self.readings.list(
            station_id,
            nozzle_id=nozzle_id,
            start_date=optional_day(start_date, "start_date"),
            end_date=optional_day(end_date, "end_date"),
            limit=limit,
        )

    def missed_days(self, nozzle_id: str, start_date: Any, end_date: Any) -> List[str]:
        """Dates in the range on which the nozzle has no sale reading."""
        start = to_day(start_date, "start_date")
        end = to_day(end_date, "end_date")
        if start > end:
            raise InvalidInput("start_date must not be after end_date", {"start_date": start, "end_date": end})
        if self.nozzles.get(nozzle_id) is None:
            raise NotFound("Nozzle not found", {"nozzle_id": nozzle_id})

        seen = set(self.readings.dates_with_sales(nozzle_id, start, end))
        missed = []
        current = date.fromisoformat(start)
        last = date.fromisoformat(end)
        while current <= last:
            if current.isoformat() not in seen:
                missed.append(current.isoformat())
            current += timedelta(days=1)
        return missed

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------

    def edit_reading(
        self,
        reading_id: str,
        new_reading_value: Any = None,
        notes: Optional[str] = None,
    ) -> ReadingRecord:
        """
        Correct a historical reading and recompute the rest of its nozzle's chain.

        The nozzle's readings are loaded once, recomputed left to right from
        the edited position and written back as one batch inside the same
        unit of work. Every recomputed row is repriced at its own date.
        Raises InvalidState when a row whose sale value would change is
        already part of a daily transaction.
        """
        if new_reading_value is None and notes is None:
            raise InvalidInput("Nothing to edit", {"reading_id": reading_id})
        new_value = None
        if new_reading_value is not None:
            new_value = litres(to_decimal(new_reading_value, "new_reading_value"))
            if new_value < ZERO:
                raise InvalidInput("reading_value cannot be negative", {"reading_value": str(new_value)})

        with self.db.transaction():
            target = self.readings.get(reading_id)
            if target is None:
                raise NotFound("Reading not found", {"reading_id": reading_id})
            nozzle = self.nozzles.get_for_update(target.nozzle_id)
            if nozzle is None:
                raise NotFound("Nozzle not found", {"nozzle_id": target.nozzle_id})

            chain = self.readings.chain(target.nozzle_id, lock=True)
            position = next(i for i, r in enumerate(chain) if r.reading_id == reading_id)
            edited = chain[position]
            if notes is not None:
                edited.notes = notes

            changed: List[ReadingRecord] = []
            if new_value is not None and new_value != edited.reading_value:
                edited.reading_value = new_value
                changed = self._recompute_from(chain, position, nozzle)
            if not any(row is edited for row in changed):
                changed.insert(0, edited)

            self.readings.save_computed(changed)

            tail = chain[-1]
            self.nozzles.update_last_reading(nozzle.nozzle_id, tail.reading_value, tail.reading_date)

        logger.info(
            "reading_edited",
            reading_id=reading_id,
            nozzle_id=edited.nozzle_id,
            reading_value=str(edited.reading_value),
            rows_recomputed=len(changed),
        )
        return edited

    def _recompute_from(
        self,
        chain: List[ReadingRecord],
        position: int,
        nozzle: NozzleRecord,
    ) -> List[ReadingRecord]:
        """Single ordered pass over chain[position:]; returns every row it rewrote."""
        rewritten = []
        for index in range(position, len(chain)):
            row = chain[index]
            if index == 0:
                if row.reading_value < nozzle.initial_reading:
                    raise InvalidReading(
                        f"Initial reading must be >= the nozzle baseline ({nozzle.initial_reading})",
                        {"reading_value": str(row.reading_value), "previous_reading": str(nozzle.initial_reading)},
                    )
                before = (row.previous_reading, row.litres_sold, row.total_amount)
                row.previous_reading = nozzle.initial_reading
            else:
                previous = chain[index - 1].reading_value
                self._check_advances(row.reading_value, previous)
                before = (row.previous_reading, row.litres_sold, row.total_amount)
                self._reprice(row, previous)

            after = (row.previous_reading, row.litres_sold, row.total_amount)
            if index == position or after != before:
                if row.transaction_id is not None:
                    raise InvalidState(
                        "Reading is already part of a daily transaction",
                        {"reading_id": row.reading_id, "transaction_id": row.transaction_id},
                    )
                rewritten.append(row)
        return rewritten

    def _reprice(self, row: ReadingRecord, previous: Decimal) -> None:
        row.previous_reading = previous
        row.litres_sold = litres(row.reading_value - previous)
        price = self.prices.require_price(row.station_id, row.fuel_type, row.reading_date)
        row.price_per_litre = price.price
        row.total_amount = money(row.litres_sold * price.price)

        # Keep the recorded online portion while it still fits the new total
        if row.online_amount <= row.total_amount:
            row.cash_amount = money(row.total_amount - row.online_amount)
        else:
            row.cash_amount = row.total_amount
            row.online_amount = ZERO

