"""
Repository Layer for Forecourt Ledger

Provides the SQL for every persisted entity. Methods ending in
`_for_update` must be called inside Database.transaction(); on PostgreSQL
they hold the selected row lock until that unit of work ends.
"""

from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional
from datetime import datetime, timezone
import structlog

from core.money import ZERO, as_str
from .database import Database, get_database
from .models import (
    CreditorRecord,
    CreditTransactionRecord,
    CreditTransactionType,
    DailyTransactionRecord,
    FuelPriceRecord,
    NozzleRecord,
    ReadingRecord,
    SettlementLinkRecord,
    StationRecord,
    _day,
    _dec,
)

logger = structlog.get_logger()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _placeholders(values: List[Any]) -> str:
    return ",".join(["?" for _ in values])


class StationRepository:
    """Repository for station records."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, station: StationRecord) -> StationRecord:
        self.db.execute(
            "INSERT INTO stations (station_id, name, created_at) VALUES (?, ?, ?)",
            station.to_db_tuple()
        )
        logger.info("station_created", station_id=station.station_id)
        return station

    def get(self, station_id: str) -> Optional[StationRecord]:
        results = self.db.execute("SELECT * FROM stations WHERE station_id = ?", (station_id,))
        return StationRecord.from_row(results[0]) if results else None


class NozzleRepository:
    """Repository for nozzle records."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, nozzle: NozzleRecord) -> NozzleRecord:
        self.db.execute(
            """INSERT INTO nozzles
               (nozzle_id, station_id, pump_id, nozzle_number, fuel_type,
                initial_reading, status, last_reading, last_reading_date, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            nozzle.to_db_tuple()
        )
        logger.info("nozzle_created", nozzle_id=nozzle.nozzle_id, fuel_type=nozzle.fuel_type)
        return nozzle

    def get(self, nozzle_id: str) -> Optional[NozzleRecord]:
        results = self.db.execute("SELECT * FROM nozzles WHERE nozzle_id = ?", (nozzle_id,))
        return NozzleRecord.from_row(results[0]) if results else None

    def get_for_update(self, nozzle_id: str) -> Optional[NozzleRecord]:
        """Lock the nozzle row; serializes readings on one nozzle."""
        results = self.db.execute(
            "SELECT * FROM nozzles WHERE nozzle_id = ?" + self.db.for_update(),
            (nozzle_id,)
        )
        return NozzleRecord.from_row(results[0]) if results else None

    def update_last_reading(self, nozzle_id: str, value: Decimal, reading_date: str) -> None:
        self.db.execute(
            "UPDATE nozzles SET last_reading = ?, last_reading_date = ? WHERE nozzle_id = ?",
            (as_str(value), reading_date, nozzle_id)
        )

    def set_status(self, nozzle_id: str, status: str) -> None:
        self.db.execute("UPDATE nozzles SET status = ? WHERE nozzle_id = ?", (status, nozzle_id))
        logger.info("nozzle_status_updated", nozzle_id=nozzle_id, status=status)


class FuelPriceRepository:
    """Repository for the fuel price time series."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, price: FuelPriceRecord) -> FuelPriceRecord:
        self.db.execute(
            """INSERT INTO fuel_prices
               (price_id, station_id, fuel_type, effective_from, price, cost_price, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            price.to_db_tuple()
        )
        logger.info(
            "fuel_price_set",
            station_id=price.station_id,
            fuel_type=price.fuel_type,
            effective_from=price.effective_from,
            price=str(price.price),
        )
        return price

    def latest_for_date(self, station_id: str, fuel_type: str, on_date: str) -> Optional[FuelPriceRecord]:
        """Most recent row with effective_from <= on_date."""
        results = self.db.execute(
            """SELECT * FROM fuel_prices
               WHERE station_id = ? AND fuel_type = ? AND effective_from <= ?
               ORDER BY effective_from DESC, created_at DESC LIMIT 1""",
            (station_id, fuel_type, on_date)
        )
        return FuelPriceRecord.from_row(results[0]) if results else None

    def history(self, station_id: str, fuel_type: str) -> List[FuelPriceRecord]:
        results = self.db.execute(
            """SELECT * FROM fuel_prices WHERE station_id = ? AND fuel_type = ?
               ORDER BY effective_from ASC, created_at ASC""",
            (station_id, fuel_type)
        )
        return [FuelPriceRecord.from_row(r) for r in results]


class ReadingRepository:
    """Repository for nozzle readings."""

    _INSERT = """INSERT INTO nozzle_readings
        (reading_id, nozzle_id, station_id, pump_id, fuel_type, reading_date, sequence,
         reading_value, previous_reading, litres_sold, price_per_litre, total_amount,
         cash_amount, online_amount, is_initial_reading, transaction_id, notes,
         entered_by, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, reading: ReadingRecord) -> ReadingRecord:
        self.db.execute(self._INSERT, reading.to_db_tuple())
        return reading

    def get(self, reading_id: str) -> Optional[ReadingRecord]:
        results = self.db.execute("SELECT * FROM nozzle_readings WHERE reading_id = ?", (reading_id,))
        return ReadingRecord.from_row(results[0]) if results else None

    def latest_for_nozzle(self, nozzle_id: str) -> Optional[ReadingRecord]:
        results = self.db.execute(
            """SELECT * FROM nozzle_readings WHERE nozzle_id = ?
               ORDER BY reading_date DESC, sequence DESC LIMIT 1""",
            (nozzle_id,)
        )
        return ReadingRecord.from_row(results[0]) if results else None

    def latest_before(self, nozzle_id: str, before_date: str) -> Optional[ReadingRecord]:
        """Latest reading strictly before a date."""
        results = self.db.execute(
            """SELECT * FROM nozzle_readings WHERE nozzle_id = ? AND reading_date < ?
               ORDER BY reading_date DESC, sequence DESC LIMIT 1""",
            (nozzle_id, before_date)
        )
        return ReadingRecord.from_row(results[0]) if results else None

    def next_sequence(self, nozzle_id: str) -> int:
        results = self.db.execute(
            "SELECT MAX(sequence) AS seq FROM nozzle_readings WHERE nozzle_id = ?",
            (nozzle_id,)
        )
        current = results[0].get("seq") if results else None
        return int(current or 0) + 1

    def chain(self, nozzle_id: str, lock: bool = False) -> List[ReadingRecord]:
        """Every reading of a nozzle in chain order; lock=True row-locks them for a rewrite."""
        results = self.db.execute(
            """SELECT * FROM nozzle_readings WHERE nozzle_id = ?
               ORDER BY reading_date ASC, sequence ASC""" + (self.db.for_update() if lock else ""),
            (nozzle_id,)
        )
        return [ReadingRecord.from_row(r) for r in results]

    def save_computed(self, readings: Iterable[ReadingRecord]) -> int:
        """Persist recomputed values for a batch of readings in one round trip."""
        now = _now()
        params = [
            (
                as_str(r.reading_value),
                as_str(r.previous_reading),
                as_str(r.litres_sold),
                as_str(r.price_per_litre),
                as_str(r.total_amount),
                as_str(r.cash_amount),
                as_str(r.online_amount),
                r.notes,
                now,
                r.reading_id,
            )
            for r in readings
        ]
        if not params:
            return 0
        return self.db.execute_many(
            """UPDATE nozzle_readings SET
                 reading_value = ?, previous_reading = ?, litres_sold = ?,
                 price_per_litre = ?, total_amount = ?, cash_amount = ?,
                 online_amount = ?, notes = ?, updated_at = ?
               WHERE reading_id = ?""",
            params
        )

    def find_for_reconciliation(
        self,
        reading_ids: List[str],
        station_id: str,
        on_date: str,
    ) -> List[ReadingRecord]:
        """
        Non-initial readings among reading_ids that belong to the station and
        date, row-locked and returned in the order of reading_ids.
        """
        if not reading_ids:
            return []
        results = self.db.execute(
            f"""SELECT * FROM nozzle_readings
                WHERE reading_id IN ({_placeholders(reading_ids)})
                  AND station_id = ? AND reading_date = ? AND is_initial_reading = ?
                ORDER BY reading_id""" + self.db.for_update(),
            (*reading_ids, station_id, on_date, False)
        )
        position = {rid: i for i, rid in enumerate(reading_ids)}
        readings = [ReadingRecord.from_row(r) for r in results]
        return sorted(readings, key=lambda r: position[r.reading_id])

    def stamp_transaction(self, reading_ids: List[str], transaction_id: str) -> int:
        if not reading_ids:
            return 0
        self.db.execute(
            f"UPDATE nozzle_readings SET transaction_id = ?, updated_at = ? WHERE reading_id IN ({_placeholders(reading_ids)})",
            (transaction_id, _now(), *reading_ids)
        )
        return len(reading_ids)

    def list(
        self,
        station_id: str,
        nozzle_id: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        limit: int = 500,
    ) -> List[ReadingRecord]:
        clauses = ["station_id = ?"]
        params: List[Any] = [station_id]
        if nozzle_id:
            clauses.append("nozzle_id = ?")
            params.append(nozzle_id)
        if start_date:
            clauses.append("reading_date >= ?")
            params.append(start_date)
        if end_date:
            clauses.append("reading_date <= ?")
            params.append(end_date)
        params.append(limit)
        results = self.db.execute(
            f"""SELECT * FROM nozzle_readings WHERE {' AND '.join(clauses)}
                ORDER BY reading_date DESC, sequence DESC LIMIT ?""",
            tuple(params)
        )
        return [ReadingRecord.from_row(r) for r in results]

    def dates_with_sales(self, nozzle_id: str, start_date: str, end_date: str) -> List[str]:
        results = self.db.execute(
            """SELECT DISTINCT reading_date FROM nozzle_readings
               WHERE nozzle_id = ? AND reading_date >= ? AND reading_date <= ?
                 AND is_initial_reading = ?""",
            (nozzle_id, start_date, end_date, False)
        )
        return sorted(_day(r["reading_date"]) for r in results)


class DailyTransactionRepository:
    """Repository for daily transactions and their reading links."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, txn: DailyTransactionRecord) -> DailyTransactionRecord:
        self.db.execute(
            """INSERT INTO daily_transactions
               (transaction_id, station_id, transaction_date, total_liters, total_sale_value,
                payment_breakdown, reading_ids, credit_allocations, status, notes,
                created_by, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            txn.to_db_tuple()
        )
        return txn

    def link_readings(self, transaction_id: str, reading_ids: List[str]) -> int:
        """Claim readings for a transaction; raises IntegrityViolation if one is already claimed."""
        return self.db.execute_many(
            "INSERT INTO daily_transaction_readings (reading_id, transaction_id) VALUES (?, ?)",
            [(reading_id, transaction_id) for reading_id in reading_ids]
        )

    def already_linked(self, reading_ids: List[str]) -> Dict[str, str]:
        if not reading_ids:
            return {}
        results = self.db.execute(
            f"""SELECT reading_id, transaction_id FROM daily_transaction_readings
                WHERE reading_id IN ({_placeholders(reading_ids)})""",
            tuple(reading_ids)
        )
        return {r["reading_id"]: r["transaction_id"] for r in results}

    def get(self, transaction_id: str) -> Optional[DailyTransactionRecord]:
        results = self.db.execute(
            "SELECT * FROM daily_transactions WHERE transaction_id = ?",
            (transaction_id,)
        )
        return DailyTransactionRecord.from_row(results[0]) if results else None

    def list_for_date(self, station_id: str, on_date: str) -> List[DailyTransactionRecord]:
        results = self.db.execute(
            """SELECT * FROM daily_transactions WHERE station_id = ? AND transaction_date = ?
               ORDER BY created_at ASC""",
            (station_id, on_date)
        )
        return [DailyTransactionRecord.from_row(r) for r in results]

    def list_for_range(self, station_id: str, start_date: str, end_date: str) -> List[DailyTransactionRecord]:
        results = self.db.execute(
            """SELECT * FROM daily_transactions
               WHERE station_id = ? AND transaction_date >= ? AND transaction_date <= ?
               ORDER BY transaction_date DESC, created_at ASC""",
            (station_id, start_date, end_date)
        )
        return [DailyTransactionRecord.from_row(r) for r in results]


class CreditorRepository:
    """Repository for creditor accounts."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, creditor: CreditorRecord) -> CreditorRecord:
        self.db.execute(
            """INSERT INTO creditors
               (creditor_id, station_id, name, business_name, phone, credit_limit,
                credit_period_days, current_balance, is_active, is_flagged, flag_reason,
                last_transaction_date, last_payment_date, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            creditor.to_db_tuple()
        )
        logger.info("creditor_created", creditor_id=creditor.creditor_id, station_id=creditor.station_id)
        return creditor

    def get(self, creditor_id: str) -> Optional[CreditorRecord]:
        results = self.db.execute("SELECT * FROM creditors WHERE creditor_id = ?", (creditor_id,))
        return CreditorRecord.from_row(results[0]) if results else None

    def get_for_update(self, creditor_id: str) -> Optional[CreditorRecord]:
        """Lock the creditor row for the rest of the unit of work."""
        results = self.db.execute(
            "SELECT * FROM creditors WHERE creditor_id = ?" + self.db.for_update(),
            (creditor_id,)
        )
        return CreditorRecord.from_row(results[0]) if results else None

    def get_many(self, creditor_ids: List[str]) -> List[CreditorRecord]:
        if not creditor_ids:
            return []
        results = self.db.execute(
            f"SELECT * FROM creditors WHERE creditor_id IN ({_placeholders(creditor_ids)})",
            tuple(creditor_ids)
        )
        return [CreditorRecord.from_row(r) for r in results]

    def apply_credit(self, creditor_id: str, new_balance: Decimal, on_date: str) -> None:
        self.db.execute(
            """UPDATE creditors SET current_balance = ?, last_transaction_date = ?, updated_at = ?
               WHERE creditor_id = ?""",
            (as_str(new_balance), on_date, _now(), creditor_id)
        )

    def apply_settlement(self, creditor_id: str, new_balance: Decimal, on_date: str) -> None:
        self.db.execute(
            """UPDATE creditors SET current_balance = ?, last_payment_date = ?, updated_at = ?
               WHERE creditor_id = ?""",
            (as_str(new_balance), on_date, _now(), creditor_id)
        )

    def set_balance(self, creditor_id: str, balance: Decimal) -> None:
        self.db.execute(
            "UPDATE creditors SET current_balance = ?, updated_at = ? WHERE creditor_id = ?",
            (as_str(balance), _now(), creditor_id)
        )

    def set_flag(self, creditor_id: str, flagged: bool, reason: Optional[str]) -> None:
        self.db.execute(
            "UPDATE creditors SET is_flagged = ?, flag_reason = ?, updated_at = ? WHERE creditor_id = ?",
            (flagged, reason, _now(), creditor_id)
        )
        logger.info("creditor_flag_updated", creditor_id=creditor_id, flagged=flagged, reason=reason)

    def set_active(self, creditor_id: str, active: bool) -> None:
        self.db.execute(
            "UPDATE creditors SET is_active = ?, updated_at = ? WHERE creditor_id = ?",
            (active, _now(), creditor_id)
        )

    def list_for_station(self, station_id: str, active_only: bool = True) -> List[CreditorRecord]:
        if active_only:
            results = self.db.execute(
                "SELECT * FROM creditors WHERE station_id = ? AND is_active = ? ORDER BY name ASC",
                (station_id, True)
            )
        else:
            results = self.db.execute(
                "SELECT * FROM creditors WHERE station_id = ? ORDER BY name ASC",
                (station_id,)
            )
        return [CreditorRecord.from_row(r) for r in results]


class CreditTransactionRepository:
    """Repository for the append-only credit ledger. There is no update or delete."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, txn: CreditTransactionRecord) -> CreditTransactionRecord:
        self.db.execute(
            """INSERT INTO credit_transactions
               (credit_transaction_id, station_id, creditor_id, transaction_type, amount,
                transaction_date, nozzle_reading_id, daily_transaction_id, fuel_type, litres,
                price_per_litre, vehicle_number, reference_number, notes, entered_by, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            txn.to_db_tuple()
        )
        return txn

    def get(self, credit_transaction_id: str) -> Optional[CreditTransactionRecord]:
        results = self.db.execute(
            "SELECT * FROM credit_transactions WHERE credit_transaction_id = ?",
            (credit_transaction_id,)
        )
        return CreditTransactionRecord.from_row(results[0]) if results else None

    def get_for_update(self, credit_transaction_id: str) -> Optional[CreditTransactionRecord]:
        results = self.db.execute(
            "SELECT * FROM credit_transactions WHERE credit_transaction_id = ?" + self.db.for_update(),
            (credit_transaction_id,)
        )
        return CreditTransactionRecord.from_row(results[0]) if results else None

    def list_for_creditor(
        self,
        creditor_id: str,
        transaction_type: Optional[str] = None,
    ) -> List[CreditTransactionRecord]:
        if transaction_type:
            results = self.db.execute(
                """SELECT * FROM credit_transactions WHERE creditor_id = ? AND transaction_type = ?
                   ORDER BY transaction_date ASC, created_at ASC""",
                (creditor_id, transaction_type)
            )
        else:
            results = self.db.execute(
                """SELECT * FROM credit_transactions WHERE creditor_id = ?
                   ORDER BY transaction_date ASC, created_at ASC""",
                (creditor_id,)
            )
        return [CreditTransactionRecord.from_row(r) for r in results]

    def totals(self, creditor_id: str) -> Dict[str, Decimal]:
        """Sum of credit and settlement amounts, computed exactly in Python."""
        sums = {CreditTransactionType.CREDIT: ZERO, CreditTransactionType.SETTLEMENT: ZERO}
        for txn in self.list_for_creditor(creditor_id):
            sums[txn.transaction_type] = sums.get(txn.transaction_type, ZERO) + txn.amount
        return sums


class SettlementLinkRepository:
    """Repository for settlement-to-credit allocation links."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create_many(self, links: List[SettlementLinkRecord]) -> int:
        if not links:
            return 0
        return self.db.execute_many(
            """INSERT INTO credit_settlement_links
               (link_id, settlement_id, credit_transaction_id, amount, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            [link.to_db_tuple() for link in links]
        )

    def settled_amount(self, credit_transaction_id: str) -> Decimal:
        results = self.db.execute(
            "SELECT amount FROM credit_settlement_links WHERE credit_transaction_id = ?",
            (credit_transaction_id,)
        )
        return sum((_dec(r["amount"]) for r in results), ZERO)

    def settled_amounts(self, credit_transaction_ids: List[str]) -> Dict[str, Decimal]:
        if not credit_transaction_ids:
            return {}
        results = self.db.execute(
            f"""SELECT * FROM credit_settlement_links
                WHERE credit_transaction_id IN ({_placeholders(credit_transaction_ids)})""",
            tuple(credit_transaction_ids)
        )
        settled = {cid: ZERO for cid in credit_transaction_ids}
        for row in results:
            link = SettlementLinkRecord.from_row(row)
            settled[link.credit_transaction_id] += link.amount
        return settled

    def for_settlement(self, settlement_id: str) -> List[SettlementLinkRecord]:
        results = self.db.execute(
            "SELECT * FROM credit_settlement_links WHERE settlement_id = ? ORDER BY created_at ASC",
            (settlement_id,)
        )
        return [SettlementLinkRecord.from_row(r) for r in results]

