"""
Daily Transaction Reconciler

Groups a set of priced readings for one station and date into a daily
transaction and checks that the declared tenders cover the sale:

    cash + online + credit == sum(reading.total_amount)   (within tolerance)

Credit tenders are spread over creditors through CreditLedger.extend_credit
inside the same unit of work; one rejected allocation rolls back the whole
transaction, including every balance already raised.

Any number of transactions may exist per station/date (one per shift). A
reading can be booked into at most one of them.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional
import structlog

from core.config import LedgerConfig
from core.dates import to_day
from core.errors import InvalidInput, InvalidState, NotFound, ReconciliationMismatch
from core.money import ZERO, litres, money, to_decimal, within_tolerance
from credit.ledger import CreditLedger, CreditReference
from persistence.database import Database, IntegrityViolation, get_database
from persistence.models import CreditTransactionRecord, DailyTransactionRecord, ReadingRecord, new_id
from persistence.repository import (
    CreditorRepository,
    DailyTransactionRepository,
    ReadingRepository,
    StationRepository,
)

logger = structlog.get_logger()

TENDERS = ("cash", "online", "credit")


@dataclass
class CreditAllocation:
    """Share of the credit tender charged to one creditor."""
    creditor_id: str
    amount: Decimal


@dataclass
class ReconciliationResult:
    transaction: DailyTransactionRecord
    credit_transactions: List[CreditTransactionRecord] = field(default_factory=list)
    excluded_reading_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction": self.transaction.to_dict(),
            "credit_transactions": [t.to_dict() for t in self.credit_transactions],
            "excluded_reading_ids": list(self.excluded_reading_ids),
        }


@dataclass
class DailySummary:
    """Totals across every daily transaction in a date range."""
    station_id: str
    start_date: str
    end_date: str
    transaction_count: int = 0
    total_liters: Decimal = ZERO
    total_sale_value: Decimal = ZERO
    payment_breakdown: Dict[str, Decimal] = field(default_factory=lambda: {t: ZERO for t in TENDERS})
    by_date: Dict[str, Dict[str, Decimal]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "station_id": self.station_id,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "transaction_count": self.transaction_count,
            "total_liters": str(self.total_liters),
            "total_sale_value": str(self.total_sale_value),
            "payment_breakdown": {k: str(v) for k, v in self.payment_breakdown.items()},
            "by_date": {
                day: {k: str(v) for k, v in values.items()}
                for day, values in sorted(self.by_date.items())
            },
        }


def parse_breakdown(raw: Dict[str, Any]) -> Dict[str, Decimal]:
    """Validate a {cash, online, credit} mapping; missing tenders count as zero."""
    if not isinstance(raw, dict):
        raise InvalidInput("payment_breakdown must be a mapping", {"payment_breakdown": str(raw)})
    unknown = set(raw) - set(TENDERS)
    if unknown:
        raise InvalidInput("Unknown payment tenders", {"tenders": sorted(unknown)})

    breakdown = {}
    for tender in TENDERS:
        value = raw.get(tender)
        amount = money(to_decimal(value, tender)) if value is not None else ZERO
        if amount < ZERO:
            raise InvalidInput(f"{tender} cannot be negative", {tender: str(amount)})
        breakdown[tender] = amount
    return breakdown


def parse_credit_allocations(raw: Optional[List[Any]]) -> List[CreditAllocation]:
    allocations = []
    for item in raw or []:
        if isinstance(item, CreditAllocation):
            creditor_id, amount = item.creditor_id, item.amount
        elif isinstance(item, dict):
            creditor_id, amount = item.get("creditor_id"), item.get("amount")
        else:
            raise InvalidInput("Credit allocation must be a mapping", {"allocation": str(item)})
        if not creditor_id:
            raise InvalidInput("Credit allocation needs a creditor_id", {"allocation": str(item)})
        value = money(to_decimal(amount, "allocation amount"))
        if value <= ZERO:
            raise InvalidInput(
                "Credit allocation amount must be positive",
                {"creditor_id": creditor_id, "amount": str(value)},
            )
        allocations.append(CreditAllocation(creditor_id=creditor_id, amount=value))
    return allocations


class DailyTransactionReconciler:
    """Turns a shift's readings and tenders into a reconciled daily transaction."""

    def __init__(
        self,
        db: Optional[Database] = None,
        credit_ledger: Optional[CreditLedger] = None,
        config: Optional[LedgerConfig] = None,
    ):
        self.db = db or get_database()
        self.config = config or LedgerConfig.from_env()
        self.credit_ledger = credit_ledger or CreditLedger(self.db, self.config)
        self.readings = ReadingRepository(self.db)
        self.transactions = DailyTransactionRepository(self.db)
        self.creditors = CreditorRepository(self.db)
        self.stations = StationRepository(self.db)

    def create_daily_transaction(
        self,
        station_id: str,
        transaction_date: Any,
        reading_ids: List[str],
        payment_breakdown: Dict[str, Any],
        credit_allocations: Optional[List[Any]] = None,
        notes: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> ReconciliationResult:
        day = to_day(transaction_date, "transaction_date")
        if not isinstance(reading_ids, list) or not reading_ids:
            raise InvalidInput("reading_ids must be a non-empty list", {"reading_ids": reading_ids})
        requested = list(dict.fromkeys(reading_ids))
        breakdown = parse_breakdown(payment_breakdown)
        allocations = parse_credit_allocations(credit_allocations)
        tolerance = self.config.tolerance

        if self.stations.get(station_id) is None:
            raise NotFound("Station not found", {"station_id": station_id})

        with self.db.transaction():
            readings = self.readings.find_for_reconciliation(requested, station_id, day)
            if not readings:
                raise InvalidInput(
                    "No valid readings found for specified IDs, station, and date",
                    {"station_id": station_id, "transaction_date": day, "reading_ids": requested},
                )
            found = {r.reading_id for r in readings}
            excluded = [rid for rid in requested if rid not in found]
            if excluded:
                logger.warning(
                    "readings_excluded",
                    station_id=station_id,
                    transaction_date=day,
                    reading_ids=excluded,
                )
            self._check_not_booked(readings)

            total_liters = litres(sum((r.litres_sold for r in readings), ZERO))
            total_sale_value = money(sum((r.total_amount for r in readings), ZERO))
            self._check_tenders(breakdown, total_sale_value, readings, tolerance)
            self._check_credit_allocations(station_id, breakdown["credit"], allocations, tolerance)

            record = DailyTransactionRecord(
                transaction_id=new_id(),
                station_id=station_id,
                transaction_date=day,
                total_liters=total_liters,
                total_sale_value=total_sale_value,
                payment_breakdown=breakdown,
                reading_ids=[r.reading_id for r in readings],
                credit_allocations=[
                    {"creditor_id": a.creditor_id, "amount": a.amount} for a in allocations
                ],
                notes=notes,
                created_by=created_by,
            )
            self.transactions.create(record)
            try:
                self.transactions.link_readings(record.transaction_id, record.reading_ids)
            except IntegrityViolation:
                raise InvalidState(
                    "A reading was booked into another daily transaction concurrently",
                    {"reading_ids": record.reading_ids},
                )

            created = []
            # creditor rows are locked in id order
            for allocation in sorted(allocations, key=lambda a: a.creditor_id):
                created.append(self.credit_ledger.extend_credit(
                    station_id,
                    allocation.creditor_id,
                    allocation.amount,
                    CreditReference(
                        transaction_date=day,
                        nozzle_reading_id=record.reading_ids[0],
                        daily_transaction_id=record.transaction_id,
                        notes=notes,
                        entered_by=created_by,
                    ),
                ))

            self.readings.stamp_transaction(record.reading_ids, record.transaction_id)

        logger.info(
            "daily_transaction_created",
            transaction_id=record.transaction_id,
            station_id=station_id,
            transaction_date=day,
            readings=len(record.reading_ids),
            total_sale_value=str(total_sale_value),
            credit_lines=len(created),
        )
        return ReconciliationResult(
            transaction=record,
            credit_transactions=created,
            excluded_reading_ids=excluded,
        )

    def _check_not_booked(self, readings: List[ReadingRecord]) -> None:
        linked = self.transactions.already_linked([r.reading_id for r in readings])
        if linked:
            raise InvalidState(
                "Readings are already part of another daily transaction",
                {"already_linked": linked},
            )

    @staticmethod
    def _check_tenders(
        breakdown: Dict[str, Decimal],
        total_sale_value: Decimal,
        readings: List[ReadingRecord],
        tolerance: Decimal,
    ) -> None:
        paid = sum(breakdown.values(), ZERO)
        if within_tolerance(paid, total_sale_value, tolerance):
            return
        difference = paid - total_sale_value
        logger.info(
            "reconciliation_mismatch",
            total_sale_value=str(total_sale_value),
            payment_total=str(paid),
            difference=str(difference),
        )
        raise ReconciliationMismatch(
            f"Payment breakdown ({paid}) must match total sale value ({total_sale_value}). "
            f"Difference: {difference}",
            {
                "total_sale_value": str(total_sale_value),
                "payment_total": str(paid),
                "difference": str(difference),
                "per_reading": [
                    {
                        "reading_id": r.reading_id,
                        "litres_sold": str(r.litres_sold),
                        "total_amount": str(r.total_amount),
                    }
                    for r in readings
                ],
            },
        )

    def _check_credit_allocations(
        self,
        station_id: str,
        credit: Decimal,
        allocations: List[CreditAllocation],
        tolerance: Decimal,
    ) -> None:
        if credit <= ZERO:
            if allocations:
                raise InvalidInput(
                    "Credit allocations given without a credit tender",
                    {"creditor_ids": [a.creditor_id for a in allocations]},
                )
            return

        if not allocations:
            raise InvalidInput("Credit allocations required when credit amount > 0", {"credit": str(credit)})
        allocated = sum((a.amount for a in allocations), ZERO)
        if not within_tolerance(allocated, credit, tolerance):
            raise InvalidInput(
                f"Credit allocations ({allocated}) must match credit amount ({credit})",
                {"credit": str(credit), "allocated": str(allocated), "difference": str(allocated - credit)},
            )

        ids = list(dict.fromkeys(a.creditor_id for a in allocations))
        creditors = {c.creditor_id: c for c in self.creditors.get_many(ids)}
        for creditor_id in ids:
            creditor = creditors.get(creditor_id)
            if creditor is None or creditor.station_id != station_id:
                raise NotFound("Creditor not found for allocation", {"creditor_id": creditor_id})
            if not creditor.is_active:
                raise InvalidState("Creditor is not active", {"creditor_id": creditor_id})

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_transaction(self, transaction_id: str) -> DailyTransactionRecord:
        txn = self.transactions.get(transaction_id)
        if txn is None:
            raise NotFound("Daily transaction not found", {"transaction_id": transaction_id})
        return txn

    def get_transactions_for_date(self, station_id: str, transaction_date: Any) -> List[DailyTransactionRecord]:
        return self.transactions.list_for_date(station_id, to_day(transaction_date, "transaction_date"))

    def daily_summary(self, station_id: str, start_date: Any, end_date: Any) -> DailySummary:
        """Sum every transaction in the range; shifts on one date are added, never merged."""
        start = to_day(start_date, "start_date")
        end = to_day(end_date, "end_date")
        if start > end:
            raise InvalidInput("start_date must not be after end_date", {"start_date": start, "end_date": end})

        summary = DailySummary(station_id=station_id, start_date=start, end_date=end)
        for txn in self.transactions.list_for_range(station_id, start, end):
            summary.transaction_count += 1
            summary.total_liters += txn.total_liters
            summary.total_sale_value += txn.total_sale_value
            day = summary.by_date.setdefault(
                txn.transaction_date,
                {"total_liters": ZERO, "total_sale_value": ZERO, **{t: ZERO for t in TENDERS}},
            )
            day["total_liters"] += txn.total_liters
            day["total_sale_value"] += txn.total_sale_value
            for tender in TENDERS:
                amount = txn.payment_breakdown.get(tender, ZERO)
                summary.payment_breakdown[tender] += amount
                day[tender] += amount
        return summary
