"""
Credit Ledger

Keeps each creditor's outstanding balance. The append-only table of
credit_transactions is the source of truth; creditors.current_balance is a
running total that every mutation updates in the same unit of work, under
an exclusive lock on the creditor row:

    current_balance == sum(credit amounts) - sum(settlement amounts)

reconcile_balance / repair_balance / find_drift recompute the total from
the log. The hot path never calls them.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional
import structlog

from core.config import LedgerConfig
from core.dates import optional_day, today
from core.errors import CreditLimitExceeded, InvalidInput, InvalidState, NotFound, OverSettlement
from core.money import ZERO, litres, money, optional_decimal, to_decimal, within_tolerance
from persistence.database import Database, get_database
from persistence.models import CreditorRecord, CreditTransactionRecord, CreditTransactionType, new_id
from persistence.repository import CreditorRepository, CreditTransactionRepository, StationRepository
from .allocator import Allocation, SettlementAllocator, normalize_allocations

logger = structlog.get_logger()


@dataclass
class CreditReference:
    """What a credit sale refers to. Every field is optional."""
    transaction_date: Any = None
    nozzle_reading_id: Optional[str] = None
    daily_transaction_id: Optional[str] = None
    fuel_type: Optional[str] = None
    litres: Any = None
    price_per_litre: Any = None
    vehicle_number: Optional[str] = None
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    entered_by: Optional[str] = None


@dataclass
class BalanceCheck:
    """Stored balance compared with the balance derived from the log."""
    creditor_id: str
    stored_balance: Decimal
    derived_balance: Decimal
    total_credit: Decimal
    total_settled: Decimal

    @property
    def drift(self) -> Decimal:
        return self.stored_balance - self.derived_balance

    @property
    def consistent(self) -> bool:
        return self.drift == ZERO

    def to_dict(self) -> Dict[str, Any]:
        return {
            "creditor_id": self.creditor_id,
            "stored_balance": str(self.stored_balance),
            "derived_balance": str(self.derived_balance),
            "total_credit": str(self.total_credit),
            "total_settled": str(self.total_settled),
            "drift": str(self.drift),
            "consistent": self.consistent,
        }


class CreditLedger:
    """
    Credit extensions and settlements for station creditors.

    Usage:
        ledger = CreditLedger(db)
        ledger.extend_credit(station_id, creditor_id, "600.00", CreditReference(vehicle_number="KA01"))
        ledger.record_settlement(station_id, creditor_id, allocations=[
            {"credit_transaction_id": txn_id, "amount": "250.00"},
        ])
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        config: Optional[LedgerConfig] = None,
        allocator: Optional[SettlementAllocator] = None,
    ):
        self.db = db or get_database()
        self.config = config or LedgerConfig.from_env()
        self.allocator = allocator or SettlementAllocator(self.db, self.config)
        self.creditors = CreditorRepository(self.db)
        self.transactions = CreditTransactionRepository(self.db)
        self.stations = StationRepository(self.db)

    # ------------------------------------------------------------------
    # Creditors
    # ------------------------------------------------------------------

    def create_creditor(
        self,
        station_id: str,
        name: str,
        credit_limit: Any = 0,
        credit_period_days: Optional[int] = None,
        business_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> CreditorRecord:
        if not name or not name.strip():
            raise InvalidInput("Creditor name is required", {"field": "name"})
        if self.stations.get(station_id) is None:
            raise NotFound("Station not found", {"station_id": station_id})

        limit = money(to_decimal(credit_limit, "credit_limit"))
        period = credit_period_days if credit_period_days is not None else self.config.credit_period_days_default
        if period < 0:
            raise InvalidInput("credit_period_days cannot be negative", {"credit_period_days": period})

        creditor = CreditorRecord(
            creditor_id=new_id(),
            station_id=station_id,
            name=name.strip(),
            business_name=business_name,
            phone=phone,
            credit_limit=limit,
            credit_period_days=period,
        )
        return self.creditors.create(creditor)

    def get_creditor(self, creditor_id: str) -> CreditorRecord:
        creditor = self.creditors.get(creditor_id)
        if creditor is None:
            raise NotFound("Creditor not found", {"creditor_id": creditor_id})
        return creditor

    def flag_creditor(self, creditor_id: str, reason: str) -> CreditorRecord:
        """Block further credit for a creditor until unflagged."""
        with self.db.transaction():
            self._lock_creditor(creditor_id)
            self.creditors.set_flag(creditor_id, True, reason)
        return self.get_creditor(creditor_id)

    def unflag_creditor(self, creditor_id: str) -> CreditorRecord:
        with self.db.transaction():
            self._lock_creditor(creditor_id)
            self.creditors.set_flag(creditor_id, False, None)
        return self.get_creditor(creditor_id)

    def set_creditor_active(self, creditor_id: str, active: bool) -> CreditorRecord:
        with self.db.transaction():
            self._lock_creditor(creditor_id)
            self.creditors.set_active(creditor_id, active)
        logger.info("creditor_active_updated", creditor_id=creditor_id, active=active)
        return self.get_creditor(creditor_id)

    def _lock_creditor(self, creditor_id: str) -> CreditorRecord:
        creditor = self.creditors.get_for_update(creditor_id)
        if creditor is None:
            raise NotFound("Creditor not found", {"creditor_id": creditor_id})
        return creditor

    @staticmethod
    def _check_station(creditor: CreditorRecord, station_id: str) -> None:
        if creditor.station_id != station_id:
            raise NotFound(
                "Creditor not found for this station",
                {"creditor_id": creditor.creditor_id, "station_id": station_id},
            )

    # ------------------------------------------------------------------
    # Credit extension
    # ------------------------------------------------------------------

    def extend_credit(
        self,
        station_id: str,
        creditor_id: str,
        amount: Any,
        reference: Optional[CreditReference] = None,
    ) -> CreditTransactionRecord:
        """
        Record a sale on credit and raise the creditor's balance.

        Joins the caller's unit of work when one is open, so a failure here
        rolls back everything the caller wrote before it.
        """
        value = money(to_decimal(amount, "amount"))
        if value <= ZERO:
            raise InvalidInput("Credit amount must be positive", {"amount": str(value)})
        reference = reference or CreditReference()
        on_date = optional_day(reference.transaction_date, "transaction_date") or today()

        with self.db.transaction():
            creditor = self._lock_creditor(creditor_id)
            self._check_station(creditor, station_id)
            if not creditor.is_active:
                raise InvalidState("Creditor is not active", {"creditor_id": creditor_id})
            self._check_limit(creditor, value)

            txn = CreditTransactionRecord(
                credit_transaction_id=new_id(),
                station_id=station_id,
                creditor_id=creditor_id,
                transaction_type=CreditTransactionType.CREDIT,
                amount=value,
                transaction_date=on_date,
                nozzle_reading_id=reference.nozzle_reading_id,
                daily_transaction_id=reference.daily_transaction_id,
                fuel_type=reference.fuel_type,
                litres=litres(reference.litres) if reference.litres is not None else None,
                price_per_litre=optional_decimal(reference.price_per_litre, "price_per_litre"),
                vehicle_number=reference.vehicle_number,
                reference_number=reference.reference_number,
                notes=reference.notes,
                entered_by=reference.entered_by,
            )
            self.transactions.create(txn)
            new_balance = creditor.current_balance + value
            self.creditors.apply_credit(creditor_id, new_balance, on_date)

        logger.info(
            "credit_extended",
            creditor_id=creditor_id,
            credit_transaction_id=txn.credit_transaction_id,
            amount=str(value),
            balance=str(new_balance),
        )
        return txn

    def _check_limit(self, creditor: CreditorRecord, amount: Decimal) -> None:
        if creditor.is_flagged:
            logger.info("credit_limit_exceeded", creditor_id=creditor.creditor_id, reason="flagged")
            raise CreditLimitExceeded(
                f"Creditor {creditor.name} is flagged and cannot take credit",
                {
                    "creditor_id": creditor.creditor_id,
                    "reason": "flagged",
                    "flag_reason": creditor.flag_reason,
                    "current_balance": str(creditor.current_balance),
                    "credit_limit": str(creditor.credit_limit),
                },
            )

        # A limit of zero or less means no limit
        if creditor.credit_limit <= ZERO:
            return

        if creditor.current_balance + amount > creditor.credit_limit:
            logger.info(
                "credit_limit_exceeded",
                creditor_id=creditor.creditor_id,
                reason="limit",
                balance=str(creditor.current_balance),
                limit=str(creditor.credit_limit),
                requested=str(amount),
            )
            raise CreditLimitExceeded(
                f"Credit limit exceeded for {creditor.name}",
                {
                    "creditor_id": creditor.creditor_id,
                    "reason": "limit",
                    "current_balance": str(creditor.current_balance),
                    "credit_limit": str(creditor.credit_limit),
                    "requested": str(amount),
                    "available": str(creditor.credit_limit - creditor.current_balance),
                },
            )

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def record_settlement(
        self,
        station_id: str,
        creditor_id: str,
        amount: Any = None,
        allocations: Optional[List[Any]] = None,
        transaction_date: Any = None,
        reference_number: Optional[str] = None,
        notes: Optional[str] = None,
        entered_by: Optional[str] = None,
    ) -> CreditTransactionRecord:
        """
        Record a payment received from a creditor.

        With allocations, each part is checked against its credit line's cap
        and linked to it; amount may then be omitted (it is their sum) or
        must agree with their sum. Without allocations only the aggregate
        balance moves.
        """
        tolerance = self.config.tolerance
        parts: List[Allocation] = normalize_allocations(allocations or [])
        value = optional_decimal(amount, "amount")

        if parts:
            allocated = sum((a.amount for a in parts), ZERO)
            if value is None:
                value = allocated
            elif not within_tolerance(value, allocated, tolerance):
                raise InvalidInput(
                    f"Allocations ({allocated}) must add up to the settlement amount ({value})",
                    {"amount": str(value), "allocated": str(allocated), "difference": str(value - allocated)},
                )
        elif value is None:
            raise InvalidInput("Settlement needs an amount or allocations", {"creditor_id": creditor_id})

        value = money(value)
        if value <= ZERO:
            raise InvalidInput("Settlement amount must be positive", {"amount": str(value)})
        on_date = optional_day(transaction_date, "transaction_date") or today()

        with self.db.transaction():
            creditor = self._lock_creditor(creditor_id)
            self._check_station(creditor, station_id)
            # per-line caps before the aggregate balance
            self.allocator.check_allocations(station_id, creditor_id, parts)

            if value > creditor.current_balance + tolerance:
                logger.info(
                    "settlement_exceeds_balance",
                    creditor_id=creditor_id,
                    balance=str(creditor.current_balance),
                    requested=str(value),
                )
                raise OverSettlement(
                    f"Settlement of {value} exceeds outstanding balance of {creditor.current_balance}",
                    {
                        "creditor_id": creditor_id,
                        "current_balance": str(creditor.current_balance),
                        "requested": str(value),
                    },
                )

            txn = CreditTransactionRecord(
                credit_transaction_id=new_id(),
                station_id=station_id,
                creditor_id=creditor_id,
                transaction_type=CreditTransactionType.SETTLEMENT,
                amount=value,
                transaction_date=on_date,
                reference_number=reference_number,
                notes=notes,
                entered_by=entered_by,
            )
            self.transactions.create(txn)
            self.allocator.link(txn.credit_transaction_id, parts)
            new_balance = creditor.current_balance - value
            self.creditors.apply_settlement(creditor_id, new_balance, on_date)

        logger.info(
            "settlement_recorded",
            creditor_id=creditor_id,
            credit_transaction_id=txn.credit_transaction_id,
            amount=str(value),
            allocations=len(parts),
            balance=str(new_balance),
        )
        return txn

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_creditor_balance(self, creditor_id: str) -> Decimal:
        """Stored running balance. Committed data, no locks."""
        return self.get_creditor(creditor_id).current_balance

    def get_ledger(self, creditor_id: str) -> List[CreditTransactionRecord]:
        self.get_creditor(creditor_id)
        return self.transactions.list_for_creditor(creditor_id)

    def list_creditors(self, station_id: str, active_only: bool = True) -> List[CreditorRecord]:
        return self.creditors.list_for_station(station_id, active_only=active_only)

    # ------------------------------------------------------------------
    # Drift detection
    # ------------------------------------------------------------------

    def reconcile_balance(self, creditor_id: str) -> BalanceCheck:
        creditor = self.get_creditor(creditor_id)
        return self._balance_check(creditor)

    def _balance_check(self, creditor: CreditorRecord) -> BalanceCheck:
        sums = self.transactions.totals(creditor.creditor_id)
        credit = sums[CreditTransactionType.CREDIT]
        settled = sums[CreditTransactionType.SETTLEMENT]
        return BalanceCheck(
            creditor_id=creditor.creditor_id,
            stored_balance=creditor.current_balance,
            derived_balance=credit - settled,
            total_credit=credit,
            total_settled=settled,
        )

    def repair_balance(self, creditor_id: str) -> BalanceCheck:
        """Rewrite the stored balance from the log. Returns the check taken before the repair."""
        with self.db.transaction():
            creditor = self._lock_creditor(creditor_id)
            check = self._balance_check(creditor)
            if not check.consistent:
                self.creditors.set_balance(creditor_id, check.derived_balance)
                logger.warning(
                    "balance_repaired",
                    creditor_id=creditor_id,
                    stored=str(check.stored_balance),
                    derived=str(check.derived_balance),
                )
        return check

    def find_drift(self, station_id: str) -> List[BalanceCheck]:
        """Every creditor of the station whose stored balance disagrees with the log."""
        drifted = []
        for creditor in self.creditors.list_for_station(station_id, active_only=False):
            check = self._balance_check(creditor)
            if not check.consistent:
                logger.warning("balance_drift_detected", creditor_id=creditor.creditor_id, drift=str(check.drift))
                drifted.append(check)
        return drifted
