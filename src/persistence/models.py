"""
Data Models for Persistence Layer

Row-shaped records for every table the ledger owns. Money and volume are
kept as Decimal in Python and serialized as decimal strings for storage.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import json
import uuid

from core.money import ZERO, as_str, to_decimal


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def _dec(value: Any) -> Decimal:
    if value is None or value == "":
        return ZERO
    return to_decimal(value)


def _opt_dec(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return to_decimal(value)


def _day(value: Any) -> Optional[str]:
    """Normalize DATE columns (date objects on PostgreSQL, text on SQLite)."""
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return value.isoformat()[:10]
    return str(value)[:10]


def _stamp(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value) if value else None
    return value


class NozzleStatus:
    ACTIVE = "active"
    INACTIVE = "inactive"


class CreditTransactionType:
    CREDIT = "credit"
    SETTLEMENT = "settlement"


@dataclass
class StationRecord:
    """Persisted station (owned by station CRUD; the ledger only references it)."""
    station_id: str
    name: str
    created_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "station_id": self.station_id,
            "name": self.name,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        return (self.station_id, self.name, self.created_at)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "StationRecord":
        return cls(
            station_id=row["station_id"],
            name=row["name"],
            created_at=_stamp(row["created_at"]),
        )


@dataclass
class NozzleRecord:
    """Persisted nozzle with its cached last reading."""
    nozzle_id: str
    station_id: str
    fuel_type: str
    pump_id: Optional[str] = None
    nozzle_number: int = 1
    initial_reading: Decimal = ZERO
    status: str = NozzleStatus.ACTIVE
    last_reading: Optional[Decimal] = None
    last_reading_date: Optional[str] = None
    created_at: str = field(default_factory=_now)

    @property
    def is_active(self) -> bool:
        return self.status == NozzleStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nozzle_id": self.nozzle_id,
            "station_id": self.station_id,
            "pump_id": self.pump_id,
            "nozzle_number": self.nozzle_number,
            "fuel_type": self.fuel_type,
            "initial_reading": as_str(self.initial_reading),
            "status": self.status,
            "last_reading": as_str(self.last_reading),
            "last_reading_date": self.last_reading_date,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.nozzle_id,
            self.station_id,
            self.pump_id,
            self.nozzle_number,
            self.fuel_type,
            as_str(self.initial_reading),
            self.status,
            as_str(self.last_reading),
            self.last_reading_date,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "NozzleRecord":
        return cls(
            nozzle_id=row["nozzle_id"],
            station_id=row["station_id"],
            pump_id=row.get("pump_id"),
            nozzle_number=row.get("nozzle_number", 1),
            fuel_type=row["fuel_type"],
            initial_reading=_dec(row.get("initial_reading")),
            status=row.get("status", NozzleStatus.ACTIVE),
            last_reading=_opt_dec(row.get("last_reading")),
            last_reading_date=_day(row.get("last_reading_date")),
            created_at=_stamp(row["created_at"]),
        )


@dataclass
class FuelPriceRecord:
    """Immutable price row; a fuel type's rows form a time series."""
    price_id: str
    station_id: str
    fuel_type: str
    effective_from: str
    price: Decimal
    cost_price: Optional[Decimal] = None
    created_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "price_id": self.price_id,
            "station_id": self.station_id,
            "fuel_type": self.fuel_type,
            "effective_from": self.effective_from,
            "price": as_str(self.price),
            "cost_price": as_str(self.cost_price),
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.price_id,
            self.station_id,
            self.fuel_type,
            self.effective_from,
            as_str(self.price),
            as_str(self.cost_price),
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "FuelPriceRecord":
        return cls(
            price_id=row["price_id"],
            station_id=row["station_id"],
            fuel_type=row["fuel_type"],
            effective_from=_day(row["effective_from"]),
            price=_dec(row["price"]),
            cost_price=_opt_dec(row.get("cost_price")),
            created_at=_stamp(row["created_at"]),
        )


@dataclass
class ReadingRecord:
    """One cumulative meter reading and the sale it implies."""
    reading_id: str
    nozzle_id: str
    station_id: str
    fuel_type: str
    reading_date: str
    sequence: int
    reading_value: Decimal
    previous_reading: Decimal
    litres_sold: Decimal = ZERO
    price_per_litre: Decimal = ZERO
    total_amount: Decimal = ZERO
    cash_amount: Decimal = ZERO
    online_amount: Decimal = ZERO
    is_initial_reading: bool = False
    pump_id: Optional[str] = None
    transaction_id: Optional[str] = None
    notes: Optional[str] = None
    entered_by: Optional[str] = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reading_id": self.reading_id,
            "nozzle_id": self.nozzle_id,
            "station_id": self.station_id,
            "pump_id": self.pump_id,
            "fuel_type": self.fuel_type,
            "reading_date": self.reading_date,
            "sequence": self.sequence,
            "reading_value": as_str(self.reading_value),
            "previous_reading": as_str(self.previous_reading),
            "litres_sold": as_str(self.litres_sold),
            "price_per_litre": as_str(self.price_per_litre),
            "total_amount": as_str(self.total_amount),
            "cash_amount": as_str(self.cash_amount),
            "online_amount": as_str(self.online_amount),
            "is_initial_reading": self.is_initial_reading,
            "transaction_id": self.transaction_id,
            "notes": self.notes,
            "entered_by": self.entered_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_db_tuple(self) -> tuple:
        """Convert to database insert tuple."""
        return (
            self.reading_id,
            self.nozzle_id,
            self.station_id,
            self.pump_id,
            self.fuel_type,
            self.reading_date,
            self.sequence,
            as_str(self.reading_value),
            as_str(self.previous_reading),
            as_str(self.litres_sold),
            as_str(self.price_per_litre),
            as_str(self.total_amount),
            as_str(self.cash_amount),
            as_str(self.online_amount),
            self.is_initial_reading,
            self.transaction_id,
            self.notes,
            self.entered_by,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ReadingRecord":
        return cls(
            reading_id=row["reading_id"],
            nozzle_id=row["nozzle_id"],
            station_id=row["station_id"],
            pump_id=row.get("pump_id"),
            fuel_type=row["fuel_type"],
            reading_date=_day(row["reading_date"]),
            sequence=int(row["sequence"]),
            reading_value=_dec(row["reading_value"]),
            previous_reading=_dec(row["previous_reading"]),
            litres_sold=_dec(row["litres_sold"]),
            price_per_litre=_dec(row["price_per_litre"]),
            total_amount=_dec(row["total_amount"]),
            cash_amount=_dec(row.get("cash_amount")),
            online_amount=_dec(row.get("online_amount")),
            is_initial_reading=bool(row.get("is_initial_reading", 0)),
            transaction_id=row.get("transaction_id"),
            notes=row.get("notes"),
            entered_by=row.get("entered_by"),
            created_at=_stamp(row["created_at"]),
            updated_at=_stamp(row["updated_at"]),
        )


@dataclass
class DailyTransactionRecord:
    """A reconciled batch of readings for one station and date."""
    transaction_id: str
    station_id: str
    transaction_date: str
    total_liters: Decimal
    total_sale_value: Decimal
    payment_breakdown: Dict[str, Decimal]
    reading_ids: List[str]
    credit_allocations: List[Dict[str, Any]] = field(default_factory=list)
    status: str = "submitted"
    notes: Optional[str] = None
    created_by: Optional[str] = None
    created_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "station_id": self.station_id,
            "transaction_date": self.transaction_date,
            "total_liters": as_str(self.total_liters),
            "total_sale_value": as_str(self.total_sale_value),
            "payment_breakdown": {k: as_str(v) for k, v in self.payment_breakdown.items()},
            "reading_ids": list(self.reading_ids),
            "credit_allocations": [
                {"creditor_id": a["creditor_id"], "amount": as_str(a["amount"])}
                for a in self.credit_allocations
            ],
            "status": self.status,
            "notes": self.notes,
            "created_by": self.created_by,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        payload = self.to_dict()
        return (
            self.transaction_id,
            self.station_id,
            self.transaction_date,
            as_str(self.total_liters),
            as_str(self.total_sale_value),
            json.dumps(payload["payment_breakdown"]),
            json.dumps(payload["reading_ids"]),
            json.dumps(payload["credit_allocations"]),
            self.status,
            self.notes,
            self.created_by,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DailyTransactionRecord":
        breakdown = _json(row["payment_breakdown"]) or {}
        allocations = _json(row.get("credit_allocations")) or []
        return cls(
            transaction_id=row["transaction_id"],
            station_id=row["station_id"],
            transaction_date=_day(row["transaction_date"]),
            total_liters=_dec(row["total_liters"]),
            total_sale_value=_dec(row["total_sale_value"]),
            payment_breakdown={k: _dec(v) for k, v in breakdown.items()},
            reading_ids=_json(row["reading_ids"]) or [],
            credit_allocations=[
                {"creditor_id": a["creditor_id"], "amount": _dec(a["amount"])}
                for a in allocations
            ],
            status=row.get("status", "submitted"),
            notes=row.get("notes"),
            created_by=row.get("created_by"),
            created_at=_stamp(row["created_at"]),
        )


@dataclass
class CreditorRecord:
    """Customer buying on account; current_balance is a materialized running total."""
    creditor_id: str
    station_id: str
    name: str
    credit_limit: Decimal = ZERO
    current_balance: Decimal = ZERO
    credit_period_days: int = 30
    business_name: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool = True
    is_flagged: bool = False
    flag_reason: Optional[str] = None
    last_transaction_date: Optional[str] = None
    last_payment_date: Optional[str] = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "creditor_id": self.creditor_id,
            "station_id": self.station_id,
            "name": self.name,
            "business_name": self.business_name,
            "phone": self.phone,
            "credit_limit": as_str(self.credit_limit),
            "credit_period_days": self.credit_period_days,
            "current_balance": as_str(self.current_balance),
            "is_active": self.is_active,
            "is_flagged": self.is_flagged,
            "flag_reason": self.flag_reason,
            "last_transaction_date": self.last_transaction_date,
            "last_payment_date": self.last_payment_date,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.creditor_id,
            self.station_id,
            self.name,
            self.business_name,
            self.phone,
            as_str(self.credit_limit),
            self.credit_period_days,
            as_str(self.current_balance),
            self.is_active,
            self.is_flagged,
            self.flag_reason,
            self.last_transaction_date,
            self.last_payment_date,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CreditorRecord":
        return cls(
            creditor_id=row["creditor_id"],
            station_id=row["station_id"],
            name=row["name"],
            business_name=row.get("business_name"),
            phone=row.get("phone"),
            credit_limit=_dec(row.get("credit_limit")),
            credit_period_days=int(row.get("credit_period_days") or 30),
            current_balance=_dec(row.get("current_balance")),
            is_active=bool(row.get("is_active", 1)),
            is_flagged=bool(row.get("is_flagged", 0)),
            flag_reason=row.get("flag_reason"),
            last_transaction_date=_day(row.get("last_transaction_date")),
            last_payment_date=_day(row.get("last_payment_date")),
            created_at=_stamp(row["created_at"]),
            updated_at=_stamp(row["updated_at"]),
        )


@dataclass
class CreditTransactionRecord:
    """Immutable ledger entry: a sale on credit or a settlement received."""
    credit_transaction_id: str
    station_id: str
    creditor_id: str
    transaction_type: str
    amount: Decimal
    transaction_date: str
    nozzle_reading_id: Optional[str] = None
    daily_transaction_id: Optional[str] = None
    fuel_type: Optional[str] = None
    litres: Optional[Decimal] = None
    price_per_litre: Optional[Decimal] = None
    vehicle_number: Optional[str] = None
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    entered_by: Optional[str] = None
    created_at: str = field(default_factory=_now)

    @property
    def is_credit(self) -> bool:
        return self.transaction_type == CreditTransactionType.CREDIT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "credit_transaction_id": self.credit_transaction_id,
            "station_id": self.station_id,
            "creditor_id": self.creditor_id,
            "transaction_type": self.transaction_type,
            "amount": as_str(self.amount),
            "transaction_date": self.transaction_date,
            "nozzle_reading_id": self.nozzle_reading_id,
            "daily_transaction_id": self.daily_transaction_id,
            "fuel_type": self.fuel_type,
            "litres": as_str(self.litres),
            "price_per_litre": as_str(self.price_per_litre),
            "vehicle_number": self.vehicle_number,
            "reference_number": self.reference_number,
            "notes": self.notes,
            "entered_by": self.entered_by,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.credit_transaction_id,
            self.station_id,
            self.creditor_id,
            self.transaction_type,
            as_str(self.amount),
            self.transaction_date,
            self.nozzle_reading_id,
            self.daily_transaction_id,
            self.fuel_type,
            as_str(self.litres),
            as_str(self.price_per_litre),
            self.vehicle_number,
            self.reference_number,
            self.notes,
            self.entered_by,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CreditTransactionRecord":
        return cls(
            credit_transaction_id=row["credit_transaction_id"],
            station_id=row["station_id"],
            creditor_id=row["creditor_id"],
            transaction_type=row["transaction_type"],
            amount=_dec(row["amount"]),
            transaction_date=_day(row["transaction_date"]),
            nozzle_reading_id=row.get("nozzle_reading_id"),
            daily_transaction_id=row.get("daily_transaction_id"),
            fuel_type=row.get("fuel_type"),
            litres=_opt_dec(row.get("litres")),
            price_per_litre=_opt_dec(row.get("price_per_litre")),
            vehicle_number=row.get("vehicle_number"),
            reference_number=row.get("reference_number"),
            notes=row.get("notes"),
            entered_by=row.get("entered_by"),
            created_at=_stamp(row["created_at"]),
        )


@dataclass
class SettlementLinkRecord:
    """Portion of a settlement applied to one credit transaction."""
    link_id: str
    settlement_id: str
    credit_transaction_id: str
    amount: Decimal
    created_at: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "link_id": self.link_id,
            "settlement_id": self.settlement_id,
            "credit_transaction_id": self.credit_transaction_id,
            "amount": as_str(self.amount),
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.link_id,
            self.settlement_id,
            self.credit_transaction_id,
            as_str(self.amount),
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SettlementLinkRecord":
        return cls(
            link_id=row["link_id"],
            settlement_id=row["settlement_id"],
            credit_transaction_id=row["credit_transaction_id"],
            amount=_dec(row["amount"]),
            created_at=_stamp(row["created_at"]),
        )
