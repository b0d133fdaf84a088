"""
Persistence Layer for Forecourt Ledger

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, IntegrityViolation, get_database
from .models import (
    CreditorRecord,
    CreditTransactionRecord,
    CreditTransactionType,
    DailyTransactionRecord,
    FuelPriceRecord,
    NozzleRecord,
    NozzleStatus,
    ReadingRecord,
    SettlementLinkRecord,
    StationRecord,
    new_id,
)
from .repository import (
    CreditorRepository,
    CreditTransactionRepository,
    DailyTransactionRepository,
    FuelPriceRepository,
    NozzleRepository,
    ReadingRepository,
    SettlementLinkRepository,
    StationRepository,
)

__all__ = [
    "Database",
    "IntegrityViolation",
    "get_database",
    "CreditorRecord",
    "CreditTransactionRecord",
    "CreditTransactionType",
    "DailyTransactionRecord",
    "FuelPriceRecord",
    "NozzleRecord",
    "NozzleStatus",
    "ReadingRecord",
    "SettlementLinkRecord",
    "StationRecord",
    "new_id",
    "CreditorRepository",
    "CreditTransactionRepository",
    "DailyTransactionRepository",
    "FuelPriceRepository",
    "NozzleRepository",
    "ReadingRepository",
    "SettlementLinkRepository",
    "StationRepository",
]
