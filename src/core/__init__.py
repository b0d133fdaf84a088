"""
FORECOURT LEDGER - Core Module
Money arithmetic, error taxonomy and configuration shared by every service.
"""

from .config import LedgerConfig
from .errors import (
    LedgerError,
    InvalidInput,
    InvalidReading,
    InvalidSplit,
    ReconciliationMismatch,
    CreditLimitExceeded,
    OverSettlement,
    PriceNotSet,
    NotFound,
    InvalidState,
    TransientError,
)
from .money import ZERO, money, litres, to_decimal, within_tolerance

__all__ = [
    "LedgerConfig",
    "LedgerError",
    "InvalidInput",
    "InvalidReading",
    "InvalidSplit",
    "ReconciliationMismatch",
    "CreditLimitExceeded",
    "OverSettlement",
    "PriceNotSet",
    "NotFound",
    "InvalidState",
    "TransientError",
    "ZERO",
    "money",
    "litres",
    "to_decimal",
    "within_tolerance",
]
