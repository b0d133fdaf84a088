"""
Ledger Configuration

Settings come from the environment so that the same build runs against a
local SQLite file in development and PostgreSQL in production.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal

from .money import DEFAULT_TOLERANCE


@dataclass
class LedgerConfig:
    """Configuration shared by the ledger services."""
    database_url: str = "sqlite:///forecourt.db"
    tolerance: Decimal = field(default_factory=lambda: DEFAULT_TOLERANCE)
    lock_timeout_seconds: float = 30.0
    credit_period_days_default: int = 30

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        return cls(
            database_url=os.environ.get("DATABASE_URL", "sqlite:///forecourt.db"),
            tolerance=Decimal(os.environ.get("LEDGER_TOLERANCE", str(DEFAULT_TOLERANCE))),
            lock_timeout_seconds=float(os.environ.get("LEDGER_LOCK_TIMEOUT_SECONDS", "30")),
            credit_period_days_default=int(os.environ.get("CREDIT_PERIOD_DAYS_DEFAULT", "30")),
        )
