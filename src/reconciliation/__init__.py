"""
Reconciliation: daily transactions built from priced readings.
"""

from .daily import (
    CreditAllocation,
    DailySummary,
    DailyTransactionReconciler,
    ReconciliationResult,
    parse_breakdown,
)

__all__ = [
    "CreditAllocation",
    "DailySummary",
    "DailyTransactionReconciler",
    "ReconciliationResult",
    "parse_breakdown",
]
