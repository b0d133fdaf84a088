"""
Credit: creditor balances, settlements and receivables aging.
"""

from .allocator import Allocation, OutstandingCredit, SettlementAllocator, normalize_allocations
from .ledger import BalanceCheck, CreditLedger, CreditReference
from .aging import AgingReport, AgingService, CreditorAging

__all__ = [
    "Allocation",
    "OutstandingCredit",
    "SettlementAllocator",
    "normalize_allocations",
    "BalanceCheck",
    "CreditLedger",
    "CreditReference",
    "AgingReport",
    "AgingService",
    "CreditorAging",
]
