"""
Ledger Error Taxonomy

Every failure the financial core can report to a caller.

Categories:
- validation: caller data violates a precondition (never retried automatically)
- business:   well-formed request rejected by a domain rule
- not_found:  referenced entity missing or owned by another station
- state:      entity exists but is in a state that forbids the operation
- transient:  datastore lock timeout / connection loss (safe to retry)
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger failures."""

    code = "LEDGER_ERROR"
    category = "validation"
    http_status = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "category": self.category,
            "message": self.message,
            "details": self.details,
        }


# Validation errors

class InvalidInput(LedgerError):
    """Caller-supplied data is missing or malformed."""
    code = "INVALID_INPUT"


class InvalidReading(LedgerError):
    """Meter reading breaks the monotonic chain of its nozzle."""
    code = "INVALID_READING"


class InvalidSplit(LedgerError):
    """Cash/online tender split does not add up to the sale."""
    code = "INVALID_SPLIT"


class ReconciliationMismatch(LedgerError):
    """Payment breakdown does not reconcile to the computed sale value."""
    code = "RECONCILIATION_MISMATCH"


# Business rejections

class CreditLimitExceeded(LedgerError):
    """Extending credit would push the creditor past their limit."""
    code = "CREDIT_LIMIT_EXCEEDED"
    category = "business"
    http_status = 422


class OverSettlement(LedgerError):
    """Settlement would pay down more than is owed."""
    code = "OVER_SETTLEMENT"
    category = "business"
    http_status = 422


class PriceNotSet(LedgerError):
    """No fuel price is in force for the sale date."""
    code = "PRICE_NOT_SET"
    category = "business"
    http_status = 422


# Lookup / state

class NotFound(LedgerError):
    """Entity does not exist or does not belong to the stated station."""
    code = "NOT_FOUND"
    category = "not_found"
    http_status = 404


class InvalidState(LedgerError):
    """Entity is inactive, locked into a reconciliation, or otherwise unusable."""
    code = "INVALID_STATE"
    category = "state"
    http_status = 409


# Infrastructure

class TransientError(LedgerError):
    """Lock timeout or lost connection; every write has been rolled back."""
    code = "TRANSIENT_FAILURE"
    category = "transient"
    http_status = 503
