"""
Receivables Aging

Read-only views over creditor balances. Credit lines are bucketed by age
(0-30, 31-60, 61-90, over 90 days) and the buckets are scaled by
current_balance / total credit, so settlements reduce every bucket
proportionally.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional
import structlog

from core.dates import days_between, optional_day, today
from core.money import ZERO, money
from persistence.database import Database, get_database
from persistence.models import CreditorRecord, CreditTransactionType
from persistence.repository import CreditorRepository, CreditTransactionRepository

logger = structlog.get_logger()

BUCKETS = ("0-30", "31-60", "61-90", "over_90")


def bucket_for(age_days: int) -> str:
    if age_days <= 30:
        return "0-30"
    if age_days <= 60:
        return "31-60"
    if age_days <= 90:
        return "61-90"
    return "over_90"


def is_overdue(creditor: CreditorRecord, as_of: str) -> bool:
    """Positive balance and no credit taken within the credit period."""
    if not creditor.last_transaction_date or creditor.current_balance <= ZERO:
        return False
    return days_between(creditor.last_transaction_date, as_of) > (creditor.credit_period_days or 30)


@dataclass
class CreditorAging:
    creditor: CreditorRecord
    buckets: Dict[str, Decimal]
    overdue: bool

    def to_dict(self) -> Dict[str, Any]:
        c = self.creditor
        return {
            "creditor_id": c.creditor_id,
            "name": c.name,
            "business_name": c.business_name,
            "current_balance": str(c.current_balance),
            "credit_limit": str(c.credit_limit),
            "credit_period_days": c.credit_period_days,
            "last_transaction_date": c.last_transaction_date,
            "last_payment_date": c.last_payment_date,
            "is_flagged": c.is_flagged,
            "is_overdue": self.overdue,
            "aging": {k: str(v) for k, v in self.buckets.items()},
        }


@dataclass
class AgingReport:
    station_id: str
    as_of: str
    total_outstanding: Decimal = ZERO
    totals: Dict[str, Decimal] = field(default_factory=lambda: {b: ZERO for b in BUCKETS})
    creditors: List[CreditorAging] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "station_id": self.station_id,
            "as_of": self.as_of,
            "total_outstanding": str(self.total_outstanding),
            "totals": {k: str(v) for k, v in self.totals.items()},
            "creditors": [c.to_dict() for c in self.creditors],
        }


class AgingService:
    """Aging and overdue views; takes no locks."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()
        self.creditors = CreditorRepository(self.db)
        self.transactions = CreditTransactionRepository(self.db)

    def _outstanding(self, station_id: str) -> List[CreditorRecord]:
        creditors = [c for c in self.creditors.list_for_station(station_id) if c.current_balance > ZERO]
        return sorted(creditors, key=lambda c: c.current_balance, reverse=True)

    def creditor_aging(self, creditor: CreditorRecord, as_of: str) -> CreditorAging:
        raw = {b: ZERO for b in BUCKETS}
        total_credit = ZERO
        for line in self.transactions.list_for_creditor(
            creditor.creditor_id, transaction_type=CreditTransactionType.CREDIT
        ):
            age = max(days_between(line.transaction_date, as_of), 0)
            raw[bucket_for(age)] += line.amount
            total_credit += line.amount

        scale = creditor.current_balance / total_credit if total_credit > ZERO else ZERO
        buckets = {b: money(v * scale) for b, v in raw.items()}
        return CreditorAging(creditor=creditor, buckets=buckets, overdue=is_overdue(creditor, as_of))

    def aging_report(self, station_id: str, as_of: Any = None) -> AgingReport:
        day = optional_day(as_of, "as_of") or today()
        report = AgingReport(station_id=station_id, as_of=day)
        for creditor in self._outstanding(station_id):
            aging = self.creditor_aging(creditor, day)
            report.creditors.append(aging)
            report.total_outstanding += creditor.current_balance
            for bucket, amount in aging.buckets.items():
                report.totals[bucket] += amount

        logger.info(
            "aging_report_built",
            station_id=station_id,
            creditors=len(report.creditors),
            total_outstanding=str(report.total_outstanding),
        )
        return report

    def overdue_creditors(self, station_id: str, as_of: Any = None) -> List[CreditorRecord]:
        day = optional_day(as_of, "as_of") or today()
        return [c for c in self._outstanding(station_id) if is_overdue(c, day)]
