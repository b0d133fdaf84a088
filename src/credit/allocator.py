"""
Settlement Allocator

Apportions a settlement payment across a creditor's outstanding credit
lines. The per-line cap is

    sum(links for the line) + new allocation <= line amount + tolerance

and it is checked while the line's row is locked, inside the same unit of
work that writes the settlement, so two concurrent partial settlements can
never both pass against a stale sum.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional
import structlog

from core.config import LedgerConfig
from core.errors import InvalidInput, NotFound, OverSettlement
from core.money import ZERO, money, to_decimal
from persistence.database import Database, get_database
from persistence.models import CreditTransactionType, SettlementLinkRecord, new_id
from persistence.repository import CreditTransactionRepository, SettlementLinkRepository

logger = structlog.get_logger()


@dataclass
class Allocation:
    """Part of a settlement aimed at one credit line."""
    credit_transaction_id: str
    amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {"credit_transaction_id": self.credit_transaction_id, "amount": str(self.amount)}


@dataclass
class OutstandingCredit:
    """A credit line with what has been paid against it so far."""
    credit_transaction_id: str
    transaction_date: str
    amount: Decimal
    settled: Decimal
    remaining: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "credit_transaction_id": self.credit_transaction_id,
            "transaction_date": self.transaction_date,
            "amount": str(self.amount),
            "settled": str(self.settled),
            "remaining": str(self.remaining),
        }


def normalize_allocations(raw: Iterable[Any]) -> List[Allocation]:
    """
    Accept Allocation objects or mappings with credit_transaction_id/amount.

    Repeated credit lines are merged so the cap is checked against the
    combined amount.
    """
    merged: Dict[str, Decimal] = {}
    for item in raw:
        if isinstance(item, Allocation):
            line_id, amount = item.credit_transaction_id, item.amount
        elif isinstance(item, dict):
            line_id = item.get("credit_transaction_id")
            amount = item.get("amount")
        else:
            raise InvalidInput("Allocation must be a mapping", {"allocation": str(item)})

        if not line_id:
            raise InvalidInput("Allocation needs a credit_transaction_id", {"allocation": str(item)})
        value = money(to_decimal(amount, "allocation amount"))
        if value <= ZERO:
            raise InvalidInput(
                "Allocation amount must be positive",
                {"credit_transaction_id": line_id, "amount": str(value)},
            )
        merged[line_id] = merged.get(line_id, ZERO) + value

    return [Allocation(credit_transaction_id=k, amount=v) for k, v in merged.items()]


class SettlementAllocator:
    """Guards the per-credit-line settlement cap."""

    def __init__(self, db: Optional[Database] = None, config: Optional[LedgerConfig] = None):
        self.db = db or get_database()
        self.config = config or LedgerConfig.from_env()
        self.credit_txns = CreditTransactionRepository(self.db)
        self.links = SettlementLinkRepository(self.db)

    def check_allocations(
        self,
        station_id: str,
        creditor_id: str,
        allocations: List[Allocation],
    ) -> List[Allocation]:
        """
        Lock each referenced credit line and verify the cap.

        Must run inside Database.transaction(). Lines are locked in id order
        so concurrent settlements touching the same lines cannot deadlock.
        """
        for allocation in sorted(allocations, key=lambda a: a.credit_transaction_id):
            line = self.credit_txns.get_for_update(allocation.credit_transaction_id)
            if (
                line is None
                or not line.is_credit
                or line.creditor_id != creditor_id
                or line.station_id != station_id
            ):
                raise NotFound(
                    "Credit transaction not found for this creditor",
                    {"credit_transaction_id": allocation.credit_transaction_id, "creditor_id": creditor_id},
                )

            settled = self.links.settled_amount(line.credit_transaction_id)
            if settled + allocation.amount > line.amount + self.config.tolerance:
                logger.info(
                    "over_settlement_rejected",
                    credit_transaction_id=line.credit_transaction_id,
                    amount=str(line.amount),
                    settled=str(settled),
                    requested=str(allocation.amount),
                )
                raise OverSettlement(
                    f"Allocation of {allocation.amount} would settle {settled + allocation.amount} "
                    f"against a credit of {line.amount}",
                    {
                        "credit_transaction_id": line.credit_transaction_id,
                        "credit_amount": str(line.amount),
                        "already_settled": str(settled),
                        "requested": str(allocation.amount),
                        "remaining": str(line.amount - settled),
                    },
                )
        return allocations

    def link(self, settlement_id: str, allocations: List[Allocation]) -> List[SettlementLinkRecord]:
        records = [
            SettlementLinkRecord(
                link_id=new_id(),
                settlement_id=settlement_id,
                credit_transaction_id=a.credit_transaction_id,
                amount=a.amount,
            )
            for a in allocations
        ]
        self.links.create_many(records)
        return records

    def links_for_settlement(self, settlement_id: str) -> List[SettlementLinkRecord]:
        return self.links.for_settlement(settlement_id)

    def outstanding_credits(self, creditor_id: str, include_settled: bool = False) -> List[OutstandingCredit]:
        """Credit lines oldest first, with settled and remaining amounts. Read-only."""
        lines = self.credit_txns.list_for_creditor(creditor_id, transaction_type=CreditTransactionType.CREDIT)
        settled = self.links.settled_amounts([line.credit_transaction_id for line in lines])

        result = []
        for line in lines:
            paid = settled.get(line.credit_transaction_id, ZERO)
            remaining = line.amount - paid
            if remaining <= self.config.tolerance and not include_settled:
                continue
            result.append(OutstandingCredit(
                credit_transaction_id=line.credit_transaction_id,
                transaction_date=line.transaction_date,
                amount=line.amount,
                settled=paid,
                remaining=remaining,
            ))
        return result
