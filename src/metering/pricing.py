"""
Price Resolver

Answers "what did a litre of this fuel cost at this station on this date".
Prices form an append-only time series per (station, fuel type); the price
for a date D is the latest row whose effective_from is on or before D.

The resolver holds no cache, so concurrent readers never see a stale map.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional
import structlog

from core.dates import to_day
from core.errors import InvalidInput, NotFound, PriceNotSet
from core.money import ZERO, money, to_decimal
from persistence.database import Database
from persistence.models import FuelPriceRecord, new_id
from persistence.repository import FuelPriceRepository, StationRepository

logger = structlog.get_logger()


@dataclass
class ProfitQuote:
    """Selling price against cost price for one fuel type on one date."""
    fuel_type: str
    on_date: str
    price: Decimal
    cost_price: Optional[Decimal]
    profit_per_litre: Optional[Decimal]
    margin_percent: Optional[Decimal]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fuel_type": self.fuel_type,
            "date": self.on_date,
            "price": str(self.price),
            "cost_price": str(self.cost_price) if self.cost_price is not None else None,
            "profit_per_litre": str(self.profit_per_litre) if self.profit_per_litre is not None else None,
            "margin_percent": str(self.margin_percent) if self.margin_percent is not None else None,
        }


class PriceResolver:
    """Pure query object over the fuel price time series."""

    def __init__(self, db: Optional[Database] = None):
        self.prices = FuelPriceRepository(db)
        self.stations = StationRepository(self.prices.db)

    def price_for(self, station_id: str, fuel_type: str, on_date: Any) -> Optional[FuelPriceRecord]:
        """Price row in force on the date, or None when no price has been set yet."""
        return self.prices.latest_for_date(station_id, fuel_type, to_day(on_date, "on_date"))

    def require_price(self, station_id: str, fuel_type: str, on_date: Any) -> FuelPriceRecord:
        day = to_day(on_date, "on_date")
        price = self.prices.latest_for_date(station_id, fuel_type, day)
        if price is None:
            raise PriceNotSet(
                f"No {fuel_type} price in force on {day}",
                {"station_id": station_id, "fuel_type": fuel_type, "date": day},
            )
        return price

    def profit_for(self, station_id: str, fuel_type: str, on_date: Any) -> Optional[ProfitQuote]:
        """
        Profit per litre and margin for a date.

        Returns None when no price is in force. Profit fields stay None when
        the price row carries no cost price.
        """
        price = self.price_for(station_id, fuel_type, on_date)
        if price is None:
            return None

        profit = None
        margin = None
        if price.cost_price is not None:
            profit = money(price.price - price.cost_price)
            if price.price > ZERO:
                margin = money(profit / price.price * 100)

        return ProfitQuote(
            fuel_type=fuel_type,
            on_date=to_day(on_date),
            price=price.price,
            cost_price=price.cost_price,
            profit_per_litre=profit,
            margin_percent=margin,
        )

    def set_price(
        self,
        station_id: str,
        fuel_type: str,
        price: Any,
        effective_from: Any,
        cost_price: Any = None,
    ) -> FuelPriceRecord:
        """Append a new price row. Existing rows are never modified."""
        if self.stations.get(station_id) is None:
            raise NotFound("Station not found", {"station_id": station_id})
        if not fuel_type:
            raise InvalidInput("fuel_type is required", {"field": "fuel_type"})

        amount = money(to_decimal(price, "price"))
        if amount <= ZERO:
            raise InvalidInput("price must be positive", {"price": str(amount)})
        cost = None
        if cost_price is not None:
            cost = money(to_decimal(cost_price, "cost_price"))
            if cost < ZERO:
                raise InvalidInput("cost_price cannot be negative", {"cost_price": str(cost)})

        record = FuelPriceRecord(
            price_id=new_id(),
            station_id=station_id,
            fuel_type=fuel_type,
            effective_from=to_day(effective_from, "effective_from"),
            price=amount,
            cost_price=cost,
        )
        return self.prices.create(record)
