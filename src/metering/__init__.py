"""
Metering: fuel prices and nozzle meter readings.
"""

from .pricing import PriceResolver, ProfitQuote
from .readings import MeterReadingLedger, TenderSplit, split_tender

__all__ = [
    "PriceResolver",
    "ProfitQuote",
    "MeterReadingLedger",
    "TenderSplit",
    "split_tender",
]
