"""
Monetary Arithmetic

All money and volume values flow through Decimal. Money is quantized to
paise/cents (2 places) and volume to millilitres (3 places).
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

from .errors import InvalidInput

ZERO = Decimal("0")
MONEY_PLACES = Decimal("0.01")
LITRE_PLACES = Decimal("0.001")
DEFAULT_TOLERANCE = Decimal("0.01")


def to_decimal(value: Any, field_name: str = "value") -> Decimal:
    """Coerce caller or database input into a Decimal."""
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or value is None:
        raise InvalidInput(f"{field_name} must be a number", {"field": field_name, "value": value})
    else:
        try:
            # str() first so floats keep their printed value, not binary noise
            result = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise InvalidInput(f"{field_name} must be a number", {"field": field_name, "value": value})

    if not result.is_finite():
        raise InvalidInput(f"{field_name} must be finite", {"field": field_name, "value": str(value)})
    return result


def optional_decimal(value: Any, field_name: str = "value") -> Optional[Decimal]:
    if value is None:
        return None
    return to_decimal(value, field_name)


def _quantize(value: Any, places: Decimal) -> Decimal:
    number = to_decimal(value)
    try:
        return number.quantize(places, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        # more digits than the decimal context holds
        raise InvalidInput("Value is too large", {"value": str(number)})


def money(value: Any) -> Decimal:
    """Quantize to two places."""
    return _quantize(value, MONEY_PLACES)


def litres(value: Any) -> Decimal:
    """Quantize to three places."""
    return _quantize(value, LITRE_PLACES)


def within_tolerance(actual: Any, expected: Any, tolerance: Decimal = DEFAULT_TOLERANCE) -> bool:
    return abs(to_decimal(actual) - to_decimal(expected)) <= tolerance


def as_str(value: Optional[Decimal]) -> Optional[str]:
    """Serialize for storage and JSON payloads."""
    if value is None:
        return None
    return str(value)
