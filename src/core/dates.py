"""
Calendar Dates

Business dates travel as ISO 'YYYY-MM-DD' strings, which sort and compare
correctly in both SQLite and PostgreSQL.
"""

from datetime import date, datetime, timezone
from typing import Any, Optional

from .errors import InvalidInput


def to_day(value: Any, field_name: str = "date") -> str:
    """Normalize a date, datetime or ISO string to 'YYYY-MM-DD'."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10]).isoformat()
        except ValueError:
            pass
    raise InvalidInput(f"{field_name} must be an ISO date", {"field": field_name, "value": str(value)})


def optional_day(value: Any, field_name: str = "date") -> Optional[str]:
    if value is None:
        return None
    return to_day(value, field_name)


def today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def days_between(earlier: str, later: str) -> int:
    return (date.fromisoformat(later) - date.fromisoformat(earlier)).days
