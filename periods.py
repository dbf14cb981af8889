from dataclasses import dataclass
from datetime import date
from typing import Optional

from errors import ValidationError


@dataclass(frozen=True)
class Period:
    """Half-open date range ``[start, end)``."""

    slug: str
    start: date
    end: date


def resolve_month(month: int, year: Optional[int] = None, *, today: Optional[date] = None) -> Period:
    today = today or date.today()
    year = today.year if year is None else year
    if month < 1 or month > 12:
        raise ValidationError("Month must be between 1 and 12", "invalid_month")
    if year < 1 or year > 9998:
        raise ValidationError("Year must be between 1 and 9998", "invalid_year")

    first = date(year, month, 1)
    if month == 12:
        next_month = first.replace(year=year + 1, month=1)
    else:
        next_month = first.replace(month=month + 1)
    return Period(f"{year:04d}-{month:02d}", first, next_month)
