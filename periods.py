from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from errors import ValidationFailed


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def month_bounds(day: date) -> tuple[date, date]:
    first = day.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return first, next_month - date.resolution


def resolve_period(
    period: Optional[str],
    start: Optional[date],
    end: Optional[date],
    *,
    today: date,
) -> Period:
    if period == "all":
        return Period("all", date(1970, 1, 1), today)
    if period == "last_month":
        first_this = today.replace(day=1)
        last_month_start, last_month_end = month_bounds(first_this - date.resolution)
        return Period("last_month", last_month_start, last_month_end)
    if period == "this_year":
        return Period("this_year", date(today.year, 1, 1), date(today.year, 12, 31))
    if period == "custom" or (period is None and (start or end)):
        if not start or not end:
            raise ValidationFailed("Custom period requires start and end dates")
        if start > end:
            raise ValidationFailed("Start date must be before end date")
        return Period("custom", start, end)

    first, last = month_bounds(today)
    return Period("this_month", first, last)


def local_today(timezone: Optional[str] = None) -> date:
    tz = ZoneInfo(timezone or get_settings().timezone)
    return datetime.now(tz).date()
