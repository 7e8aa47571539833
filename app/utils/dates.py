"""
Calendar helpers shared by the reminder scheduler and the send log.

All arithmetic is done on calendar dates; timestamps are normalised to
UTC before their date is taken.
"""

import calendar
import math
from datetime import UTC, date, datetime, time, timedelta

SECONDS_PER_DAY = 86400


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def effective_billing_day(billing_day: int, year: int, month: int, clamp: bool = True) -> int | None:
    """
    Day of month on which a contract billed on `billing_day` falls due.

    With clamp=True a billing day past the end of the month moves to the
    last day (31 -> 30 in April, 31 -> 28/29 in February). With clamp=False
    such months have no due day and None is returned.
    """
    last_day = days_in_month(year, month)
    if billing_day <= last_day:
        return billing_day
    return last_day if clamp else None


def falls_on_billing_day(day: date, billing_day: int, clamp: bool = True) -> bool:
    return effective_billing_day(billing_day, day.year, day.month, clamp) == day.day


def whole_days_between(start: date | datetime, end: date | datetime) -> int:
    """
    Absolute distance in whole days, rounded up.

    Dates are compared as calendar dates; datetimes keep their sub-day part
    so that 25 hours count as 2 days.
    """
    if not isinstance(start, datetime) and not isinstance(end, datetime):
        return abs((end - start).days)
    delta = abs((_as_utc_datetime(end) - _as_utc_datetime(start)).total_seconds())
    return math.ceil(delta / SECONDS_PER_DAY)


def cooldown_window_start(today: date, cooldown_days: int) -> datetime:
    """Earliest send timestamp that still counts inside the cooldown window."""
    return datetime.combine(today - timedelta(days=cooldown_days), time.min, tzinfo=UTC)


def truncate_to_minute(moment: datetime) -> datetime:
    return _as_utc_datetime(moment).replace(second=0, microsecond=0)


def utc_today() -> date:
    return datetime.now(UTC).date()


def _as_utc_datetime(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    return datetime.combine(value, time.min, tzinfo=UTC)
