from datetime import UTC, date, datetime, timedelta, timezone

import pytest

from app.models.pagination import Pagination
from app.utils.dates import (
    cooldown_window_start,
    effective_billing_day,
    falls_on_billing_day,
    truncate_to_minute,
    whole_days_between,
)


def test_effective_billing_day_clamps_or_skips():
    assert effective_billing_day(15, 2024, 4, clamp=True) == 15
    assert effective_billing_day(31, 2024, 4, clamp=True) == 30
    assert effective_billing_day(31, 2023, 2, clamp=True) == 28
    assert effective_billing_day(30, 2024, 2, clamp=True) == 29
    assert effective_billing_day(31, 2024, 4, clamp=False) is None


def test_falls_on_billing_day():
    assert falls_on_billing_day(date(2024, 4, 30), 31) is True
    assert falls_on_billing_day(date(2024, 4, 30), 31, clamp=False) is False
    assert falls_on_billing_day(date(2024, 5, 30), 31) is False


def test_whole_days_between_dates_and_datetimes():
    assert whole_days_between(date(2024, 5, 1), date(2024, 5, 6)) == 5
    assert whole_days_between(date(2024, 5, 6), date(2024, 5, 1)) == 5

    start = datetime(2024, 5, 1, 0, 0, tzinfo=UTC)
    assert whole_days_between(start, start + timedelta(hours=25)) == 2
    assert whole_days_between(start, start + timedelta(hours=24)) == 1


def test_cooldown_window_start_is_utc_midnight():
    assert cooldown_window_start(date(2024, 6, 6), 30) == datetime(2024, 5, 7, tzinfo=UTC)


def test_truncate_to_minute_normalises_to_utc():
    local = datetime(2024, 5, 7, 9, 30, 45, 123, tzinfo=timezone(timedelta(hours=-3)))

    assert truncate_to_minute(local) == datetime(2024, 5, 7, 12, 30, tzinfo=UTC)


def test_pagination_offset_and_validation():
    assert Pagination(page=3, limit=20).offset == 40

    with pytest.raises(ValueError):
        Pagination(page=0)
    with pytest.raises(ValueError):
        Pagination(limit=0)
