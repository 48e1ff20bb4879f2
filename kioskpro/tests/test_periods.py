from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest
from fastapi import HTTPException

from kioskpro.app.periods import (
    DAY_NAMES_ES,
    add_months,
    business_today,
    day_window,
    period_window,
    previous_window,
    quarter_start,
    week_start,
)

LIMA = ZoneInfo("America/Lima")


def test_business_today_uses_kiosk_zone_not_utc():
    # 03:00 UTC on the 10th is still the evening of the 9th in Lima.
    now = datetime(2026, 3, 10, 3, 0, tzinfo=timezone.utc)
    assert business_today(LIMA, now) == date(2026, 3, 9)
    assert business_today(ZoneInfo("UTC"), now) == date(2026, 3, 10)


def test_day_window_is_half_open_local_midnights():
    start, end = day_window(date(2026, 3, 9), LIMA)
    assert start.astimezone(timezone.utc) == datetime(2026, 3, 9, 5, 0, tzinfo=timezone.utc)
    assert end - start == timedelta(days=1)


def test_calendar_helpers():
    assert week_start(date(2026, 3, 11)) == date(2026, 3, 9)
    assert DAY_NAMES_ES[date(2026, 3, 9).weekday()] == "Lun"
    assert add_months(date(2026, 1, 15), -1) == date(2025, 12, 1)
    assert add_months(date(2025, 12, 1), 1) == date(2026, 1, 1)
    assert quarter_start(date(2026, 5, 20)) == date(2026, 4, 1)


def test_current_periods_run_through_end_of_today():
    today = date(2026, 3, 9)
    start, end = period_window("month", today, LIMA)
    assert start.date() == date(2026, 3, 1)
    assert end.date() == date(2026, 3, 10)

    start, end = period_window("year", today, LIMA)
    assert start.date() == date(2026, 1, 1)


def test_custom_range_includes_date_to():
    start, end = period_window("custom", date(2026, 3, 9), LIMA, date(2026, 3, 1), date(2026, 3, 7))
    assert start.date() == date(2026, 3, 1)
    assert end.date() == date(2026, 3, 8)


@pytest.mark.parametrize(
    "range_type,date_from,date_to",
    [
        ("custom", None, None),
        ("custom", date(2026, 3, 7), date(2026, 3, 1)),
        ("fortnight", None, None),
    ],
)
def test_invalid_ranges_are_rejected(range_type, date_from, date_to):
    with pytest.raises(HTTPException) as ex:
        period_window(range_type, date(2026, 3, 9), LIMA, date_from, date_to)
    assert ex.value.status_code == 400


def test_previous_window_is_the_full_prior_period():
    start, end = previous_window("week", date(2026, 3, 11), LIMA)
    assert (start.date(), end.date()) == (date(2026, 3, 2), date(2026, 3, 9))

    start, end = previous_window("month", date(2026, 3, 11), LIMA)
    assert (start.date(), end.date()) == (date(2026, 2, 1), date(2026, 3, 1))

    start, end = previous_window("custom", date(2026, 3, 11), LIMA, date(2026, 3, 1), date(2026, 3, 7))
    assert (start.date(), end.date()) == (date(2026, 2, 22), date(2026, 3, 1))
