"""
Business-calendar windows.

Every "today / this week / this month" figure is cut on the kiosk's own calendar
(`KIOSK_TIMEZONE`), never on the database server's `CURRENT_DATE`. Windows are
half-open `[start, end)` pairs of timezone-aware datetimes, ready to be bound as
`created_at >= %s AND created_at < %s`.
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

from fastapi import HTTPException

from .config import settings

Window = Tuple[datetime, datetime]

# Monday first, matching the week windows below.
DAY_NAMES_ES = ["Lun", "Mar", "Mié", "Jue", "Vie", "Sáb", "Dom"]
MONTH_NAMES_ES = ["Ene", "Feb", "Mar", "Abr", "May", "Jun", "Jul", "Ago", "Sep", "Oct", "Nov", "Dic"]


def business_tz() -> ZoneInfo:
    return ZoneInfo(settings.timezone)


def business_today(tz: Optional[ZoneInfo] = None, now: Optional[datetime] = None) -> date:
    tz = tz or business_tz()
    now = now or datetime.now(timezone.utc)
    return now.astimezone(tz).date()


def local_midnight(d: date, tz: ZoneInfo) -> datetime:
    return datetime.combine(d, time.min, tzinfo=tz)


def days_window(first: date, last_exclusive: date, tz: ZoneInfo) -> Window:
    return local_midnight(first, tz), local_midnight(last_exclusive, tz)


def day_window(d: date, tz: ZoneInfo) -> Window:
    return days_window(d, d + timedelta(days=1), tz)


def week_start(d: date) -> date:
    return d - timedelta(days=d.weekday())


def month_start(d: date) -> date:
    return d.replace(day=1)


def add_months(d: date, months: int) -> date:
    """First day of the month `months` away from `d`'s month."""
    idx = d.year * 12 + (d.month - 1) + months
    return date(idx // 12, idx % 12 + 1, 1)


def quarter_start(d: date) -> date:
    return date(d.year, ((d.month - 1) // 3) * 3 + 1, 1)


def period_window(
    range_type: str,
    today: date,
    tz: ZoneInfo,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> Window:
    """Window for a named range; current periods run through the end of today."""
    tomorrow = today + timedelta(days=1)
    if range_type == "today":
        return day_window(today, tz)
    if range_type == "yesterday":
        return day_window(today - timedelta(days=1), tz)
    if range_type == "week":
        return days_window(week_start(today), tomorrow, tz)
    if range_type == "month":
        return days_window(month_start(today), tomorrow, tz)
    if range_type == "quarter":
        return days_window(quarter_start(today), tomorrow, tz)
    if range_type == "year":
        return days_window(date(today.year, 1, 1), tomorrow, tz)
    if range_type == "custom":
        if date_from is None or date_to is None:
            raise HTTPException(status_code=400, detail="date_from and date_to are required for a custom range")
        if date_to < date_from:
            raise HTTPException(status_code=400, detail="date_to must not be before date_from")
        return days_window(date_from, date_to + timedelta(days=1), tz)
    raise HTTPException(status_code=400, detail=f"unknown range: {range_type}")


def previous_window(
    range_type: str,
    today: date,
    tz: ZoneInfo,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> Window:
    """The full period immediately before the one `period_window` returns."""
    if range_type == "today":
        return day_window(today - timedelta(days=1), tz)
    if range_type == "yesterday":
        return day_window(today - timedelta(days=2), tz)
    if range_type == "week":
        start = week_start(today)
        return days_window(start - timedelta(days=7), start, tz)
    if range_type == "month":
        start = month_start(today)
        return days_window(add_months(start, -1), start, tz)
    if range_type == "quarter":
        start = quarter_start(today)
        return days_window(add_months(start, -3), start, tz)
    if range_type == "year":
        return days_window(date(today.year - 1, 1, 1), date(today.year, 1, 1), tz)
    if range_type == "custom":
        period_window("custom", today, tz, date_from, date_to)
        span = (date_to - date_from).days + 1
        return days_window(date_from - timedelta(days=span), date_from, tz)
    raise HTTPException(status_code=400, detail=f"unknown range: {range_type}")
