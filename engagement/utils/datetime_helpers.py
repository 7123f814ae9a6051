"""
Standardized Date/Time Handling Utilities

CRITICAL RULES:
- All stored timestamps are timezone-aware UTC (use now_utc())
- Calendar days are always taken in ONE configured zone (STREAK_TIMEZONE),
  never from elapsed hours
- Never mix naive and aware datetimes
"""

import logging
from datetime import datetime, date, time, timedelta
from typing import Callable
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

UTC = ZoneInfo("UTC")

Clock = Callable[[], datetime]


def now_utc() -> datetime:
    """
    Get current datetime in UTC (timezone-aware)

    Returns:
        Current datetime in UTC with timezone info
    """
    return datetime.now(UTC)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def calendar_day(value: datetime, tz: ZoneInfo) -> date:
    """Calendar date of a timestamp in the given zone"""
    return ensure_aware(value).astimezone(tz).date()


def days_between(earlier: datetime, later: datetime, tz: ZoneInfo) -> int:
    """
    Number of calendar-day boundaries crossed between two timestamps

    23:59 -> 00:01 the next day is 1, 00:01 -> 23:59 the same day is 0.
    """
    return (calendar_day(later, tz) - calendar_day(earlier, tz)).days


def start_of_day(day: date, tz: ZoneInfo) -> datetime:
    """Midnight of a calendar day in the given zone, as UTC"""
    return datetime.combine(day, time.min, tzinfo=tz).astimezone(UTC)


def period_start(period: str, now: datetime, tz: ZoneInfo) -> datetime:
    """
    Start of the current leaderboard period

    Args:
        period: 'daily', 'weekly' (ISO week, Monday start) or 'monthly'
        now: Reference time
        tz: Zone defining calendar days

    Returns:
        Period start as a UTC datetime
    """
    today = calendar_day(now, tz)
    if period == "daily":
        return start_of_day(today, tz)
    if period == "weekly":
        return start_of_day(today - timedelta(days=today.weekday()), tz)
    if period == "monthly":
        return start_of_day(today.replace(day=1), tz)
    raise ValueError(f"Unknown period '{period}'")
