"""Calendar helpers for the reward engine.

Timestamps are stored as naive UTC. Calendar days are cut in the reference
timezone from ``REWARD_TIMEZONE`` so that "today", "yesterday" and "this week"
mean the same thing to the streak tracker, the reward calculator and the
vote-limit counters.
"""
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from vendorvote.config import REWARD_TIMEZONE

DAY_SECONDS = 24 * 60 * 60
WEEK_SECONDS = 7 * DAY_SECONDS

REFERENCE_TZ = timezone.utc if REWARD_TIMEZONE.upper() == "UTC" else ZoneInfo(REWARD_TIMEZONE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def local_day(moment: datetime) -> date:
    """Calendar day of a naive UTC timestamp in the reference timezone."""
    return moment.replace(tzinfo=timezone.utc).astimezone(REFERENCE_TZ).date()


def day_start(day: date) -> datetime:
    start = datetime.combine(day, time.min).replace(tzinfo=REFERENCE_TZ)
    return start.astimezone(timezone.utc).replace(tzinfo=None)


def day_bounds(day: date) -> tuple[datetime, datetime]:
    return day_start(day), day_start(day + timedelta(days=1))


def week_start(day: date) -> date:
    return day - timedelta(days=day.weekday())


def day_key(day: date) -> str:
    return day.isoformat()


def week_key(day: date) -> str:
    year, week, _ = day.isocalendar()
    return f"{year}-W{week:02d}"
