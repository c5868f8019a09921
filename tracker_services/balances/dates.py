"""UTC calendar helpers. Dates travel through the pipeline as YYYY-MM-DD strings."""

from datetime import date, datetime, timedelta, timezone
from typing import List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_date_str(value) -> str:
    if isinstance(value, datetime):
        value = value.astimezone(timezone.utc).date()
    return value.isoformat()


def end_of_day(date_str: str) -> datetime:
    """23:59:59.999 UTC of the given day."""
    day = date.fromisoformat(date_str)
    return datetime(day.year, day.month, day.day, 23, 59, 59, 999000, tzinfo=timezone.utc)


def end_of_day_timestamp(date_str: str) -> int:
    """Unix seconds of the day's last instant, truncated."""
    return int(end_of_day(date_str).timestamp())


def last_n_days(days: int, now: Optional[datetime] = None) -> List[str]:
    """Today and the preceding days, newest first, `days` entries in total."""
    today = (now or utc_now()).astimezone(timezone.utc).date()
    return [(today - timedelta(days=offset)).isoformat() for offset in range(days)]
