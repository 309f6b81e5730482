from datetime import datetime, date, timezone, timedelta
from typing import Optional, Tuple

# Business day boundaries are IST; storage is naive UTC
IST = timezone(timedelta(hours=5, minutes=30))


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ist_today() -> date:
    return datetime.now(IST).date()


def to_utc_naive(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalise a client-supplied timestamp for storage (naive values are taken as UTC)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def to_ist(dt: Optional[datetime]) -> Optional[datetime]:
    # Naive values are UTC by convention; returns an aware IST datetime
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(IST)


def ist_day_bounds_utc(day: date) -> Tuple[datetime, datetime]:
    """
    UTC range [start, end) covering one IST calendar day.

    Used by the "today" views (session, visits, claims) so a day that starts
    at 00:00 IST maps onto the naive-UTC columns correctly.
    """
    start_ist = datetime(day.year, day.month, day.day, tzinfo=IST)
    start_utc = start_ist.astimezone(timezone.utc).replace(tzinfo=None)
    return start_utc, start_utc + timedelta(days=1)


def parse_ist_date_input(ist_date_string: str) -> date:
    try:
        return datetime.strptime(ist_date_string, "%Y-%m-%d").date()
    except ValueError:
        raise ValueError(f"Invalid date format: {ist_date_string}. Expected: YYYY-MM-DD")


def minutes_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / 60.0
