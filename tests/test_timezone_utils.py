from datetime import date, datetime, timedelta, timezone

import pytest

from services.timezone_utils import (
    IST,
    ist_day_bounds_utc,
    minutes_between,
    parse_ist_date_input,
    to_ist,
    to_utc_naive,
)


def test_ist_day_starts_at_1830_utc_previous_day():
    start, end = ist_day_bounds_utc(date(2024, 6, 3))
    assert start == datetime(2024, 6, 2, 18, 30)
    assert end == datetime(2024, 6, 3, 18, 30)


def test_to_utc_naive_converts_aware_and_keeps_naive():
    aware = datetime(2024, 6, 3, 9, 30, tzinfo=IST)
    assert to_utc_naive(aware) == datetime(2024, 6, 3, 4, 0)
    assert to_utc_naive(datetime(2024, 6, 3, 4, 0)) == datetime(2024, 6, 3, 4, 0)
    assert to_utc_naive(None) is None


def test_to_ist_treats_naive_as_utc():
    ist = to_ist(datetime(2024, 6, 3, 4, 0))
    assert ist.utcoffset() == timedelta(hours=5, minutes=30)
    assert (ist.hour, ist.minute) == (9, 30)
    assert ist.astimezone(timezone.utc).replace(tzinfo=None) == datetime(2024, 6, 3, 4, 0)


def test_parse_date_input():
    assert parse_ist_date_input("2024-06-03") == date(2024, 6, 3)
    with pytest.raises(ValueError):
        parse_ist_date_input("03/06/2024")


def test_minutes_between():
    t = datetime(2024, 6, 3, 4, 0)
    assert minutes_between(t, t + timedelta(minutes=10, seconds=30)) == 10.5
