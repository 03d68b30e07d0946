"""
Datetime handling: UTC normalization, 'Z' serialization and the local
wall-clock conversions the CAO rules are evaluated in.
"""

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from conftest import START, make_break, make_entry
from models.gps import GPSSample
from utils.timezone_helpers import (
    ensure_timezone_aware,
    format_utc_datetime,
    from_utc_to_local,
    get_week_range,
    local_start_of_day,
)

NAIVE = datetime(2025, 6, 7, 13, 25, 39)
AWARE = datetime(2025, 6, 7, 15, 25, 39, tzinfo=ZoneInfo("Europe/Amsterdam"))


def test_naive_datetimes_are_treated_as_utc():
    assert ensure_timezone_aware(NAIVE).tzinfo == timezone.utc
    assert format_utc_datetime(NAIVE) == "2025-06-07T13:25:39Z"
    assert format_utc_datetime(None) is None


def test_aware_datetimes_are_converted_to_utc():
    assert format_utc_datetime(AWARE) == "2025-06-07T13:25:39Z"


@pytest.mark.parametrize("timestamp", [NAIVE, AWARE])
def test_gps_sample_serializes_utc(timestamp):
    sample = GPSSample(latitude=52.0, longitude=4.0, accuracy_meters=5, timestamp=timestamp)

    assert sample.timestamp == datetime(2025, 6, 7, 13, 25, 39, tzinfo=timezone.utc)
    assert sample.model_dump()["timestamp"] == "2025-06-07T13:25:39Z"


def test_time_entry_serializes_every_timestamp():
    entry = make_entry(
        START,
        START + timedelta(hours=8),
        breaks=(make_break(START + timedelta(hours=4), 30),),
    )
    dumped = entry.model_dump(mode="json")

    assert dumped["check_in_time"] == "2025-03-10T08:00:00Z"
    assert dumped["check_out_time"] == "2025-03-10T16:00:00Z"
    assert dumped["breaks"][0]["start_time"] == "2025-03-10T12:00:00Z"
    assert dumped["breaks"][0]["end_time"] == "2025-03-10T12:30:00Z"


def test_local_conversion_follows_dst():
    winter = from_utc_to_local(datetime(2025, 3, 29, 12, 0, tzinfo=timezone.utc))
    summer = from_utc_to_local(datetime(2025, 3, 31, 12, 0, tzinfo=timezone.utc))

    assert winter.hour == 13
    assert summer.hour == 14
    assert local_start_of_day(date(2025, 7, 1)) == datetime(2025, 6, 30, 22, 0, tzinfo=timezone.utc)


def test_week_range_spanning_dst_switch():
    week_start, start_dt, end_dt = get_week_range(datetime(2025, 3, 26, 12, 0, tzinfo=timezone.utc))

    assert week_start == date(2025, 3, 24)
    assert start_dt == datetime(2025, 3, 23, 23, 0, tzinfo=timezone.utc)
    # The week loses an hour to the switch to summer time
    assert end_dt == datetime(2025, 3, 30, 22, 0, tzinfo=timezone.utc)
    assert end_dt - start_dt == timedelta(days=7, hours=-1)


def test_sunday_late_evening_belongs_to_its_own_week():
    # 23:30 UTC on Sunday is already Monday in Amsterdam
    week_start, _, _ = get_week_range(datetime(2025, 3, 16, 23, 30, tzinfo=timezone.utc))
    assert week_start == date(2025, 3, 17)
