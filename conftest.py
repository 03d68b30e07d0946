"""
Shared pytest fixtures: temporary SQLite stores, a controllable clock and a
scriptable location provider.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from math import pi
from typing import Optional
from zoneinfo import ZoneInfo

import pytest
from sqlmodel import SQLModel

from core.errors import PersistenceUnavailable
from db.repository import SqlTimeEntryRepository
from db.session import create_db_engine
from models.gps import Coordinate, GeofenceSpec, GPSSample
from models.job_site import JobSite
from models.time_entry import BreakRecord, BreakType, TimeEntry, TimeEntryStatus
from models.time_entry_record import ActiveTimeEntry, AppliedShiftEvent, TimeEntryRecord
from services.compliance_engine import ComplianceRuleEngine
from services.holiday_calendar import HolidayCalendar
from services.location_verifier import LocationPermission, LocationVerifier, PositionReading
from services.offline_queue import OfflineQueue
from services.shift_clock import ShiftClock
from utils.breaks import is_break_paid

AMSTERDAM = ZoneInfo("Europe/Amsterdam")
METERS_PER_DEGREE_LAT = 6371000 * pi / 180

SITE_CENTER = Coordinate(latitude=52.3676, longitude=4.9041)
SITE_FENCE = GeofenceSpec(center=SITE_CENTER, radius_meters=100)

# Monday 10 March 2025, 09:00 in Amsterdam (UTC+1, before DST)
START = datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)

STORE_TABLES = [
    JobSite.__table__,
    TimeEntryRecord.__table__,
    ActiveTimeEntry.__table__,
    AppliedShiftEvent.__table__,
]


def local(year, month, day, hour=0, minute=0) -> datetime:
    """Amsterdam wall-clock time as an aware datetime."""
    return datetime(year, month, day, hour, minute, tzinfo=AMSTERDAM)


def north_of(center: Coordinate, meters: float) -> tuple:
    """(lat, lng) exactly ``meters`` due north of ``center`` on the haversine sphere."""
    return center.latitude + meters / METERS_PER_DEGREE_LAT, center.longitude


def sample_at(when: datetime, meters_north: float = 0.0, accuracy: float = 5.0) -> GPSSample:
    lat, lng = north_of(SITE_CENTER, meters_north)
    return GPSSample(latitude=lat, longitude=lng, accuracy_meters=accuracy, timestamp=when)


def reading(
    when: Optional[datetime] = None,
    meters_north: float = 0.0,
    accuracy: float = 5.0,
    mock: bool = False,
) -> PositionReading:
    lat, lng = north_of(SITE_CENTER, meters_north)
    return PositionReading(
        latitude=lat,
        longitude=lng,
        accuracy_meters=accuracy,
        timestamp=when or START,
        is_mock_source=mock,
    )


def make_break(start: datetime, minutes: int, break_type: BreakType = BreakType.MEAL) -> BreakRecord:
    planned = timedelta(minutes=minutes)
    return BreakRecord(
        start_time=start,
        end_time=start + planned,
        break_type=break_type,
        planned_duration=planned,
        is_paid=is_break_paid(break_type, planned),
        start_sample=sample_at(start),
        end_sample=sample_at(start + planned),
    )


def make_entry(
    check_in: datetime,
    check_out: Optional[datetime],
    *,
    breaks=(),
    entry_id: str = "entry-1",
    guard_id: str = "guard-1",
    verified: bool = True,
    samples=(),
) -> TimeEntry:
    return TimeEntry(
        id=entry_id,
        guard_id=guard_id,
        shift_id="shift-1",
        site_id="site-1",
        site_fence=SITE_FENCE,
        status=TimeEntryStatus.CHECKED_OUT if check_out else TimeEntryStatus.CHECKED_IN,
        check_in_time=check_in,
        check_in_sample=sample_at(check_in),
        check_in_verified=verified,
        check_out_time=check_out,
        check_out_sample=sample_at(check_out) if check_out else None,
        check_out_verified=verified and check_out is not None,
        breaks=tuple(breaks),
        location_samples=tuple(samples),
        created_at=check_in,
        updated_at=check_out or check_in,
    )


class FakeClock:
    """Injected ``now_fn`` that only moves when a test advances it."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class StubProvider:
    """Scriptable LocationProvider."""

    def __init__(
        self,
        position: Optional[PositionReading] = None,
        *,
        enabled: bool = True,
        permission: LocationPermission = LocationPermission.GRANTED,
        requested_permission: Optional[LocationPermission] = None,
        delay: float = 0.0,
        error: Optional[Exception] = None,
    ):
        self.position = position or reading()
        self.enabled = enabled
        self.permission = permission
        self.requested_permission = requested_permission
        self.delay = delay
        self.error = error
        self.permission_requests = 0

    async def service_enabled(self) -> bool:
        return self.enabled

    async def check_permission(self) -> LocationPermission:
        return self.permission

    async def request_permission(self) -> LocationPermission:
        self.permission_requests += 1
        return self.requested_permission or self.permission

    async def current_position(self) -> PositionReading:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.position


class ManualSleeper:
    """Injected ``sleep_fn`` that returns only when the test releases a tick."""

    def __init__(self):
        self.calls = []
        self._ticks = asyncio.Queue()

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await self._ticks.get()

    def tick(self) -> None:
        self._ticks.put_nowait(None)


class FlakyRepository:
    """Wraps a repository; every call fails with PersistenceUnavailable while ``down``."""

    def __init__(self, inner):
        self.inner = inner
        self.down = False

    def __getattr__(self, name):
        attr = getattr(self.inner, name)
        if not callable(attr):
            return attr

        def call(*args, **kwargs):
            if self.down:
                raise PersistenceUnavailable("Time entry store unavailable: simulated outage")
            return attr(*args, **kwargs)

        return call


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'store.db'}")
    SQLModel.metadata.create_all(engine, tables=STORE_TABLES)
    yield engine
    engine.dispose()


@pytest.fixture
def repository(engine):
    return SqlTimeEntryRepository(engine)


@pytest.fixture
def offline_queue(tmp_path):
    queue_engine = create_db_engine(f"sqlite:///{tmp_path / 'offline.db'}")
    queue = OfflineQueue(queue_engine, max_attempts=3)
    queue.create_tables()
    yield queue
    queue_engine.dispose()


@pytest.fixture
def fake_now():
    return FakeClock()


@pytest.fixture
def compliance_engine(fake_now):
    return ComplianceRuleEngine(HolidayCalendar("annual"), tz="Europe/Amsterdam", now_fn=fake_now)


@pytest.fixture
def flaky_repository(repository):
    return FlakyRepository(repository)


@pytest.fixture
def shift_clock(flaky_repository, offline_queue, compliance_engine, fake_now):
    return ShiftClock(
        flaky_repository,
        LocationVerifier(accuracy_threshold_meters=50, timeout_seconds=1),
        compliance_engine,
        offline_queue,
        rate_lookup=lambda guard_id: 15.0,
        now_fn=fake_now,
        persistence_timeout=5,
    )


@pytest.fixture
def on_site():
    return StubProvider(reading())
