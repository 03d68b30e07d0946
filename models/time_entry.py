from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_serializer, field_validator

from models.compliance import CAOEarningsResult
from models.gps import GeofenceSpec, GPSSample
from utils.breaks import sum_break_durations
from utils.timezone_helpers import format_utc_datetime, to_utc


class TimeEntryStatus(str, Enum):
    CHECKED_IN = "checked_in"
    ON_BREAK = "on_break"
    CHECKED_OUT = "checked_out"


class BreakType(str, Enum):
    MANDATORY = "mandatory"
    MEAL = "meal"
    REST = "rest"
    PERSONAL = "personal"
    EMERGENCY = "emergency"


class BreakRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    start_time: datetime
    end_time: Optional[datetime] = None
    break_type: BreakType
    planned_duration: timedelta
    is_paid: bool
    start_sample: GPSSample
    end_sample: Optional[GPSSample] = None
    is_verified: bool = True

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_times(cls, dt: Optional[datetime]) -> Optional[datetime]:
        return to_utc(dt) if dt is not None else None

    @field_serializer("start_time", "end_time")
    def serialize_times(self, dt: Optional[datetime]) -> Optional[str]:
        return format_utc_datetime(dt)

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    @property
    def duration(self) -> Optional[timedelta]:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time


class TimeEntry(BaseModel):
    """
    One guard's shift from check-in to check-out.

    Values are immutable: every state transition builds a new TimeEntry via
    ``model_copy(update=...)``. Once checked out the record is final; a
    correction is a new entry whose ``supersedes_id`` points at this one.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    guard_id: str
    shift_id: str
    site_id: str
    site_fence: GeofenceSpec
    status: TimeEntryStatus

    check_in_time: datetime
    check_in_sample: GPSSample
    check_in_verified: bool = False

    check_out_time: Optional[datetime] = None
    check_out_sample: Optional[GPSSample] = None
    check_out_verified: bool = False

    breaks: tuple[BreakRecord, ...] = ()
    location_samples: tuple[GPSSample, ...] = ()
    earnings: Optional[CAOEarningsResult] = None

    supersedes_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @field_validator("check_in_time", "check_out_time", "created_at", "updated_at")
    @classmethod
    def normalize_times(cls, dt: Optional[datetime]) -> Optional[datetime]:
        return to_utc(dt) if dt is not None else None

    @field_serializer("check_in_time", "check_out_time", "created_at", "updated_at")
    def serialize_times(self, dt: Optional[datetime]) -> Optional[str]:
        """Ensure timestamps are formatted as UTC with Z suffix"""
        return format_utc_datetime(dt)

    @property
    def is_open(self) -> bool:
        return self.status != TimeEntryStatus.CHECKED_OUT

    @property
    def active_break(self) -> Optional[BreakRecord]:
        return next((b for b in self.breaks if b.is_open), None)

    @property
    def is_authoritative(self) -> bool:
        # Only shifts verified at both ends count for pay
        return self.check_in_verified and self.check_out_verified

    def total_break_duration(self) -> timedelta:
        return sum_break_durations(self.breaks)

    def unpaid_break_duration(self) -> timedelta:
        return sum_break_durations(self.breaks, unpaid_only=True)

    def actual_work_duration(self) -> Optional[timedelta]:
        """Check-in to check-out minus unpaid break time (None while open)."""
        if self.check_out_time is None:
            return None
        return (self.check_out_time - self.check_in_time) - self.unpaid_break_duration()

    def actual_work_hours(self) -> float:
        duration = self.actual_work_duration()
        if duration is None:
            return 0.0
        return duration.total_seconds() / 3600.0
