from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_serializer, field_validator

from models.gps import GeofenceSpec, GPSSample
from models.time_entry import BreakType
from utils.timezone_helpers import format_utc_datetime, to_utc


class ShiftEventType(str, Enum):
    CHECK_IN = "check_in"
    BREAK_START = "break_start"
    BREAK_END = "break_end"
    LOCATION_SAMPLE = "location_sample"
    CHECK_OUT = "check_out"


# A single logical ShiftClock write, replayable after connectivity loss
class ShiftEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_type: ShiftEventType
    guard_id: str
    entry_id: str
    occurred_at: datetime
    sample: GPSSample

    # check-in / check-out
    shift_id: Optional[str] = None
    site_id: Optional[str] = None
    fence: Optional[GeofenceSpec] = None

    # break start
    break_type: Optional[BreakType] = None
    planned_duration: Optional[timedelta] = None

    @field_validator("occurred_at")
    @classmethod
    def normalize_occurred_at(cls, dt: datetime) -> datetime:
        return to_utc(dt)

    @field_serializer("occurred_at")
    def serialize_occurred_at(self, dt: datetime) -> str:
        return format_utc_datetime(dt)

    @property
    def event_id(self) -> str:
        return f"{self.guard_id}:{format_utc_datetime(self.occurred_at)}:{self.event_type.value}"
