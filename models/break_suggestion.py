from datetime import datetime, timedelta

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from models.gps import GPSSample
from models.time_entry import BreakType
from utils.timezone_helpers import format_utc_datetime


# Advisory output of break inference; never written back onto a TimeEntry
class BreakSuggestion(BaseModel):
    model_config = ConfigDict(frozen=True)

    detected_start: datetime
    detected_end: datetime
    location: GPSSample
    distance_from_site_meters: float
    confidence: float = Field(..., ge=0.0, le=1.0)
    break_type: BreakType
    suggested_paid: bool

    @field_serializer("detected_start", "detected_end")
    def serialize_times(self, dt: datetime) -> str:
        return format_utc_datetime(dt)

    @property
    def duration(self) -> timedelta:
        return self.detected_end - self.detected_start
