from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from utils.timezone_helpers import format_utc_datetime, to_utc


class Coordinate(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


# One verified reading from the device's location capability
class GPSSample(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy_meters: float = Field(..., ge=0)
    timestamp: datetime
    is_mocked: bool = False

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, dt: datetime) -> datetime:
        return to_utc(dt)

    @field_serializer("timestamp")
    def serialize_timestamp(self, dt: datetime) -> str:
        """Ensure timestamp is formatted as UTC with Z suffix"""
        return format_utc_datetime(dt)

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(latitude=self.latitude, longitude=self.longitude)


# Circular geofence around a job site
class GeofenceSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    center: Coordinate
    radius_meters: float = Field(..., gt=0, description="Allowed check-in radius in meters")
