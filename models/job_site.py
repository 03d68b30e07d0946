from sqlmodel import SQLModel, Field
from typing import Optional

from core.config import DEFAULT_GEOFENCE_RADIUS_METERS
from models.gps import Coordinate, GeofenceSpec

# Defines the Structure of Data for Comparing a Guard Check In/Out to the Expected Location

# Job Site w/ Circular Geofence
class JobSite(SQLModel, table=True):
    __tablename__ = "job_site"

    id: str = Field(primary_key=True, description="Unique job site identifier")
    name: Optional[str] = Field(default=None, description="Human-friendly site name")
    center_lat: float = Field(..., description="Latitude of site center")
    center_lng: float = Field(..., description="Longitude of site center")
    radius_meters: float = Field(
        default=DEFAULT_GEOFENCE_RADIUS_METERS,
        description="Allowed check-in radius in meters",
    )

    @property
    def geofence(self) -> GeofenceSpec:
        return GeofenceSpec(
            center=Coordinate(latitude=self.center_lat, longitude=self.center_lng),
            radius_meters=self.radius_meters,
        )
