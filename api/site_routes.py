from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlmodel import Session

from core.config import DEFAULT_GEOFENCE_RADIUS_METERS
from core.deps import get_session, get_shift_clock
from models.job_site import JobSite
from services.shift_clock import ShiftClock

router = APIRouter()

# --- Pydantic Models for Request/Response ---


class SiteGeofenceResponse(BaseModel):
    site_id: str
    name: Optional[str] = None
    center_lat: float
    center_lng: float
    radius_meters: float


class SiteGeofenceRequest(BaseModel):
    name: Optional[str] = None
    center_lat: float = Field(..., ge=-90, le=90)
    center_lng: float = Field(..., ge=-180, le=180)
    radius_meters: float = Field(default=DEFAULT_GEOFENCE_RADIUS_METERS, gt=0)


def _to_response(site: JobSite) -> SiteGeofenceResponse:
    return SiteGeofenceResponse(
        site_id=site.id,
        name=site.name,
        center_lat=site.center_lat,
        center_lng=site.center_lng,
        radius_meters=site.radius_meters,
    )


# --- API Endpoints ---


@router.get("/{site_id}/geofence", response_model=SiteGeofenceResponse)
def get_site_geofence(site_id: str, session: Session = Depends(get_session)):
    """
    Retrieve the geofence (center and radius) guards are verified against at a job site.
    """
    site = session.get(JobSite, site_id)
    if not site:
        raise HTTPException(status_code=404, detail=f"Job site with ID {site_id} not found.")
    return _to_response(site)


@router.put("/{site_id}/geofence", response_model=SiteGeofenceResponse)
async def put_site_geofence(
    site_id: str,
    data: SiteGeofenceRequest,
    session: Session = Depends(get_session),
    clock: ShiftClock = Depends(get_shift_clock),
):
    """Create or move a job site's geofence. Open entries keep the fence they checked in with."""
    site = session.get(JobSite, site_id) or JobSite(
        id=site_id, center_lat=data.center_lat, center_lng=data.center_lng
    )
    site.name = data.name
    site.center_lat = data.center_lat
    site.center_lng = data.center_lng
    site.radius_meters = data.radius_meters
    session.add(site)
    session.commit()
    session.refresh(site)
    if clock.offline_queue is not None:
        await clock.offline_queue.remember_fence(site.id, site.geofence)
    return _to_response(site)
