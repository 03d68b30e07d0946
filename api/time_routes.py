import logging
from datetime import date, datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.exc import OperationalError
from sqlmodel import Session

from core.deps import get_current_guard, get_session, get_shift_clock
from core.errors import (
    LocationUnavailable,
    PersistenceUnavailable,
    ShiftStateError,
    TimeTrackingError,
    VerificationFailed,
)
from models.break_suggestion import BreakSuggestion
from models.compliance import CAOEarningsResult
from models.gps import GeofenceSpec
from models.job_site import JobSite
from models.time_entry import BreakType, TimeEntry
from services.break_inference import BreakInferenceEngine
from services.location_verifier import PositionReading, ReportedPositionProvider
from services.offline_queue import ReconcileReport
from services.shift_clock import ShiftClock

# --- Pydantic Models for Request Payloads ---


class ClockInRequest(BaseModel):
    shift_id: str
    site_id: str
    position: PositionReading


class ClockOutRequest(BaseModel):
    site_id: str
    position: PositionReading


class BreakStartRequest(BaseModel):
    break_type: BreakType
    planned_minutes: int = Field(..., gt=0)
    position: PositionReading


class PositionRequest(BaseModel):
    position: PositionReading


class SampleRequest(BaseModel):
    entry_id: str
    position: PositionReading


class HolidayResponse(BaseModel):
    date: date
    name: str


logger = logging.getLogger(__name__)

# Defines API Endpoints
router = APIRouter()


def http_error(e: TimeTrackingError) -> HTTPException:
    """Translate a time tracking failure into the matching HTTP status."""
    if isinstance(e, (LocationUnavailable, PersistenceUnavailable)):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(e, VerificationFailed):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(e, ShiftStateError):
        code = status.HTTP_409_CONFLICT
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=e.message)


async def _site_fence(
    session: Session,
    clock: ShiftClock,
    site_id: str,
    guard_id: Optional[str] = None,
) -> GeofenceSpec:
    """
    Geofence of a job site, read from the store and cached in the offline
    queue. While the store is unreachable the fence of guard_id's open entry
    (when given) or the cached copy is used so the ShiftClock can still queue
    the write.
    """
    try:
        site = session.get(JobSite, site_id)
    except OperationalError as e:
        logger.warning(f"[TIME_ROUTES] Store unreachable looking up site {site_id}: {e}")
        if guard_id is not None:
            try:
                current = await clock.active_entry(guard_id)
            except TimeTrackingError as err:
                raise http_error(err) from err
            if current is not None and current.site_id == site_id:
                return current.site_fence
        fence = await clock.offline_queue.site_fence(site_id) if clock.offline_queue else None
        if fence is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=f"Job site {site_id} is unavailable while the store is unreachable.",
            ) from e
        return fence
    if not site:
        raise HTTPException(status_code=404, detail=f"Job site with ID {site_id} not found.")
    if clock.offline_queue is not None:
        await clock.offline_queue.remember_fence(site.id, site.geofence)
    return site.geofence


async def _load_own_entry(clock: ShiftClock, entry_id: str, guard_id: str) -> TimeEntry:
    try:
        entry = await clock.get_entry(entry_id)
    except TimeTrackingError as e:
        raise http_error(e) from e
    # Other guards' entries are reported as missing
    if entry is None or entry.guard_id != guard_id:
        raise HTTPException(status_code=404, detail=f"Time entry {entry_id} not found.")
    return entry


# Clock In Endpoint
@router.post("/clock-in", response_model=TimeEntry)
async def clock_in(
    data: ClockInRequest,
    session: Session = Depends(get_session),
    clock: ShiftClock = Depends(get_shift_clock),
    guard_id: str = Depends(get_current_guard),
):
    fence = await _site_fence(session, clock, data.site_id)
    try:
        return await clock.start_shift(
            guard_id,
            data.shift_id,
            data.site_id,
            fence,
            ReportedPositionProvider(data.position),
        )
    except TimeTrackingError as e:
        raise http_error(e) from e


# Clock Out Endpoint
@router.post("/clock-out", response_model=TimeEntry)
async def clock_out(
    data: ClockOutRequest,
    session: Session = Depends(get_session),
    clock: ShiftClock = Depends(get_shift_clock),
    guard_id: str = Depends(get_current_guard),
):
    fence = await _site_fence(session, clock, data.site_id, guard_id)
    try:
        return await clock.end_shift(
            guard_id, data.site_id, fence, ReportedPositionProvider(data.position)
        )
    except TimeTrackingError as e:
        raise http_error(e) from e


@router.post("/break/start", response_model=TimeEntry)
async def break_start(
    data: BreakStartRequest,
    clock: ShiftClock = Depends(get_shift_clock),
    guard_id: str = Depends(get_current_guard),
):
    try:
        return await clock.start_break(
            guard_id,
            data.break_type,
            timedelta(minutes=data.planned_minutes),
            ReportedPositionProvider(data.position),
        )
    except TimeTrackingError as e:
        raise http_error(e) from e


@router.post("/break/end", response_model=TimeEntry)
async def break_end(
    data: PositionRequest,
    clock: ShiftClock = Depends(get_shift_clock),
    guard_id: str = Depends(get_current_guard),
):
    try:
        return await clock.end_break(guard_id, ReportedPositionProvider(data.position))
    except TimeTrackingError as e:
        raise http_error(e) from e


# Periodic sample pushed by the device while a shift is open
@router.post("/samples", response_model=TimeEntry)
async def record_sample(
    data: SampleRequest,
    clock: ShiftClock = Depends(get_shift_clock),
    guard_id: str = Depends(get_current_guard),
):
    try:
        sample = await clock.verifier.acquire(ReportedPositionProvider(data.position))
        return await clock.record_sample(guard_id, data.entry_id, sample)
    except TimeTrackingError as e:
        raise http_error(e) from e


@router.get("/active", response_model=Optional[TimeEntry])
async def active_entry(
    clock: ShiftClock = Depends(get_shift_clock),
    guard_id: str = Depends(get_current_guard),
):
    try:
        return await clock.active_entry(guard_id)
    except TimeTrackingError as e:
        raise http_error(e) from e


@router.get("/entries", response_model=List[TimeEntry])
async def list_entries(
    start: datetime = Query(..., description="Inclusive lower bound on check-in (UTC)"),
    end: datetime = Query(..., description="Exclusive upper bound on check-in (UTC)"),
    clock: ShiftClock = Depends(get_shift_clock),
    guard_id: str = Depends(get_current_guard),
):
    if end <= start:
        raise HTTPException(status_code=400, detail="end must be after start")
    try:
        return await clock.list_entries(guard_id, start, end)
    except TimeTrackingError as e:
        raise http_error(e) from e


@router.get("/entries/{entry_id}/earnings", response_model=CAOEarningsResult)
async def entry_earnings(
    entry_id: str,
    clock: ShiftClock = Depends(get_shift_clock),
    guard_id: str = Depends(get_current_guard),
):
    entry = await _load_own_entry(clock, entry_id, guard_id)
    if entry.earnings is None:
        raise HTTPException(
            status_code=409, detail=f"Time entry {entry_id} has no earnings yet (still open)."
        )
    return entry.earnings


@router.get("/entries/{entry_id}/break-suggestions", response_model=List[BreakSuggestion])
async def break_suggestions(
    entry_id: str,
    clock: ShiftClock = Depends(get_shift_clock),
    guard_id: str = Depends(get_current_guard),
):
    entry = await _load_own_entry(clock, entry_id, guard_id)
    return BreakInferenceEngine().detect_breaks(entry)


@router.get("/holidays/{year}", response_model=List[HolidayResponse])
def holidays(year: int, clock: ShiftClock = Depends(get_shift_clock)):
    if not 1583 <= year <= 9999:
        raise HTTPException(status_code=400, detail="Year must be a Gregorian calendar year.")
    calendar = clock.compliance_engine.holiday_calendar
    return [
        HolidayResponse(date=day, name=calendar.name_of(day))
        for day in sorted(calendar.compute_holidays(year))
    ]


# Replays the calling guard's writes queued while the store was unreachable
@router.post("/sync")
async def sync(
    clock: ShiftClock = Depends(get_shift_clock),
    guard_id: str = Depends(get_current_guard),
) -> dict:
    report: ReconcileReport = await clock.sync(guard_id)
    return {
        "applied": report.applied,
        "failed": report.failed,
        "remaining": report.remaining,
        "interrupted": report.interrupted,
    }
