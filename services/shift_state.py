"""
Pure shift state transitions.

Every ShiftClock write is a ShiftEvent applied to the guard's current entry
(or None). The same functions drive live writes, offline projection and
replay, so a replayed event lands in exactly the state a live one would.
"""

from typing import Callable, Dict, Optional

from core.errors import (
    AlreadyCheckedIn,
    AlreadyOnBreak,
    InvalidTimeRange,
    NoActiveBreak,
    NoActiveEntry,
    OutOfGeofence,
    SiteMismatch,
)
from models.gps import GeofenceSpec, GPSSample
from models.shift_event import ShiftEvent, ShiftEventType
from models.time_entry import BreakRecord, TimeEntry, TimeEntryStatus
from utils.breaks import is_break_paid
from utils.geofence import distance

def verify_in_fence(sample: GPSSample, fence: GeofenceSpec) -> float:
    """Return the distance to the fence center, raising OutOfGeofence outside it."""
    meters = distance(sample, fence.center)
    if meters > fence.radius_meters:
        raise OutOfGeofence(meters, fence.radius_meters)
    return meters


def _require_open(current: Optional[TimeEntry], event: ShiftEvent) -> TimeEntry:
    if current is None or not current.is_open or current.id != event.entry_id:
        raise NoActiveEntry(event.guard_id)
    if event.occurred_at < current.check_in_time:
        raise InvalidTimeRange(
            f"Event at {event.occurred_at.isoformat()} precedes check-in of entry {current.id}."
        )
    return current


def open_entry(current: Optional[TimeEntry], event: ShiftEvent) -> TimeEntry:
    if current is not None and current.is_open:
        raise AlreadyCheckedIn(event.guard_id, current.id)
    if event.fence is None or event.site_id is None or event.shift_id is None:
        raise InvalidTimeRange("Check-in requires a shift, a site and its geofence.")

    verify_in_fence(event.sample, event.fence)

    return TimeEntry(
        id=event.entry_id,
        guard_id=event.guard_id,
        shift_id=event.shift_id,
        site_id=event.site_id,
        site_fence=event.fence,
        status=TimeEntryStatus.CHECKED_IN,
        check_in_time=event.occurred_at,
        check_in_sample=event.sample,
        check_in_verified=True,
        location_samples=(event.sample,),
        created_at=event.occurred_at,
        updated_at=event.occurred_at,
    )


def begin_break(current: Optional[TimeEntry], event: ShiftEvent) -> TimeEntry:
    entry = _require_open(current, event)
    if entry.status == TimeEntryStatus.ON_BREAK:
        raise AlreadyOnBreak(event.guard_id)
    if event.break_type is None or event.planned_duration is None:
        raise InvalidTimeRange("A break needs a type and a planned duration.")

    record = BreakRecord(
        start_time=event.occurred_at,
        break_type=event.break_type,
        planned_duration=event.planned_duration,
        is_paid=is_break_paid(event.break_type, event.planned_duration),
        start_sample=event.sample,
    )
    return entry.model_copy(update={
        "status": TimeEntryStatus.ON_BREAK,
        "breaks": entry.breaks + (record,),
        "location_samples": entry.location_samples + (event.sample,),
        "updated_at": event.occurred_at,
    })


def _closed_breaks(entry: TimeEntry, event: ShiftEvent) -> tuple:
    breaks = []
    for brk in entry.breaks:
        if brk.is_open:
            if event.occurred_at < brk.start_time:
                raise InvalidTimeRange("Break cannot end before it started.")
            brk = brk.model_copy(update={"end_time": event.occurred_at, "end_sample": event.sample})
        breaks.append(brk)
    return tuple(breaks)


def finish_break(current: Optional[TimeEntry], event: ShiftEvent) -> TimeEntry:
    entry = _require_open(current, event)
    if entry.active_break is None:
        raise NoActiveBreak(event.guard_id)

    return entry.model_copy(update={
        "status": TimeEntryStatus.CHECKED_IN,
        "breaks": _closed_breaks(entry, event),
        "location_samples": entry.location_samples + (event.sample,),
        "updated_at": event.occurred_at,
    })


def record_sample(current: Optional[TimeEntry], event: ShiftEvent) -> TimeEntry:
    entry = _require_open(current, event)
    return entry.model_copy(update={
        "location_samples": entry.location_samples + (event.sample,),
        "updated_at": event.occurred_at,
    })


def close_entry(current: Optional[TimeEntry], event: ShiftEvent) -> TimeEntry:
    if current is None or not current.is_open or current.id != event.entry_id:
        raise NoActiveEntry(event.guard_id)
    if event.site_id is not None and event.site_id != current.site_id:
        raise SiteMismatch(current.site_id, event.site_id)

    verify_in_fence(event.sample, event.fence or current.site_fence)

    if event.occurred_at <= current.check_in_time:
        raise InvalidTimeRange("Check-out time must be after check-in time.")

    closed = current.model_copy(update={
        "status": TimeEntryStatus.CHECKED_OUT,
        "check_out_time": event.occurred_at,
        "check_out_sample": event.sample,
        "check_out_verified": True,
        # An open break ends at check-out
        "breaks": _closed_breaks(current, event),
        "location_samples": current.location_samples + (event.sample,),
        "updated_at": event.occurred_at,
    })
    return closed


TRANSITIONS: Dict[ShiftEventType, Callable[[Optional[TimeEntry], ShiftEvent], TimeEntry]] = {
    ShiftEventType.CHECK_IN: open_entry,
    ShiftEventType.BREAK_START: begin_break,
    ShiftEventType.BREAK_END: finish_break,
    ShiftEventType.LOCATION_SAMPLE: record_sample,
    ShiftEventType.CHECK_OUT: close_entry,
}


def apply_event(current: Optional[TimeEntry], event: ShiftEvent) -> TimeEntry:
    """Apply one event to the guard's current entry and return the new value."""
    return TRANSITIONS[event.event_type](current, event)
