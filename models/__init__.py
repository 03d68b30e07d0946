from .break_suggestion import BreakSuggestion
from .compliance import (
    CAOComplianceResult,
    CAOEarningsResult,
    CAOViolation,
    CAOViolationType,
    HolidayPayResult,
    ShiftCategory,
    VacationAccrualResult,
)
from .gps import Coordinate, GeofenceSpec, GPSSample
from .job_site import JobSite
from .offline_event import OfflineEventStatus, OfflineGuardSnapshot, OfflineShiftEvent, OfflineSiteFence
from .shift_event import ShiftEvent, ShiftEventType
from .time_entry import BreakRecord, BreakType, TimeEntry, TimeEntryStatus
from .time_entry_record import ActiveTimeEntry, AppliedShiftEvent, TimeEntryRecord
