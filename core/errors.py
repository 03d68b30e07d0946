from enum import Enum
from typing import Optional


class TimeTrackingError(Exception):
    """Base class for every failure raised by the time tracking core."""

    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# --- Availability ---


class LocationUnavailableReason(str, Enum):
    SERVICE_DISABLED = "service_disabled"
    PERMISSION_DENIED = "permission_denied"
    PERMISSION_DENIED_FOREVER = "permission_denied_forever"
    TIMEOUT = "timeout"
    PROVIDER_ERROR = "provider_error"


class LocationUnavailable(TimeTrackingError):
    retryable = True

    def __init__(self, reason: LocationUnavailableReason, message: Optional[str] = None):
        super().__init__(message or f"Location unavailable: {reason.value}")
        self.reason = reason


# --- Verification ---


class VerificationFailed(TimeTrackingError):
    """The sample was acquired but cannot be trusted for this transition."""


class AccuracyInsufficient(VerificationFailed):
    def __init__(self, accuracy_meters: float, threshold_meters: float):
        super().__init__(
            f"GPS accuracy insufficient ({accuracy_meters:.0f}m, "
            f"maximum {threshold_meters:.0f}m). Try again."
        )
        self.accuracy_meters = accuracy_meters
        self.threshold_meters = threshold_meters


class SpoofDetected(VerificationFailed):
    def __init__(self):
        super().__init__("Mock location detected. Disable mock location apps.")


class OutOfGeofence(VerificationFailed):
    def __init__(self, distance_meters: float, radius_meters: float):
        super().__init__(
            f"Location verification failed. You are {distance_meters:.0f}m from the "
            f"job site. Maximum allowed: {radius_meters:.0f}m."
        )
        self.distance_meters = distance_meters
        self.radius_meters = radius_meters


# --- State machine misuse ---


class ShiftStateError(TimeTrackingError):
    """Operation not allowed in the guard's current shift state."""


class AlreadyCheckedIn(ShiftStateError):
    def __init__(self, guard_id: str, entry_id: Optional[str] = None):
        super().__init__(f"Guard {guard_id} already has an open time entry.")
        self.guard_id = guard_id
        self.entry_id = entry_id


class NoActiveEntry(ShiftStateError):
    def __init__(self, guard_id: str):
        super().__init__(f"No active shift found for guard {guard_id}.")
        self.guard_id = guard_id


class AlreadyOnBreak(ShiftStateError):
    def __init__(self, guard_id: str):
        super().__init__(f"Guard {guard_id} is already on break.")
        self.guard_id = guard_id


class NoActiveBreak(ShiftStateError):
    def __init__(self, guard_id: str):
        super().__init__(f"No active break found for guard {guard_id}.")
        self.guard_id = guard_id


class EntryClosed(ShiftStateError):
    def __init__(self, entry_id: str):
        super().__init__(f"Time entry {entry_id} is checked out and can no longer change.")
        self.entry_id = entry_id


class SiteMismatch(ShiftStateError):
    def __init__(self, expected_site_id: str, site_id: str):
        super().__init__(
            f"Check-out site {site_id} does not match check-in site {expected_site_id}."
        )
        self.expected_site_id = expected_site_id
        self.site_id = site_id


class InvalidTimeRange(ShiftStateError):
    pass


# --- Persistence ---


class PersistenceUnavailable(TimeTrackingError):
    retryable = True


class DuplicateEvent(TimeTrackingError):
    """The shift event was already applied; replaying it must be a no-op."""

    def __init__(self, event_id: str):
        super().__init__(f"Shift event {event_id} was already applied.")
        self.event_id = event_id


class EventConflict(ShiftStateError):
    """A different event with the same id is already waiting in the offline queue."""

    def __init__(self, event_id: str):
        super().__init__(
            f"Shift event {event_id} is already queued with different data; retry later."
        )
        self.event_id = event_id
