from datetime import timedelta

PAID_MANDATORY_BREAK_MINUTES = 15  # short mandatory breaks stay paid

# (minimum worked hours, required break minutes), checked from the top down
REQUIRED_BREAK_TABLE = (
    (8.0, 45),
    (5.5, 30),
    (4.0, 15),
)


def required_break_minutes(worked_hours: float) -> int:
    """Return the minimum break time the CAO requires for a shift.

    Args:
        worked_hours: Hours worked in the shift (float).

    Returns:
        int: 0 below 4h, 15 for [4, 5.5)h, 30 for [5.5, 8)h, 45 from 8h.
    """
    for threshold, minutes in REQUIRED_BREAK_TABLE:
        if worked_hours >= threshold:
            return minutes
    return 0


def is_break_paid(break_type, planned_duration: timedelta) -> bool:
    """Return whether a declared break counts as paid working time.

    Business rule: emergency breaks are always paid, mandatory breaks are paid
    when planned for at most 15 minutes, meal/rest/personal breaks are unpaid.
    """
    if break_type == "emergency":
        return True
    if break_type == "mandatory":
        return planned_duration <= timedelta(minutes=PAID_MANDATORY_BREAK_MINUTES)
    return False


def sum_break_durations(breaks, *, unpaid_only: bool = False) -> timedelta:
    """Total duration of completed breaks (open breaks contribute nothing)."""
    total = timedelta()
    for brk in breaks:
        if brk.end_time is None:
            continue
        if unpaid_only and brk.is_paid:
            continue
        total += brk.end_time - brk.start_time
    return total
