"""
CAO Particuliere Beveiliging pay classification and working-time validation.

A closed shift falls into exactly one premium category, picked in the order
holiday > weekend > night > regular. Premiums never stack in this model.
Violations are advisory audit data and never stop a shift from closing.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Iterable, List, Optional, Sequence

from core.config import CAO_TIMEZONE, MINIMUM_HOURLY_RATE
from core.errors import InvalidTimeRange
from models.compliance import (
    CAOComplianceResult,
    CAOEarningsResult,
    CAOViolation,
    CAOViolationType,
    HolidayPayResult,
    ShiftCategory,
    VacationAccrualResult,
)
from models.time_entry import TimeEntry
from services.holiday_calendar import HolidayCalendar
from utils.breaks import required_break_minutes
from utils.timezone_helpers import from_utc_to_local, get_week_range

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]

REGULAR_DAILY_HOURS = 8.0
MAXIMUM_DAILY_HOURS = 12.0
MAXIMUM_WEEKLY_HOURS = 60.0
MINIMUM_REST_HOURS = 11.0
CRITICAL_REST_HOURS = 8.0
HOLIDAY_PAY_PERCENTAGE = 0.08  # vakantiegeld
OVERTIME_MULTIPLIER = 1.5

STANDARD_VACATION_DAYS = 25
FULL_TIME_YEARLY_HOURS = 2080.0  # 40 hours/week * 52 weeks

NIGHT_START = time(22, 0)
NIGHT_END = time(6, 0)

PREMIUM_MULTIPLIERS = {
    ShiftCategory.HOLIDAY: 2.0,
    ShiftCategory.SATURDAY: 1.5,
    ShiftCategory.SUNDAY: 2.0,
    ShiftCategory.NIGHT: 1.3,
    ShiftCategory.REGULAR: 1.0,
}

# Which result bucket a premium category books its hours and earnings into
CATEGORY_BUCKETS = {
    ShiftCategory.HOLIDAY: "holiday",
    ShiftCategory.SATURDAY: "weekend",
    ShiftCategory.SUNDAY: "weekend",
    ShiftCategory.NIGHT: "night",
}


def intersects_night_window(local_start: datetime, local_end: datetime) -> bool:
    """True when [local_start, local_end) overlaps any 22:00-06:00 window."""
    tz = local_start.tzinfo
    day = local_start.date() - timedelta(days=1)
    while day <= local_end.date():
        window_start = datetime.combine(day, NIGHT_START, tzinfo=tz)
        window_end = datetime.combine(day + timedelta(days=1), NIGHT_END, tzinfo=tz)
        if window_start < local_end and local_start < window_end:
            return True
        day += timedelta(days=1)
    return False


class ComplianceRuleEngine:
    def __init__(
        self,
        holiday_calendar: Optional[HolidayCalendar] = None,
        tz: str = CAO_TIMEZONE,
        minimum_hourly_rate: float = MINIMUM_HOURLY_RATE,
        now_fn: Optional[NowFn] = None,
    ):
        self.holiday_calendar = holiday_calendar or HolidayCalendar()
        self.tz = tz
        self.minimum_hourly_rate = minimum_hourly_rate
        self._now_fn = now_fn or (lambda: datetime.now(timezone.utc))

    def classify(self, check_in: datetime, check_out: datetime) -> ShiftCategory:
        local_start = from_utc_to_local(check_in, self.tz)
        local_end = from_utc_to_local(check_out, self.tz)

        if self.holiday_calendar.is_holiday(local_start.date()):
            return ShiftCategory.HOLIDAY
        weekday = local_start.weekday()
        if weekday == 5:
            return ShiftCategory.SATURDAY
        if weekday == 6:
            return ShiftCategory.SUNDAY
        if intersects_night_window(local_start, local_end):
            return ShiftCategory.NIGHT
        return ShiftCategory.REGULAR

    def compute_earnings(
        self,
        entry: TimeEntry,
        base_hourly_rate: float,
        weekly_entries: Sequence[TimeEntry] = (),
        previous_entry: Optional[TimeEntry] = None,
    ) -> CAOEarningsResult:
        """
        Classify a closed entry, price its hours and validate it against the CAO.

        Args:
            entry: The checked-out TimeEntry to price.
            base_hourly_rate: Guard's base rate in euro.
            weekly_entries: The guard's other entries; only closed ones in the
                same local calendar week count towards weekly hours.
            previous_entry: The guard's most recent earlier closed entry, for
                the rest period check (falls back to weekly_entries).
        """
        if entry.check_out_time is None:
            raise InvalidTimeRange(f"Time entry {entry.id} has not been checked out.")
        if entry.check_out_time <= entry.check_in_time:
            raise InvalidTimeRange("Check-out time must be after check-in time.")

        total_hours = max(entry.actual_work_hours(), 0.0)
        category = self.classify(entry.check_in_time, entry.check_out_time)
        multiplier = PREMIUM_MULTIPLIERS[category]

        hours = {"regular": 0.0, "overtime": 0.0, "weekend": 0.0, "night": 0.0, "holiday": 0.0}
        earnings = dict.fromkeys(hours, 0.0)

        if category == ShiftCategory.REGULAR:
            hours["regular"] = min(total_hours, REGULAR_DAILY_HOURS)
            hours["overtime"] = max(total_hours - REGULAR_DAILY_HOURS, 0.0)
            earnings["regular"] = hours["regular"] * base_hourly_rate
            earnings["overtime"] = hours["overtime"] * base_hourly_rate * OVERTIME_MULTIPLIER
        else:
            bucket = CATEGORY_BUCKETS[category]
            hours[bucket] = total_hours
            earnings[bucket] = total_hours * base_hourly_rate * multiplier

        total_earnings = sum(earnings.values())
        holiday_pay = total_earnings * HOLIDAY_PAY_PERCENTAGE

        compliance = self.validate(
            entry,
            total_hours=total_hours,
            base_hourly_rate=base_hourly_rate,
            weekly_entries=weekly_entries,
            previous_entry=previous_entry,
        )

        return CAOEarningsResult(
            category=category,
            regular_hours=hours["regular"],
            overtime_hours=hours["overtime"],
            weekend_hours=hours["weekend"],
            night_hours=hours["night"],
            holiday_hours=hours["holiday"],
            regular_earnings=earnings["regular"],
            overtime_earnings=earnings["overtime"],
            weekend_earnings=earnings["weekend"],
            night_earnings=earnings["night"],
            holiday_earnings=earnings["holiday"],
            total_earnings=total_earnings,
            holiday_pay=holiday_pay,
            total_with_holiday_pay=total_earnings + holiday_pay,
            base_hourly_rate=base_hourly_rate,
            effective_hourly_rate=total_earnings / total_hours if total_hours > 0 else 0.0,
            compliance=compliance,
        )

    def weekly_hours(self, entry: TimeEntry, weekly_entries: Iterable[TimeEntry]) -> float:
        """Hours of ``entry`` plus other closed entries in its local calendar week."""
        _, week_start, week_end = get_week_range(entry.check_in_time, self.tz)
        total = entry.actual_work_hours()
        for other in weekly_entries:
            if other.id == entry.id or other.check_out_time is None:
                continue
            if week_start <= other.check_in_time < week_end:
                total += other.actual_work_hours()
        return total

    @staticmethod
    def rest_period_hours(
        entry: TimeEntry,
        candidates: Iterable[TimeEntry],
    ) -> Optional[float]:
        latest_end: Optional[datetime] = None
        for other in candidates:
            if other is None or other.id == entry.id or other.check_out_time is None:
                continue
            if other.check_out_time > entry.check_in_time:
                continue
            if latest_end is None or other.check_out_time > latest_end:
                latest_end = other.check_out_time
        if latest_end is None:
            return None
        return (entry.check_in_time - latest_end).total_seconds() / 3600.0

    def validate(
        self,
        entry: TimeEntry,
        total_hours: float,
        base_hourly_rate: float,
        weekly_entries: Sequence[TimeEntry] = (),
        previous_entry: Optional[TimeEntry] = None,
    ) -> CAOComplianceResult:
        detected_at = self._now_fn()
        violations: List[CAOViolation] = []
        warnings: List[str] = []

        # Maximum daily hours
        exceeds_daily = total_hours > MAXIMUM_DAILY_HOURS
        if exceeds_daily:
            violations.append(CAOViolation(
                type=CAOViolationType.EXCEEDS_MAXIMUM_HOURS,
                description=(
                    f"Shift of {total_hours:.1f} hours exceeds the CAO maximum of "
                    f"{MAXIMUM_DAILY_HOURS:.0f} hours per day"
                ),
                severity=0.9,
                detected_at=detected_at,
            ))

        # Maximum weekly hours
        weekly_hours = self.weekly_hours(entry, weekly_entries)
        exceeds_weekly = weekly_hours > MAXIMUM_WEEKLY_HOURS
        if exceeds_weekly:
            violations.append(CAOViolation(
                type=CAOViolationType.EXCEEDS_MAXIMUM_HOURS,
                description=(
                    f"Weekly total of {weekly_hours:.1f} hours exceeds the CAO maximum of "
                    f"{MAXIMUM_WEEKLY_HOURS:.0f} hours per week"
                ),
                severity=0.8,
                detected_at=detected_at,
            ))

        # Required breaks (paid and unpaid breaks both count as rest)
        required_minutes = required_break_minutes(total_hours)
        actual_minutes = entry.total_break_duration().total_seconds() / 60.0
        if actual_minutes < required_minutes:
            violations.append(CAOViolation(
                type=CAOViolationType.MISSING_REQUIRED_BREAKS,
                description=(
                    f"Break time of {actual_minutes:.0f} minutes is below the CAO "
                    f"requirement of {required_minutes} minutes"
                ),
                severity=0.7,
                detected_at=detected_at,
            ))

        # Rest period before this shift
        rest_hours = self.rest_period_hours(entry, [previous_entry, *weekly_entries])
        if rest_hours is not None and rest_hours < MINIMUM_REST_HOURS:
            if rest_hours < CRITICAL_REST_HOURS:
                violations.append(CAOViolation(
                    type=CAOViolationType.INSUFFICIENT_REST_PERIOD,
                    description=(
                        f"Rest period of {rest_hours:.1f} hours before this shift is below "
                        f"the CAO minimum of {MINIMUM_REST_HOURS:.0f} hours"
                    ),
                    severity=0.8,
                    detected_at=detected_at,
                ))
            else:
                warnings.append(
                    f"Rest period of {rest_hours:.1f} hours before this shift is below "
                    f"the recommended {MINIMUM_REST_HOURS:.0f} hours"
                )

        if base_hourly_rate < self.minimum_hourly_rate:
            violations.append(CAOViolation(
                type=CAOViolationType.UNDERPAID,
                description=(
                    f"Hourly rate (€{base_hourly_rate:.2f}) is below the CAO minimum "
                    f"(€{self.minimum_hourly_rate:.2f})"
                ),
                severity=1.0,
                detected_at=detected_at,
            ))

        if not entry.is_authoritative:
            warnings.append(
                "Shift was not geofence-verified at both check-in and check-out; "
                "not authoritative for pay"
            )

        if violations:
            logger.info(
                f"[CAO] Entry {entry.id} for guard {entry.guard_id}: "
                f"{len(violations)} violation(s) {[v.type.value for v in violations]}"
            )

        return CAOComplianceResult(
            is_compliant=not violations,
            violations=tuple(violations),
            warnings=tuple(warnings),
            total_hours=total_hours,
            weekly_hours=weekly_hours,
            required_break_minutes=required_minutes,
            actual_break_minutes=actual_minutes,
            rest_period_hours=rest_hours,
            exceeds_daily_limit=exceeds_daily,
            exceeds_weekly_limit=exceeds_weekly,
        )

    def calculate_vacation_accrual(
        self,
        yearly_entries: Iterable[TimeEntry],
        year: int,
        employment_start: date,
    ) -> VacationAccrualResult:
        total_hours = sum(
            e.actual_work_hours() for e in yearly_entries if e.check_out_time is not None
        )
        work_ratio = min(total_hours / FULL_TIME_YEARLY_HOURS, 1.0)

        # Pro-rate if employment started during the year
        year_start, year_end = date(year, 1, 1), date(year, 12, 31)
        days_in_year = (year_end - year_start).days + 1
        actual_start = max(employment_start, year_start)
        days_employed = (year_end - actual_start).days + 1
        pro_rate = min(max(days_employed / days_in_year, 0.0), 1.0)

        return VacationAccrualResult(
            year=year,
            total_worked_hours=total_hours,
            work_ratio=work_ratio,
            pro_rate_ratio=pro_rate,
            earned_vacation_days=STANDARD_VACATION_DAYS * work_ratio * pro_rate,
        )

    def calculate_holiday_pay(
        self, entries: Iterable[TimeEntry], base_hourly_rate: float
    ) -> HolidayPayResult:
        total_earnings = 0.0
        total_hours = 0.0
        for entry in entries:
            if entry.check_out_time is None:
                continue
            result = self.compute_earnings(entry, base_hourly_rate, [])
            total_earnings += result.total_earnings
            total_hours += result.total_hours

        return HolidayPayResult(
            total_earnings=total_earnings,
            total_hours=total_hours,
            holiday_pay_amount=total_earnings * HOLIDAY_PAY_PERCENTAGE,
            holiday_pay_percentage=HOLIDAY_PAY_PERCENTAGE,
        )
