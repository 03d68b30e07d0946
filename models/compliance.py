from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from utils.timezone_helpers import format_utc_datetime


class ShiftCategory(str, Enum):
    HOLIDAY = "holiday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"
    NIGHT = "night"
    REGULAR = "regular"


class CAOViolationType(str, Enum):
    EXCEEDS_MAXIMUM_HOURS = "exceeds_maximum_hours"
    MISSING_REQUIRED_BREAKS = "missing_required_breaks"
    INSUFFICIENT_REST_PERIOD = "insufficient_rest_period"
    UNDERPAID = "underpaid"


class CAOViolation(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: CAOViolationType
    description: str
    severity: float = Field(..., ge=0.0, le=1.0)
    detected_at: datetime

    @field_serializer("detected_at")
    def serialize_detected_at(self, dt: datetime) -> str:
        return format_utc_datetime(dt)


class CAOComplianceResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_compliant: bool
    violations: tuple[CAOViolation, ...] = ()
    warnings: tuple[str, ...] = ()
    total_hours: float
    weekly_hours: float
    required_break_minutes: int
    actual_break_minutes: float
    # None when the guard has no earlier closed shift to rest from
    rest_period_hours: Optional[float] = None
    exceeds_daily_limit: bool = False
    exceeds_weekly_limit: bool = False


class CAOEarningsResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: ShiftCategory

    regular_hours: float = 0.0
    overtime_hours: float = 0.0
    weekend_hours: float = 0.0
    night_hours: float = 0.0
    holiday_hours: float = 0.0

    regular_earnings: float = 0.0
    overtime_earnings: float = 0.0
    weekend_earnings: float = 0.0
    night_earnings: float = 0.0
    holiday_earnings: float = 0.0

    total_earnings: float
    holiday_pay: float  # vakantiegeld accrual, never folded into total_earnings
    total_with_holiday_pay: float
    base_hourly_rate: float
    effective_hourly_rate: float
    compliance: CAOComplianceResult

    @property
    def total_hours(self) -> float:
        return (
            self.regular_hours
            + self.overtime_hours
            + self.weekend_hours
            + self.night_hours
            + self.holiday_hours
        )

    @property
    def is_compliant(self) -> bool:
        return self.compliance.is_compliant

    @property
    def violations(self) -> tuple[CAOViolation, ...]:
        return self.compliance.violations

    @property
    def warnings(self) -> tuple[str, ...]:
        return self.compliance.warnings


class VacationAccrualResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    year: int
    total_worked_hours: float
    work_ratio: float
    pro_rate_ratio: float
    earned_vacation_days: float


class HolidayPayResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_earnings: float
    total_hours: float
    holiday_pay_amount: float
    holiday_pay_percentage: float
