"""
Dutch public holidays (feestdagen) that trigger the CAO holiday premium.
"""

from datetime import date, timedelta
from functools import lru_cache
from types import MappingProxyType
from typing import FrozenSet, Mapping, Optional

from core.config import LIBERATION_DAY_POLICY

LIBERATION_DAY_ANNUAL = "annual"
LIBERATION_DAY_LUSTRUM = "lustrum"


def easter_sunday(year: int) -> date:
    """Easter Sunday via the anonymous Gregorian (Meeus/Jones/Butcher) algorithm."""
    a = year % 19
    b, c = divmod(year, 100)
    d, e = divmod(b, 4)
    f = (b + 8) // 25
    g = (b - f + 1) // 3
    h = (19 * a + b - d - g + 15) % 30
    i, k = divmod(c, 4)
    l = (32 + 2 * e + 2 * i - h - k) % 7
    m = (a + 11 * h + 22 * l) // 451
    month, day = divmod(h + l - 7 * m + 114, 31)
    return date(year, month, day + 1)


@lru_cache(maxsize=None)
def holiday_names(year: int, liberation_day_policy: str = LIBERATION_DAY_POLICY) -> Mapping[date, str]:
    easter = easter_sunday(year)
    holidays = {
        date(year, 1, 1): "Nieuwjaarsdag",
        date(year, 4, 27): "Koningsdag",
        date(year, 12, 25): "Eerste Kerstdag",
        date(year, 12, 26): "Tweede Kerstdag",
        easter - timedelta(days=2): "Goede Vrijdag",
        easter + timedelta(days=1): "Tweede Paasdag",
        easter + timedelta(days=39): "Hemelvaartsdag",
        easter + timedelta(days=50): "Tweede Pinksterdag",
    }
    if liberation_day_policy == LIBERATION_DAY_ANNUAL or year % 5 == 0:
        holidays[date(year, 5, 5)] = "Bevrijdingsdag"
    return MappingProxyType(holidays)


def compute_holidays(year: int, liberation_day_policy: str = LIBERATION_DAY_POLICY) -> FrozenSet[date]:
    return frozenset(holiday_names(year, liberation_day_policy))


class HolidayCalendar:
    def __init__(self, liberation_day_policy: str = LIBERATION_DAY_POLICY):
        if liberation_day_policy not in (LIBERATION_DAY_ANNUAL, LIBERATION_DAY_LUSTRUM):
            raise ValueError(f"Unknown Liberation Day policy: {liberation_day_policy}")
        self.liberation_day_policy = liberation_day_policy

    def compute_holidays(self, year: int) -> FrozenSet[date]:
        return compute_holidays(year, self.liberation_day_policy)

    def is_holiday(self, day: date) -> bool:
        return day in holiday_names(day.year, self.liberation_day_policy)

    def name_of(self, day: date) -> Optional[str]:
        return holiday_names(day.year, self.liberation_day_policy).get(day)
