"""
Advisory break detection from a shift's periodic location samples.

Suggestions are never written back onto the TimeEntry; a supervisor or the
guard decides whether to declare them.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Sequence

from models.break_suggestion import BreakSuggestion
from models.gps import Coordinate, GPSSample
from models.time_entry import BreakType, TimeEntry
from utils.geofence import distance

STATIONARY_THRESHOLD_METERS = 25.0
MINIMUM_BREAK_DURATION = timedelta(minutes=10)
MINIMUM_SAMPLES = 3

MEAL_DISTANCE_METERS = 1000.0
REST_DISTANCE_METERS = 200.0

# (distance from site beyond which, confidence bonus)
DISTANCE_CONFIDENCE_STEPS = ((500.0, 0.2), (1000.0, 0.2))
# (duration in whole minutes beyond which, confidence bonus)
DURATION_CONFIDENCE_STEPS = ((30, 0.1), (60, 0.1))
BASE_CONFIDENCE = 0.5

# Longest break (whole minutes) still suggested as paid; None = never paid
PAID_LIMIT_MINUTES = {
    BreakType.REST: 15,
    BreakType.PERSONAL: 10,
    BreakType.MEAL: None,
}


@dataclass(frozen=True)
class StationaryPeriod:
    start: datetime
    end: datetime
    location: GPSSample

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


def detect_stationary_periods(samples: Sequence[GPSSample]) -> List[StationaryPeriod]:
    """
    Runs of consecutive samples each within 25 m of its predecessor that last
    at least 10 minutes. A run still open at the last sample is included.
    """
    periods: List[StationaryPeriod] = []
    run_start = None

    def close_run(last: GPSSample) -> None:
        if run_start is not None and last.timestamp - run_start.timestamp >= MINIMUM_BREAK_DURATION:
            periods.append(StationaryPeriod(start=run_start.timestamp, end=last.timestamp, location=run_start))

    for previous, current in zip(samples, samples[1:]):
        if distance(previous, current) <= STATIONARY_THRESHOLD_METERS:
            if run_start is None:
                run_start = previous
        else:
            close_run(previous)
            run_start = None

    if samples:
        close_run(samples[-1])
    return periods


def classify_break(distance_from_site: float) -> BreakType:
    if distance_from_site > MEAL_DISTANCE_METERS:
        return BreakType.MEAL
    if distance_from_site > REST_DISTANCE_METERS:
        return BreakType.REST
    # Idle on site
    return BreakType.PERSONAL


def break_confidence(distance_from_site: float, duration: timedelta) -> float:
    confidence = BASE_CONFIDENCE
    for threshold, bonus in DISTANCE_CONFIDENCE_STEPS:
        if distance_from_site > threshold:
            confidence += bonus
    minutes = int(duration.total_seconds() // 60)
    for threshold, bonus in DURATION_CONFIDENCE_STEPS:
        if minutes > threshold:
            confidence += bonus
    return min(1.0, confidence)


def suggest_paid(break_type: BreakType, duration: timedelta) -> bool:
    limit = PAID_LIMIT_MINUTES.get(break_type)
    if limit is None:
        return False
    return int(duration.total_seconds() // 60) <= limit


class BreakInferenceEngine:
    def detect_breaks(self, entry: TimeEntry) -> List[BreakSuggestion]:
        return self.detect_from_samples(entry.location_samples, entry.site_fence.center)

    def detect_from_samples(
        self, samples: Sequence[GPSSample], site_center: Coordinate
    ) -> List[BreakSuggestion]:
        if len(samples) < MINIMUM_SAMPLES:
            return []

        ordered = sorted(samples, key=lambda s: s.timestamp)
        suggestions = []
        for period in detect_stationary_periods(ordered):
            meters = distance(period.location, site_center)
            break_type = classify_break(meters)
            suggestions.append(BreakSuggestion(
                detected_start=period.start,
                detected_end=period.end,
                location=period.location,
                distance_from_site_meters=meters,
                confidence=break_confidence(meters, period.duration),
                break_type=break_type,
                suggested_paid=suggest_paid(break_type, period.duration),
            ))
        return suggestions
