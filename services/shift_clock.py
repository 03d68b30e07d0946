"""
GPS-verified shift state machine for security guards.

Lifecycle: no entry -> checked_in <-> on_break -> checked_out.

Every write is built as a ShiftEvent and run through the pure transitions in
services.shift_state. Online, the result is persisted together with the
event id in the applied-event ledger; when the store is unreachable the event
goes to the OfflineQueue and the guard's state is projected from the last
confirmed snapshot plus the pending events.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from core.config import (
    DEFAULT_HOURLY_RATE,
    OFFLINE_SYNC_INTERVAL_SECONDS,
    PERSISTENCE_TIMEOUT_SECONDS,
)
from core.errors import (
    DuplicateEvent,
    EntryClosed,
    InvalidTimeRange,
    NoActiveEntry,
    PersistenceUnavailable,
    SpoofDetected,
    TimeTrackingError,
)
from db.repository import TimeEntryRepository
from models.compliance import CAOEarningsResult
from models.gps import GeofenceSpec, GPSSample
from models.shift_event import ShiftEvent, ShiftEventType
from models.time_entry import BreakType, TimeEntry
from services import shift_state
from services.compliance_engine import ComplianceRuleEngine
from services.location_sampler import LocationSampler, SleepFn
from services.location_verifier import LocationProvider, LocationVerifier
from services.offline_queue import OfflineQueue, ReconcileReport
from utils.timezone_helpers import get_week_range, to_utc

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]
RateLookup = Callable[[str], float]


def _default_now() -> datetime:
    return datetime.now(timezone.utc)


class ShiftClock:
    def __init__(
        self,
        repository: TimeEntryRepository,
        verifier: LocationVerifier,
        compliance_engine: ComplianceRuleEngine,
        offline_queue: Optional[OfflineQueue] = None,
        *,
        rate_lookup: Optional[RateLookup] = None,
        now_fn: NowFn = _default_now,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
        sampling_interval: Optional[float] = None,
        sleep_fn: SleepFn = asyncio.sleep,
        persistence_timeout: float = PERSISTENCE_TIMEOUT_SECONDS,
    ):
        self.repository = repository
        self.verifier = verifier
        self.compliance_engine = compliance_engine
        self.offline_queue = offline_queue
        self._rate_lookup = rate_lookup or (lambda guard_id: DEFAULT_HOURLY_RATE)
        self._now = now_fn
        self._new_id = id_factory
        self.persistence_timeout = persistence_timeout
        self.sampler = (
            LocationSampler(self, sampling_interval, sleep_fn) if sampling_interval else None
        )
        self._sleep = sleep_fn
        self._sync_task: Optional[asyncio.Task] = None
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, guard_id: str) -> asyncio.Lock:
        return self._locks.setdefault(guard_id, asyncio.Lock())

    async def _call(self, fn, *args):
        """Run a blocking repository call off the event loop, bounded by a timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args), timeout=self.persistence_timeout
            )
        except asyncio.TimeoutError as e:
            raise PersistenceUnavailable(
                f"Time entry store did not answer within {self.persistence_timeout:.0f}s"
            ) from e

    # ---- state resolution ----

    async def _project(self, guard_id: str, pending: List[ShiftEvent]) -> Optional[TimeEntry]:
        entry = await self.offline_queue.snapshot(guard_id)
        for event in pending:
            entry = shift_state.apply_event(entry, event)
        return entry

    async def _current(self, guard_id: str) -> Tuple[Optional[TimeEntry], bool]:
        """The guard's latest entry state and whether writes must go offline."""
        if self.offline_queue is not None:
            pending = await self.offline_queue.pending_for(guard_id)
            if pending:
                # Keep ordering: nothing goes to the store ahead of queued events
                return await self._project(guard_id, pending), True
        try:
            return await self._call(self.repository.get_active_entry, guard_id), False
        except PersistenceUnavailable:
            if self.offline_queue is None:
                raise
            logger.warning(f"[SHIFT_CLOCK] Store unreachable, projecting guard {guard_id} offline")
            return await self._project(guard_id, []), True

    # ---- writes ----

    async def _price(self, entry: TimeEntry) -> CAOEarningsResult:
        _, week_start, week_end = get_week_range(entry.check_in_time, self.compliance_engine.tz)
        weekly = await self._call(self.repository.list_entries, entry.guard_id, week_start, week_end)
        superseded = {e.supersedes_id for e in weekly if e.supersedes_id}
        superseded.add(entry.supersedes_id)
        weekly = [e for e in weekly if e.id not in superseded]
        previous = await self._call(
            self.repository.latest_closed_before, entry.guard_id, entry.check_in_time
        )
        if previous is not None and previous.id in superseded:
            previous = None
        rate = self._rate_lookup(entry.guard_id)
        return self.compliance_engine.compute_earnings(entry, rate, weekly, previous)

    async def _persist(self, event: ShiftEvent, current: Optional[TimeEntry]) -> TimeEntry:
        entry = shift_state.apply_event(current, event)
        if event.event_type == ShiftEventType.CHECK_IN:
            return await self._call(self.repository.open_entry, entry, event.event_id)
        if event.event_type == ShiftEventType.CHECK_OUT:
            entry = entry.model_copy(update={"earnings": await self._price(entry)})
            return await self._call(self.repository.close_entry, entry, event.event_id)
        return await self._call(self.repository.update_open_entry, entry, event.event_id)

    async def _queue(self, event: ShiftEvent, current: Optional[TimeEntry]) -> TimeEntry:
        # Validate against the projected state before accepting the event
        entry = shift_state.apply_event(current, event)
        await self.offline_queue.enqueue(event)
        logger.info(f"[SHIFT_CLOCK] {event.event_type.value} for guard {event.guard_id} queued offline")
        return entry

    async def _remember(self, entry: TimeEntry) -> None:
        if self.offline_queue is not None:
            await self.offline_queue.remember(entry.guard_id, entry if entry.is_open else None)

    async def _commit(
        self, event: ShiftEvent, current: Optional[TimeEntry], offline: bool
    ) -> TimeEntry:
        if offline:
            return await self._queue(event, current)
        try:
            entry = await self._persist(event, current)
        except PersistenceUnavailable:
            if self.offline_queue is None:
                raise
            logger.warning(f"[SHIFT_CLOCK] Store unreachable during {event.event_type.value}")
            return await self._queue(event, current)
        await self._remember(entry)
        return entry

    def _event(
        self,
        event_type: ShiftEventType,
        guard_id: str,
        current: Optional[TimeEntry],
        sample: GPSSample,
        **payload,
    ) -> ShiftEvent:
        if current is None or not current.is_open:
            raise NoActiveEntry(guard_id)
        return ShiftEvent(
            event_type=event_type,
            guard_id=guard_id,
            entry_id=current.id,
            occurred_at=self._now(),
            sample=sample,
            **payload,
        )

    # ---- operations ----

    async def start_shift(
        self,
        guard_id: str,
        shift_id: str,
        site_id: str,
        fence: GeofenceSpec,
        provider: LocationProvider,
    ) -> TimeEntry:
        """
        Check a guard in at a job site.

        Raises:
            LocationUnavailable / AccuracyInsufficient / SpoofDetected: sample rejected
            OutOfGeofence: the guard is outside the site fence
            AlreadyCheckedIn: the guard already has an open entry
        """
        # Acquisition can take up to the location timeout; keep it outside the lock
        sample = await self.verifier.acquire(provider)

        async with self._lock(guard_id):
            current, offline = await self._current(guard_id)
            event = ShiftEvent(
                event_type=ShiftEventType.CHECK_IN,
                guard_id=guard_id,
                entry_id=self._new_id(),
                occurred_at=self._now(),
                sample=sample,
                shift_id=shift_id,
                site_id=site_id,
                fence=fence,
            )
            entry = await self._commit(event, current, offline)

        logger.info(f"[SHIFT_CLOCK] Guard {guard_id} checked in at site {site_id} (entry {entry.id})")
        if self.sampler is not None:
            self.sampler.start(guard_id, entry.id, provider)
        return entry

    async def start_break(
        self,
        guard_id: str,
        break_type: BreakType,
        planned_duration: timedelta,
        provider: LocationProvider,
    ) -> TimeEntry:
        sample = await self.verifier.acquire(provider)

        async with self._lock(guard_id):
            current, offline = await self._current(guard_id)
            event = self._event(
                ShiftEventType.BREAK_START,
                guard_id,
                current,
                sample,
                break_type=break_type,
                planned_duration=planned_duration,
            )
            entry = await self._commit(event, current, offline)

        logger.info(f"[SHIFT_CLOCK] Guard {guard_id} started {break_type.value} break")
        return entry

    async def end_break(self, guard_id: str, provider: LocationProvider) -> TimeEntry:
        sample = await self.verifier.acquire(provider)

        async with self._lock(guard_id):
            current, offline = await self._current(guard_id)
            event = self._event(ShiftEventType.BREAK_END, guard_id, current, sample)
            entry = await self._commit(event, current, offline)

        logger.info(f"[SHIFT_CLOCK] Guard {guard_id} ended break")
        return entry

    async def end_shift(
        self,
        guard_id: str,
        site_id: str,
        fence: GeofenceSpec,
        provider: LocationProvider,
    ) -> TimeEntry:
        """
        Check a guard out, closing any open break, and attach CAO earnings.

        While offline the returned entry is the projected closed entry without
        earnings; they are computed when the queued check-out is replayed.
        """
        sample = await self.verifier.acquire(provider)

        async with self._lock(guard_id):
            current, offline = await self._current(guard_id)
            event = self._event(
                ShiftEventType.CHECK_OUT, guard_id, current, sample, site_id=site_id, fence=fence
            )
            entry = await self._commit(event, current, offline)

        if self.sampler is not None:
            self.sampler.stop(guard_id)
        logger.info(
            f"[SHIFT_CLOCK] Guard {guard_id} checked out "
            f"({entry.actual_work_hours():.2f}h worked, entry {entry.id})"
        )
        return entry

    async def record_sample(self, guard_id: str, entry_id: str, sample: GPSSample) -> TimeEntry:
        """Append a periodic location sample to the guard's open entry."""
        if sample.is_mocked:
            raise SpoofDetected()

        async with self._lock(guard_id):
            current, offline = await self._current(guard_id)
            if current is None or not current.is_open or current.id != entry_id:
                raise EntryClosed(entry_id)
            event = self._event(ShiftEventType.LOCATION_SAMPLE, guard_id, current, sample)
            return await self._commit(event, current, offline)

    async def correct_entry(
        self,
        entry_id: str,
        *,
        check_in_time: Optional[datetime] = None,
        check_out_time: Optional[datetime] = None,
    ) -> TimeEntry:
        """
        Record a corrected copy of a closed entry.

        The original is never touched; the correction supersedes it and a
        changed timestamp loses its geofence verification.
        """
        original = await self._call(self.repository.get, entry_id)
        if original is None:
            raise InvalidTimeRange(f"Unknown time entry {entry_id}.")
        if original.is_open:
            raise InvalidTimeRange("Only checked-out entries can be corrected.")

        new_in = to_utc(check_in_time) if check_in_time else original.check_in_time
        new_out = to_utc(check_out_time) if check_out_time else original.check_out_time
        if new_out <= new_in:
            raise InvalidTimeRange("Check-out time must be after check-in time.")
        for brk in original.breaks:
            if brk.start_time < new_in or brk.end_time > new_out:
                raise InvalidTimeRange("Corrected times must contain every recorded break.")

        now = self._now()
        corrected = original.model_copy(update={
            "id": self._new_id(),
            "check_in_time": new_in,
            "check_out_time": new_out,
            "check_in_verified": original.check_in_verified and new_in == original.check_in_time,
            "check_out_verified": original.check_out_verified and new_out == original.check_out_time,
            "supersedes_id": original.id,
            "earnings": None,
            "created_at": now,
            "updated_at": now,
        })
        corrected = corrected.model_copy(update={"earnings": await self._price(corrected)})
        await self._call(self.repository.record_correction, corrected)
        logger.info(f"[SHIFT_CLOCK] Entry {original.id} corrected by {corrected.id}")
        return corrected

    # ---- reads ----

    async def active_entry(self, guard_id: str) -> Optional[TimeEntry]:
        current, _ = await self._current(guard_id)
        return current if current is not None and current.is_open else None

    async def get_entry(self, entry_id: str) -> Optional[TimeEntry]:
        return await self._call(self.repository.get, entry_id)

    async def list_entries(self, guard_id: str, start: datetime, end: datetime) -> List[TimeEntry]:
        return await self._call(self.repository.list_entries, guard_id, start, end)

    # ---- replay ----

    async def apply_event(self, event: ShiftEvent) -> TimeEntry:
        """
        Apply an event server-side exactly once.

        Replaying an already-applied event returns the stored entry without
        changing anything.
        """
        async with self._lock(event.guard_id):
            if await self._call(self.repository.is_event_applied, event.event_id):
                return await self._already_applied(event)
            current = await self._call(self.repository.get_active_entry, event.guard_id)
            try:
                entry = await self._persist(event, current)
            except DuplicateEvent:
                return await self._already_applied(event)
        await self._remember(entry)
        return entry

    async def _already_applied(self, event: ShiftEvent) -> TimeEntry:
        logger.info(f"[SHIFT_CLOCK] Event {event.event_id} already applied, skipping")
        stored = await self._call(self.repository.get, event.entry_id)
        if stored is None:
            raise DuplicateEvent(event.event_id)
        return stored

    async def sync(self, guard_id: Optional[str] = None) -> ReconcileReport:
        """Replay the offline queue against the store (all guards when guard_id is None)."""
        if self.offline_queue is None:
            return ReconcileReport()
        return await self.offline_queue.reconcile(self.apply_event, guard_id)

    def start_sync_loop(self, interval_seconds: float = OFFLINE_SYNC_INTERVAL_SECONDS) -> asyncio.Task:
        """Replay queued events every ``interval_seconds`` until shutdown."""
        if self._sync_task is None or self._sync_task.done():
            self._sync_task = asyncio.create_task(
                self._sync_forever(interval_seconds), name="offline-sync"
            )
        return self._sync_task

    async def _sync_forever(self, interval_seconds: float) -> None:
        logger.info(f"[SHIFT_CLOCK] Replaying offline queue every {interval_seconds:.0f}s")
        while True:
            await self._sleep(interval_seconds)
            try:
                report = await self.sync()
            except (TimeTrackingError, SQLAlchemyError) as e:
                logger.error(f"[SHIFT_CLOCK] Background sync failed: {e}")
                continue
            if report.applied or report.failed:
                logger.info(
                    f"[SHIFT_CLOCK] Background sync: {report.applied} applied, "
                    f"{report.failed} failed, {report.remaining} remaining"
                )

    async def shutdown(self) -> None:
        if self._sync_task is not None:
            self._sync_task.cancel()
            await asyncio.gather(self._sync_task, return_exceptions=True)
            self._sync_task = None
        if self.sampler is not None:
            await self.sampler.stop_all()
