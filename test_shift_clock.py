"""
Tests for the shift state machine: verification, transitions, concurrency,
offline fallback and replay.
"""

import asyncio
import random
import time
from datetime import timedelta

import pytest

from conftest import SITE_FENCE, START, ManualSleeper, StubProvider, make_entry, reading, sample_at
from core.errors import (
    AlreadyCheckedIn,
    AlreadyOnBreak,
    EntryClosed,
    EventConflict,
    InvalidTimeRange,
    NoActiveBreak,
    NoActiveEntry,
    OutOfGeofence,
    ShiftStateError,
    SiteMismatch,
    SpoofDetected,
)
from models.shift_event import ShiftEvent, ShiftEventType
from models.time_entry import BreakType, TimeEntryStatus
from services.location_verifier import LocationVerifier
from services.shift_clock import ShiftClock

GUARD = "guard-1"
WIDE_START = START - timedelta(days=1)
WIDE_END = START + timedelta(days=60)


async def _check_in(clock, provider, guard=GUARD):
    return await clock.start_shift(guard, "shift-1", "site-1", SITE_FENCE, provider)


async def _check_out(clock, provider, guard=GUARD):
    return await clock.end_shift(guard, "site-1", SITE_FENCE, provider)


@pytest.mark.asyncio
async def test_check_in_inside_fence(shift_clock, repository, on_site):
    entry = await _check_in(shift_clock, on_site)

    assert entry.status == TimeEntryStatus.CHECKED_IN
    assert entry.check_in_verified
    assert entry.check_in_time == START
    assert (await shift_clock.active_entry(GUARD)).id == entry.id
    assert repository.get(entry.id).model_dump() == entry.model_dump()


@pytest.mark.asyncio
async def test_check_in_outside_fence(shift_clock, repository):
    with pytest.raises(OutOfGeofence) as exc:
        await _check_in(shift_clock, StubProvider(reading(meters_north=150)))

    assert exc.value.distance_meters == pytest.approx(150, abs=0.01)
    assert exc.value.radius_meters == 100
    assert await shift_clock.active_entry(GUARD) is None


@pytest.mark.asyncio
async def test_spoofed_sample_never_persisted(shift_clock, repository, offline_queue):
    with pytest.raises(SpoofDetected):
        await _check_in(shift_clock, StubProvider(reading(mock=True)))

    assert repository.list_entries(GUARD, WIDE_START, WIDE_END) == []
    assert await offline_queue.pending_for(GUARD) == []


@pytest.mark.asyncio
async def test_second_check_in_rejected(shift_clock, fake_now, on_site):
    first = await _check_in(shift_clock, on_site)
    fake_now.advance(minutes=5)

    with pytest.raises(AlreadyCheckedIn) as exc:
        await _check_in(shift_clock, on_site)
    assert exc.value.entry_id == first.id


@pytest.mark.asyncio
async def test_concurrent_check_ins_open_one_entry(shift_clock, repository, on_site):
    results = await asyncio.gather(
        _check_in(shift_clock, on_site),
        _check_in(shift_clock, on_site),
        return_exceptions=True,
    )

    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1 and isinstance(errors[0], AlreadyCheckedIn)
    assert len(repository.list_entries(GUARD, WIDE_START, WIDE_END)) == 1


@pytest.mark.asyncio
async def test_full_shift_with_break(shift_clock, repository, fake_now, on_site):
    entry = await _check_in(shift_clock, on_site)

    fake_now.advance(hours=3)
    on_break = await shift_clock.start_break(GUARD, BreakType.MEAL, timedelta(minutes=30), on_site)
    assert on_break.status == TimeEntryStatus.ON_BREAK
    assert on_break.active_break is not None
    assert on_break.active_break.is_paid is False

    fake_now.advance(minutes=30)
    back = await shift_clock.end_break(GUARD, on_site)
    assert back.status == TimeEntryStatus.CHECKED_IN

    fake_now.advance(hours=4, minutes=30)
    closed = await _check_out(shift_clock, on_site)

    assert closed.id == entry.id
    assert closed.status == TimeEntryStatus.CHECKED_OUT
    assert closed.is_authoritative
    assert closed.actual_work_duration() == timedelta(hours=7, minutes=30)
    assert closed.earnings.regular_earnings == pytest.approx(112.5)
    assert closed.earnings.is_compliant
    assert await shift_clock.active_entry(GUARD) is None
    assert repository.get(entry.id).status == TimeEntryStatus.CHECKED_OUT


@pytest.mark.asyncio
async def test_break_state_errors(shift_clock, fake_now, on_site):
    with pytest.raises(NoActiveEntry):
        await shift_clock.start_break(GUARD, BreakType.REST, timedelta(minutes=15), on_site)

    await _check_in(shift_clock, on_site)
    fake_now.advance(minutes=1)
    with pytest.raises(NoActiveBreak):
        await shift_clock.end_break(GUARD, on_site)

    await shift_clock.start_break(GUARD, BreakType.REST, timedelta(minutes=15), on_site)
    fake_now.advance(minutes=1)
    with pytest.raises(AlreadyOnBreak):
        await shift_clock.start_break(GUARD, BreakType.REST, timedelta(minutes=15), on_site)


@pytest.mark.asyncio
async def test_check_out_closes_open_break(shift_clock, fake_now, on_site):
    await _check_in(shift_clock, on_site)
    fake_now.advance(hours=1)
    await shift_clock.start_break(GUARD, BreakType.EMERGENCY, timedelta(minutes=20), on_site)
    fake_now.advance(minutes=10)

    closed = await _check_out(shift_clock, on_site)

    assert closed.breaks[0].end_time == closed.check_out_time
    assert closed.breaks[0].is_paid
    assert closed.actual_work_duration() == timedelta(hours=1, minutes=10)


@pytest.mark.asyncio
async def test_check_out_failures_leave_entry_open(shift_clock, fake_now, on_site):
    with pytest.raises(NoActiveEntry):
        await _check_out(shift_clock, on_site)

    await _check_in(shift_clock, on_site)
    with pytest.raises(InvalidTimeRange):
        # same instant as check-in
        await _check_out(shift_clock, on_site)

    fake_now.advance(hours=2)
    with pytest.raises(SiteMismatch):
        await shift_clock.end_shift(GUARD, "site-2", SITE_FENCE, on_site)
    with pytest.raises(OutOfGeofence):
        await _check_out(shift_clock, StubProvider(reading(meters_north=300)))

    assert (await shift_clock.active_entry(GUARD)).status == TimeEntryStatus.CHECKED_IN


@pytest.mark.asyncio
async def test_samples_only_while_open(shift_clock, fake_now, on_site):
    entry = await _check_in(shift_clock, on_site)
    fake_now.advance(minutes=5)

    updated = await shift_clock.record_sample(GUARD, entry.id, sample_at(fake_now(), 10))
    assert len(updated.location_samples) == 2

    with pytest.raises(SpoofDetected):
        mocked = sample_at(fake_now()).model_copy(update={"is_mocked": True})
        await shift_clock.record_sample(GUARD, entry.id, mocked)

    fake_now.advance(minutes=5)
    await _check_out(shift_clock, on_site)
    fake_now.advance(minutes=5)
    with pytest.raises(EntryClosed):
        await shift_clock.record_sample(GUARD, entry.id, sample_at(fake_now()))


@pytest.mark.asyncio
async def test_weekly_hours_include_earlier_shift(shift_clock, fake_now, on_site):
    await _check_in(shift_clock, on_site)
    fake_now.advance(hours=3)
    await _check_out(shift_clock, on_site)

    fake_now.advance(hours=21)
    await _check_in(shift_clock, on_site)
    fake_now.advance(hours=2)
    second = await _check_out(shift_clock, on_site)

    assert second.earnings.compliance.weekly_hours == pytest.approx(5.0)
    assert second.earnings.compliance.rest_period_hours == pytest.approx(21.0)


@pytest.mark.asyncio
async def test_replayed_check_in_yields_one_entry(shift_clock, repository):
    event = ShiftEvent(
        event_type=ShiftEventType.CHECK_IN,
        guard_id=GUARD,
        entry_id="entry-replayed",
        occurred_at=START,
        sample=sample_at(START),
        shift_id="shift-1",
        site_id="site-1",
        fence=SITE_FENCE,
    )

    first = await shift_clock.apply_event(event)
    second = await shift_clock.apply_event(event)

    assert first.id == second.id == "entry-replayed"
    assert repository.is_event_applied(event.event_id)
    assert len(repository.list_entries(GUARD, WIDE_START, WIDE_END)) == 1


@pytest.mark.asyncio
async def test_offline_shift_is_replayed_on_sync(
    shift_clock, flaky_repository, repository, offline_queue, fake_now, on_site
):
    flaky_repository.down = True
    entry = await _check_in(shift_clock, on_site)
    assert (await shift_clock.active_entry(GUARD)).id == entry.id

    fake_now.advance(hours=4)
    closed = await _check_out(shift_clock, on_site)
    assert closed.status == TimeEntryStatus.CHECKED_OUT
    assert closed.earnings is None
    assert len(await offline_queue.pending_for(GUARD)) == 2
    assert repository.get(entry.id) is None

    flaky_repository.down = False
    report = await shift_clock.sync()

    assert report.applied == 2 and report.failed == 0
    stored = repository.get(entry.id)
    assert stored.status == TimeEntryStatus.CHECKED_OUT
    assert stored.earnings.regular_earnings == pytest.approx(60.0)
    assert await offline_queue.pending_for(GUARD) == []


@pytest.mark.asyncio
async def test_pending_events_keep_new_writes_queued(
    shift_clock, flaky_repository, repository, offline_queue, fake_now, on_site
):
    flaky_repository.down = True
    entry = await _check_in(shift_clock, on_site)
    flaky_repository.down = False

    fake_now.advance(hours=1)
    on_break = await shift_clock.start_break(GUARD, BreakType.REST, timedelta(minutes=15), on_site)

    assert on_break.status == TimeEntryStatus.ON_BREAK
    assert repository.get_active_entry(GUARD) is None
    assert len(await offline_queue.pending_for(GUARD)) == 2

    await shift_clock.sync()
    stored = repository.get_active_entry(GUARD)
    assert stored.id == entry.id
    assert stored.status == TimeEntryStatus.ON_BREAK


@pytest.mark.asyncio
async def test_sync_while_still_offline_counts_attempts(
    shift_clock, flaky_repository, offline_queue, on_site
):
    flaky_repository.down = True
    await _check_in(shift_clock, on_site)

    report = await shift_clock.sync()
    assert report.interrupted
    assert report.remaining == 1

    await shift_clock.sync()
    await shift_clock.sync()
    failed = await offline_queue.failed_events()
    assert len(failed) == 1
    assert failed[0].attempts == 3
    assert failed[0].event.event_type == ShiftEventType.CHECK_IN


@pytest.mark.asyncio
async def test_conflicting_replay_is_kept_as_failed(
    shift_clock, flaky_repository, repository, offline_queue, on_site
):
    flaky_repository.down = True
    await _check_in(shift_clock, on_site)
    flaky_repository.down = False

    # Another device checked the guard in while this one was offline
    repository.open_entry(make_entry(START, None, entry_id="server-side", guard_id=GUARD))

    report = await shift_clock.sync()

    assert report.failed == 1
    failed = await offline_queue.failed_events()
    assert "already has an open time entry" in failed[0].last_error
    assert repository.get_active_entry(GUARD).id == "server-side"


@pytest.mark.asyncio
async def test_events_at_the_same_instant_are_all_queued(
    shift_clock, flaky_repository, repository, offline_queue, on_site
):
    flaky_repository.down = True
    entry = await _check_in(shift_clock, on_site)
    on_break = await shift_clock.start_break(GUARD, BreakType.REST, timedelta(minutes=15), on_site)

    assert on_break.status == TimeEntryStatus.ON_BREAK
    pending = await offline_queue.pending_for(GUARD)
    assert [e.event_type for e in pending] == [ShiftEventType.CHECK_IN, ShiftEventType.BREAK_START]
    assert (await shift_clock.active_entry(GUARD)).status == TimeEntryStatus.ON_BREAK

    flaky_repository.down = False
    report = await shift_clock.sync()

    assert report.applied == 2
    stored = repository.get_active_entry(GUARD)
    assert stored.id == entry.id
    assert stored.status == TimeEntryStatus.ON_BREAK


@pytest.mark.asyncio
async def test_conflicting_sample_at_the_same_instant_is_refused(
    shift_clock, flaky_repository, offline_queue, fake_now, on_site
):
    flaky_repository.down = True
    entry = await _check_in(shift_clock, on_site)
    when = fake_now.advance(minutes=5)

    await shift_clock.record_sample(GUARD, entry.id, sample_at(when, 10))
    with pytest.raises(EventConflict):
        await shift_clock.record_sample(GUARD, entry.id, sample_at(when, 20))

    pending = await offline_queue.pending_for(GUARD)
    assert len(pending) == 2
    assert pending[1].sample.model_dump() == sample_at(when, 10).model_dump()


@pytest.mark.asyncio
async def test_background_sync_replays_once_store_returns(
    flaky_repository, repository, offline_queue, compliance_engine, fake_now, on_site
):
    sleeper = ManualSleeper()
    clock = ShiftClock(
        flaky_repository,
        LocationVerifier(),
        compliance_engine,
        offline_queue,
        now_fn=fake_now,
        sleep_fn=sleeper,
    )
    flaky_repository.down = True
    entry = await _check_in(clock, on_site)
    task = clock.start_sync_loop(30)

    # First pass runs while the store is still down
    sleeper.tick()
    for _ in range(300):
        if len(sleeper.calls) >= 2:
            break
        await asyncio.sleep(0.01)
    assert sleeper.calls[:2] == [30, 30]
    assert repository.get(entry.id) is None

    flaky_repository.down = False
    sleeper.tick()
    for _ in range(300):
        if repository.get_active_entry(GUARD) is not None:
            break
        await asyncio.sleep(0.01)

    assert repository.get_active_entry(GUARD).id == entry.id
    assert await offline_queue.pending_for(GUARD) == []

    await clock.shutdown()
    assert task.cancelled()


class SlowRepository:
    def __init__(self, inner):
        self.inner = inner

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def get_active_entry(self, guard_id):
        time.sleep(0.5)
        return self.inner.get_active_entry(guard_id)


@pytest.mark.asyncio
async def test_slow_store_falls_back_to_queue(
    repository, offline_queue, compliance_engine, fake_now, on_site
):
    clock = ShiftClock(
        SlowRepository(repository),
        LocationVerifier(),
        compliance_engine,
        offline_queue,
        now_fn=fake_now,
        persistence_timeout=0.05,
    )

    entry = await _check_in(clock, on_site)

    assert entry.status == TimeEntryStatus.CHECKED_IN
    assert len(await offline_queue.pending_for(GUARD)) == 1


@pytest.mark.asyncio
async def test_correction_supersedes_closed_entry(shift_clock, repository, fake_now, on_site):
    entry = await _check_in(shift_clock, on_site)
    fake_now.advance(hours=4)
    closed = await _check_out(shift_clock, on_site)

    with pytest.raises(InvalidTimeRange):
        await shift_clock.correct_entry(entry.id, check_out_time=closed.check_in_time)

    corrected = await shift_clock.correct_entry(
        entry.id, check_out_time=closed.check_out_time + timedelta(hours=1)
    )

    assert corrected.supersedes_id == entry.id
    assert corrected.id != entry.id
    assert not corrected.is_authoritative
    assert corrected.earnings.total_hours == pytest.approx(5.0)
    assert repository.get(entry.id).model_dump() == closed.model_dump()


def _assert_invariants(repository):
    entries = repository.list_entries(GUARD, WIDE_START, WIDE_END)
    assert sum(1 for e in entries if e.is_open) <= 1

    for entry in entries:
        if entry.is_open:
            continue
        assert entry.check_out_time > entry.check_in_time
        previous_end = entry.check_in_time
        for brk in entry.breaks:
            assert brk.end_time is not None
            assert previous_end <= brk.start_time <= brk.end_time <= entry.check_out_time
            previous_end = brk.end_time
        assert entry.earnings is not None
        assert entry.earnings.total_hours == pytest.approx(entry.actual_work_hours())


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", range(5))
async def test_random_operation_sequences_keep_invariants(
    seed, shift_clock, repository, fake_now, on_site
):
    rng = random.Random(seed)
    operations = ["start", "break", "resume", "sample", "end"]

    for _ in range(40):
        fake_now.advance(minutes=rng.randint(1, 120))
        op = rng.choice(operations)
        try:
            if op == "start":
                await _check_in(shift_clock, on_site)
            elif op == "break":
                await shift_clock.start_break(
                    GUARD,
                    rng.choice(list(BreakType)),
                    timedelta(minutes=rng.choice([10, 15, 30, 45])),
                    on_site,
                )
            elif op == "resume":
                await shift_clock.end_break(GUARD, on_site)
            elif op == "sample":
                active = await shift_clock.active_entry(GUARD)
                entry_id = active.id if active else "missing"
                await shift_clock.record_sample(GUARD, entry_id, sample_at(fake_now()))
            else:
                await _check_out(shift_clock, on_site)
        except ShiftStateError:
            pass

        _assert_invariants(repository)
