import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Dict

from core.config import LOCATION_SAMPLE_INTERVAL_SECONDS
from core.errors import (
    EntryClosed,
    EventConflict,
    LocationUnavailable,
    NoActiveEntry,
    PersistenceUnavailable,
    VerificationFailed,
)
from services.location_verifier import LocationProvider

if TYPE_CHECKING:
    from services.shift_clock import ShiftClock

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class LocationSampler:
    """
    One cancellable background task per open shift, appending a verified
    location sample every ``interval_seconds`` until the entry closes.
    """

    def __init__(
        self,
        clock: "ShiftClock",
        interval_seconds: float = LOCATION_SAMPLE_INTERVAL_SECONDS,
        sleep_fn: SleepFn = asyncio.sleep,
    ):
        self._clock = clock
        self.interval_seconds = interval_seconds
        self._sleep = sleep_fn
        self._tasks: Dict[str, asyncio.Task] = {}

    def is_running(self, guard_id: str) -> bool:
        task = self._tasks.get(guard_id)
        return task is not None and not task.done()

    def start(self, guard_id: str, entry_id: str, provider: LocationProvider) -> asyncio.Task:
        self.stop(guard_id)
        task = asyncio.create_task(
            self._run(guard_id, entry_id, provider), name=f"location-sampler-{guard_id}"
        )
        self._tasks[guard_id] = task
        return task

    def stop(self, guard_id: str) -> None:
        task = self._tasks.pop(guard_id, None)
        if task is not None and not task.done():
            task.cancel()

    async def stop_all(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, guard_id: str, entry_id: str, provider: LocationProvider) -> None:
        logger.info(f"[SAMPLER] Sampling guard {guard_id} every {self.interval_seconds:.0f}s")
        while True:
            await self._sleep(self.interval_seconds)
            try:
                sample = await self._clock.verifier.acquire(provider)
                await self._clock.record_sample(guard_id, entry_id, sample)
            except (EntryClosed, NoActiveEntry):
                logger.info(f"[SAMPLER] Entry {entry_id} closed, sampling stopped")
                break
            except (
                EventConflict,
                LocationUnavailable,
                PersistenceUnavailable,
                VerificationFailed,
            ) as e:
                # A missed sample is not fatal; try again next interval
                logger.warning(f"[SAMPLER] Sample for guard {guard_id} skipped: {e}")

        current = self._tasks.get(guard_id)
        if current is asyncio.current_task():
            self._tasks.pop(guard_id, None)
