"""
Durable local queue for ShiftClock writes made while the time entry store
is unreachable.

Events are unique per event id (guard, timestamp, type) so enqueueing a retry
twice stores it once; a different event under a queued id is refused. The
queue also keeps the last entry state the server confirmed for each guard,
which ShiftClock folds pending events over to answer "what state is this
guard in" while offline, and the last known geofence of each job site.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, select

from core.config import OFFLINE_MAX_ATTEMPTS
from core.errors import (
    DuplicateEvent,
    EventConflict,
    PersistenceUnavailable,
    ShiftStateError,
    VerificationFailed,
)
from models.gps import GeofenceSpec
from models.offline_event import (
    OfflineEventStatus,
    OfflineGuardSnapshot,
    OfflineShiftEvent,
    OfflineSiteFence,
)
from models.shift_event import ShiftEvent
from models.time_entry import TimeEntry

logger = logging.getLogger(__name__)

Applier = Callable[[ShiftEvent], Awaitable[Any]]


@dataclass(frozen=True)
class QueuedEvent:
    id: int
    event: ShiftEvent
    status: OfflineEventStatus
    attempts: int
    last_error: Optional[str]


@dataclass
class ReconcileReport:
    applied: int = 0
    failed: int = 0
    remaining: int = 0
    # True when the pass stopped early because the store was still unreachable
    interrupted: bool = False


def _to_queued(row: OfflineShiftEvent) -> QueuedEvent:
    return QueuedEvent(
        id=row.id,
        event=ShiftEvent.model_validate(row.payload),
        status=row.status,
        attempts=row.attempts,
        last_error=row.last_error,
    )


class OfflineQueue:
    def __init__(self, engine: Engine, max_attempts: int = OFFLINE_MAX_ATTEMPTS):
        self._engine = engine
        self.max_attempts = max_attempts

    def create_tables(self) -> None:
        SQLModel.metadata.create_all(
            self._engine,
            tables=[
                OfflineShiftEvent.__table__,
                OfflineGuardSnapshot.__table__,
                OfflineSiteFence.__table__,
            ],
        )

    # ---- blocking helpers (run off the event loop) ----

    def _enqueue(self, event: ShiftEvent) -> bool:
        payload = event.model_dump(mode="json")
        with Session(self._engine) as session:
            session.add(OfflineShiftEvent(
                event_id=event.event_id,
                guard_id=event.guard_id,
                occurred_at=event.occurred_at,
                event_type=event.event_type.value,
                payload=payload,
            ))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                stored = session.exec(
                    select(OfflineShiftEvent).where(OfflineShiftEvent.event_id == event.event_id)
                ).first()
                if stored is None or stored.payload != payload:
                    logger.error(f"[OFFLINE_QUEUE] Conflicting event {event.event_id} refused")
                    raise EventConflict(event.event_id)
                logger.info(f"[OFFLINE_QUEUE] Event {event.event_id} already queued")
                return False
        logger.info(f"[OFFLINE_QUEUE] Queued {event.event_id}")
        return True

    def _pending_rows(self, session: Session, guard_id: Optional[str] = None) -> List[OfflineShiftEvent]:
        query = select(OfflineShiftEvent).where(OfflineShiftEvent.status == OfflineEventStatus.PENDING)
        if guard_id is not None:
            query = query.where(OfflineShiftEvent.guard_id == guard_id)
        return list(session.exec(query.order_by(OfflineShiftEvent.occurred_at, OfflineShiftEvent.id)).all())

    def _pending_for(self, guard_id: str) -> List[ShiftEvent]:
        with Session(self._engine) as session:
            return [ShiftEvent.model_validate(row.payload) for row in self._pending_rows(session, guard_id)]

    def _pending_ids(self, guard_id: Optional[str] = None) -> List[int]:
        with Session(self._engine) as session:
            return [row.id for row in self._pending_rows(session, guard_id)]

    def _load(self, row_id: int) -> Optional[QueuedEvent]:
        with Session(self._engine) as session:
            row = session.get(OfflineShiftEvent, row_id)
            return _to_queued(row) if row is not None else None

    def _delete(self, row_id: int) -> None:
        with Session(self._engine) as session:
            row = session.get(OfflineShiftEvent, row_id)
            if row is not None:
                session.delete(row)
                session.commit()

    def _record_failure(self, row_id: int, error: str, *, permanent: bool) -> OfflineEventStatus:
        with Session(self._engine) as session:
            row = session.get(OfflineShiftEvent, row_id)
            row.attempts += 1
            row.last_error = error
            if permanent or row.attempts >= self.max_attempts:
                row.status = OfflineEventStatus.FAILED
            session.add(row)
            session.commit()
            return row.status

    def _snapshot(self, guard_id: str) -> Optional[TimeEntry]:
        with Session(self._engine) as session:
            row = session.get(OfflineGuardSnapshot, guard_id)
            if row is None or row.document is None:
                return None
            return TimeEntry.model_validate(row.document)

    def _remember(self, guard_id: str, entry: Optional[TimeEntry]) -> None:
        with Session(self._engine) as session:
            row = session.get(OfflineGuardSnapshot, guard_id) or OfflineGuardSnapshot(guard_id=guard_id)
            row.document = entry.model_dump(mode="json") if entry is not None else None
            row.updated_at = datetime.now(timezone.utc)
            session.add(row)
            session.commit()

    def _remember_fence(self, site_id: str, fence: GeofenceSpec) -> None:
        with Session(self._engine) as session:
            row = session.get(OfflineSiteFence, site_id) or OfflineSiteFence(site_id=site_id, fence={})
            row.fence = fence.model_dump(mode="json")
            row.updated_at = datetime.now(timezone.utc)
            session.add(row)
            session.commit()

    def _site_fence(self, site_id: str) -> Optional[GeofenceSpec]:
        with Session(self._engine) as session:
            row = session.get(OfflineSiteFence, site_id)
            return GeofenceSpec.model_validate(row.fence) if row is not None else None

    def _failed(self) -> List[QueuedEvent]:
        with Session(self._engine) as session:
            rows = session.exec(
                select(OfflineShiftEvent)
                .where(OfflineShiftEvent.status == OfflineEventStatus.FAILED)
                .order_by(OfflineShiftEvent.occurred_at, OfflineShiftEvent.id)
            ).all()
            return [_to_queued(row) for row in rows]

    # ---- async API ----

    async def enqueue(self, event: ShiftEvent) -> bool:
        """
        Store an event for later replay. Returns False if this exact event was
        already queued; raises EventConflict if a different one holds its id.
        """
        return await asyncio.to_thread(self._enqueue, event)

    async def pending_for(self, guard_id: str) -> List[ShiftEvent]:
        return await asyncio.to_thread(self._pending_for, guard_id)

    async def snapshot(self, guard_id: str) -> Optional[TimeEntry]:
        """Last entry state the server confirmed for the guard (None if unknown)."""
        return await asyncio.to_thread(self._snapshot, guard_id)

    async def remember(self, guard_id: str, entry: Optional[TimeEntry]) -> None:
        await asyncio.to_thread(self._remember, guard_id, entry)

    async def remember_fence(self, site_id: str, fence: GeofenceSpec) -> None:
        await asyncio.to_thread(self._remember_fence, site_id, fence)

    async def site_fence(self, site_id: str) -> Optional[GeofenceSpec]:
        """Last geofence seen for a job site (None if never cached)."""
        return await asyncio.to_thread(self._site_fence, site_id)

    async def failed_events(self) -> List[QueuedEvent]:
        return await asyncio.to_thread(self._failed)

    async def reconcile(self, applier: Applier, guard_id: Optional[str] = None) -> ReconcileReport:
        """
        Replay pending events in their original order, optionally for one guard.

        Applied (or already-applied) events are removed. A still-unreachable
        store stops the pass and counts an attempt against the event; state or
        verification conflicts fail the event immediately. Failed events stay
        in the queue for manual reconciliation.
        """
        report = ReconcileReport()
        row_ids = await asyncio.to_thread(self._pending_ids, guard_id)

        for index, row_id in enumerate(row_ids):
            queued = await asyncio.to_thread(self._load, row_id)
            if queued is None or queued.status != OfflineEventStatus.PENDING:
                continue
            event = queued.event

            try:
                await applier(event)
            except DuplicateEvent:
                logger.info(f"[OFFLINE_QUEUE] {event.event_id} was already applied")
            except PersistenceUnavailable as e:
                status = await asyncio.to_thread(self._record_failure, row_id, str(e), permanent=False)
                if status == OfflineEventStatus.FAILED:
                    report.failed += 1
                    logger.error(
                        f"[OFFLINE_QUEUE] {event.event_id} failed after {self.max_attempts} attempts"
                    )
                report.interrupted = True
                report.remaining = len(row_ids) - index - (1 if status == OfflineEventStatus.FAILED else 0)
                logger.warning(f"[OFFLINE_QUEUE] Store still unreachable, {report.remaining} event(s) left")
                return report
            except (ShiftStateError, VerificationFailed) as e:
                await asyncio.to_thread(self._record_failure, row_id, str(e), permanent=True)
                report.failed += 1
                logger.error(f"[OFFLINE_QUEUE] {event.event_id} rejected: {e}")
                continue

            await asyncio.to_thread(self._delete, row_id)
            report.applied += 1

        if report.applied or report.failed:
            logger.info(
                f"[OFFLINE_QUEUE] Reconciled: {report.applied} applied, {report.failed} failed"
            )
        return report
