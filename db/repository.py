import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, select

from core.errors import (
    AlreadyCheckedIn,
    DuplicateEvent,
    EntryClosed,
    InvalidTimeRange,
    NoActiveEntry,
    PersistenceUnavailable,
)
from models.time_entry import TimeEntry, TimeEntryStatus
from models.time_entry_record import ActiveTimeEntry, AppliedShiftEvent, TimeEntryRecord
from utils.timezone_helpers import to_utc

logger = logging.getLogger(__name__)


class TimeEntryRepository(ABC):
    """
    Storage boundary for time entries.

    Implementations own the "active entry per guard" index and the applied
    event ledger. Every write that carries an ``event_id`` must record it in
    the same transaction as its effect and raise DuplicateEvent when the id
    was already applied. Closed entries are never modified.
    """

    @abstractmethod
    def open_entry(self, entry: TimeEntry, event_id: Optional[str] = None) -> TimeEntry:
        """Insert a new open entry and claim the guard's active slot."""

    @abstractmethod
    def update_open_entry(self, entry: TimeEntry, event_id: Optional[str] = None) -> TimeEntry:
        """Replace the stored value of an entry that is still open."""

    @abstractmethod
    def close_entry(self, entry: TimeEntry, event_id: Optional[str] = None) -> TimeEntry:
        """Store the checked-out value and release the guard's active slot."""

    @abstractmethod
    def record_correction(self, entry: TimeEntry) -> TimeEntry:
        """Store a closed entry that supersedes an earlier closed entry."""

    @abstractmethod
    def get(self, entry_id: str) -> Optional[TimeEntry]:
        ...

    @abstractmethod
    def get_active_entry(self, guard_id: str) -> Optional[TimeEntry]:
        ...

    @abstractmethod
    def list_entries(self, guard_id: str, start: datetime, end: datetime) -> List[TimeEntry]:
        """Entries whose check-in falls in [start, end), oldest first."""

    @abstractmethod
    def latest_closed_before(self, guard_id: str, before: datetime) -> Optional[TimeEntry]:
        """Most recent closed entry checked out at or before ``before``."""

    @abstractmethod
    def is_event_applied(self, event_id: str) -> bool:
        ...


def _to_record(entry: TimeEntry) -> TimeEntryRecord:
    return TimeEntryRecord(
        id=entry.id,
        guard_id=entry.guard_id,
        shift_id=entry.shift_id,
        site_id=entry.site_id,
        status=entry.status,
        check_in_time=to_utc(entry.check_in_time),
        check_out_time=to_utc(entry.check_out_time) if entry.check_out_time else None,
        supersedes_id=entry.supersedes_id,
        document=entry.model_dump(mode="json"),
        updated_at=to_utc(entry.updated_at),
    )


def _from_record(record: TimeEntryRecord) -> TimeEntry:
    return TimeEntry.model_validate(record.document)


class SqlTimeEntryRepository(TimeEntryRepository):
    """SQLModel-backed repository (PostgreSQL in production, SQLite locally)."""

    def __init__(self, engine: Engine):
        self._engine = engine

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self._engine) as session:
                yield session
        except OperationalError as e:
            logger.warning(f"[REPOSITORY] Database unreachable: {e}")
            raise PersistenceUnavailable(f"Time entry store unavailable: {e}") from e

    @staticmethod
    def _mark_applied(session: Session, event_id: Optional[str], entry: TimeEntry) -> None:
        if event_id is None:
            return
        session.add(
            AppliedShiftEvent(event_id=event_id, guard_id=entry.guard_id, entry_id=entry.id)
        )

    @staticmethod
    def _commit(session: Session, event_id: Optional[str]) -> None:
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            if event_id is not None and session.get(AppliedShiftEvent, event_id) is not None:
                raise DuplicateEvent(event_id)
            raise

    def _load_open_record(self, session: Session, entry: TimeEntry) -> TimeEntryRecord:
        record = session.exec(
            select(TimeEntryRecord).where(TimeEntryRecord.id == entry.id).with_for_update()
        ).first()
        if record is None:
            raise NoActiveEntry(entry.guard_id)
        if record.status == TimeEntryStatus.CHECKED_OUT:
            raise EntryClosed(entry.id)
        return record

    def open_entry(self, entry: TimeEntry, event_id: Optional[str] = None) -> TimeEntry:
        with self._session() as session:
            self._mark_applied(session, event_id, entry)
            session.add(_to_record(entry))
            session.add(
                ActiveTimeEntry(
                    guard_id=entry.guard_id,
                    entry_id=entry.id,
                    opened_at=to_utc(entry.check_in_time),
                )
            )
            try:
                self._commit(session, event_id)
            except IntegrityError:
                active = session.get(ActiveTimeEntry, entry.guard_id)
                raise AlreadyCheckedIn(entry.guard_id, active.entry_id if active else None)
        return entry

    def update_open_entry(self, entry: TimeEntry, event_id: Optional[str] = None) -> TimeEntry:
        if not entry.is_open:
            raise EntryClosed(entry.id)
        with self._session() as session:
            record = self._load_open_record(session, entry)
            self._mark_applied(session, event_id, entry)
            fresh = _to_record(entry)
            record.status = fresh.status
            record.document = fresh.document
            record.updated_at = fresh.updated_at
            session.add(record)
            self._commit(session, event_id)
        return entry

    def close_entry(self, entry: TimeEntry, event_id: Optional[str] = None) -> TimeEntry:
        if entry.is_open or entry.check_out_time is None:
            raise InvalidTimeRange(f"Time entry {entry.id} is not checked out.")
        with self._session() as session:
            record = self._load_open_record(session, entry)
            self._mark_applied(session, event_id, entry)
            fresh = _to_record(entry)
            record.status = fresh.status
            record.check_out_time = fresh.check_out_time
            record.document = fresh.document
            record.updated_at = fresh.updated_at
            session.add(record)

            active = session.get(ActiveTimeEntry, entry.guard_id)
            if active is not None and active.entry_id == entry.id:
                session.delete(active)
            self._commit(session, event_id)
        return entry

    def record_correction(self, entry: TimeEntry) -> TimeEntry:
        if entry.supersedes_id is None or entry.is_open:
            raise InvalidTimeRange("A correction must be a closed entry superseding another.")
        with self._session() as session:
            original = session.get(TimeEntryRecord, entry.supersedes_id)
            if original is None or original.status != TimeEntryStatus.CHECKED_OUT:
                raise InvalidTimeRange(
                    f"Only closed entries can be corrected ({entry.supersedes_id})."
                )
            session.add(_to_record(entry))
            session.commit()
        return entry

    def get(self, entry_id: str) -> Optional[TimeEntry]:
        with self._session() as session:
            record = session.get(TimeEntryRecord, entry_id)
            return _from_record(record) if record else None

    def get_active_entry(self, guard_id: str) -> Optional[TimeEntry]:
        with self._session() as session:
            active = session.get(ActiveTimeEntry, guard_id)
            if active is None:
                return None
            record = session.get(TimeEntryRecord, active.entry_id)
            return _from_record(record) if record else None

    def list_entries(self, guard_id: str, start: datetime, end: datetime) -> List[TimeEntry]:
        with self._session() as session:
            records = session.exec(
                select(TimeEntryRecord)
                .where(TimeEntryRecord.guard_id == guard_id)
                .where(TimeEntryRecord.check_in_time >= to_utc(start))
                .where(TimeEntryRecord.check_in_time < to_utc(end))
                .order_by(TimeEntryRecord.check_in_time)
            ).all()
            return [_from_record(r) for r in records]

    def latest_closed_before(self, guard_id: str, before: datetime) -> Optional[TimeEntry]:
        with self._session() as session:
            record = session.exec(
                select(TimeEntryRecord)
                .where(TimeEntryRecord.guard_id == guard_id)
                .where(TimeEntryRecord.status == TimeEntryStatus.CHECKED_OUT)
                .where(TimeEntryRecord.check_out_time <= to_utc(before))
                .order_by(TimeEntryRecord.check_out_time.desc())
                .limit(1)
            ).first()
            return _from_record(record) if record else None

    def is_event_applied(self, event_id: str) -> bool:
        with self._session() as session:
            return session.get(AppliedShiftEvent, event_id) is not None
