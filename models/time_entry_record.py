from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, Index, SQLModel

from models.time_entry import TimeEntryStatus


# Defines a Table "time_entry"; the full immutable TimeEntry lives in `document`,
# the scalar columns exist for range queries by guard and date.
class TimeEntryRecord(SQLModel, table=True):
    __tablename__ = "time_entry"

    __table_args__ = (
        # Most common query pattern: one guard's entries in a date range
        Index("ix_time_entry_guard_id_check_in_time", "guard_id", "check_in_time"),
        # Rest period lookups walk back over closed entries by check-out time
        Index("ix_time_entry_guard_id_check_out_time", "guard_id", "check_out_time"),
        Index("ix_time_entry_site_id", "site_id"),
    )

    id: str = Field(primary_key=True)
    guard_id: str
    shift_id: str
    site_id: str
    status: TimeEntryStatus
    check_in_time: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    check_out_time: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    supersedes_id: Optional[str] = Field(default=None, foreign_key="time_entry.id")
    document: dict = Field(sa_column=Column(JSON, nullable=False))
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


# The "currently active entry per guard" index. The primary key on guard_id is
# what makes a second concurrent check-in fail instead of opening two shifts.
class ActiveTimeEntry(SQLModel, table=True):
    __tablename__ = "active_time_entry"

    guard_id: str = Field(primary_key=True)
    entry_id: str = Field(foreign_key="time_entry.id")
    opened_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


# Ledger of applied shift events; written in the same transaction as the effect
class AppliedShiftEvent(SQLModel, table=True):
    __tablename__ = "applied_shift_event"

    event_id: str = Field(primary_key=True)
    guard_id: str = Field(index=True)
    entry_id: str
    applied_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
