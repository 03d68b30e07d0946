from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field, Index, SQLModel


class OfflineEventStatus(str, Enum):
    PENDING = "pending"
    FAILED = "failed"


# Durable local queue of ShiftClock writes made while persistence was unreachable
class OfflineShiftEvent(SQLModel, table=True):
    __tablename__ = "offline_shift_event"

    __table_args__ = (
        UniqueConstraint("event_id", name="uq_offline_shift_event_event_id"),
        Index("ix_offline_shift_event_status_occurred_at", "status", "occurred_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    # guard:timestamp:type, the same idempotency key as the applied-event ledger
    event_id: str
    guard_id: str = Field(index=True)
    occurred_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    event_type: str
    payload: dict = Field(sa_column=Column(JSON, nullable=False))
    status: OfflineEventStatus = Field(default=OfflineEventStatus.PENDING)
    attempts: int = Field(default=0)
    last_error: Optional[str] = Field(default=None)
    enqueued_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


# Last entry state the server confirmed for a guard (None document = no open entry)
class OfflineGuardSnapshot(SQLModel, table=True):
    __tablename__ = "offline_guard_snapshot"

    guard_id: str = Field(primary_key=True)
    document: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


# Last geofence the store returned for a job site, so check-ins can be verified offline
class OfflineSiteFence(SQLModel, table=True):
    __tablename__ = "offline_site_fence"

    site_id: str = Field(primary_key=True)
    fence: dict = Field(sa_column=Column(JSON, nullable=False))
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
