"""SQLAlchemy 2.0 async models for the session store."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import JSON, TypeDecorator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_uuid() -> uuid.UUID:
    return uuid.uuid4()


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always round-trips as UTC.

    SQLite drops tzinfo on read; this restores it so stored instants compare
    cleanly with the clock's aware values.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    """Identity record mirrored from the external user service."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(20))
    role: Mapped[str] = mapped_column(String(20), nullable=False)  # patient, practitioner, admin
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_approved: Mapped[bool] = mapped_column(Boolean, default=False)
    # Bumped by every scheduling write that involves this user; the UPDATE
    # doubles as the per-user write lock.
    schedule_version: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)

    __table_args__ = (
        Index("ix_users_email", "email", unique=True),
        Index("ix_users_role", "role"),
    )


class Therapy(Base):
    """Catalog item; read-only inside the scheduling core."""

    __tablename__ = "therapies"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    category: Mapped[str | None] = mapped_column(String(50))
    duration: Mapped[int] = mapped_column(Integer, nullable=False)  # minutes
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


class TherapySession(Base):
    __tablename__ = "therapy_sessions"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    therapy_id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), ForeignKey("therapies.id"), nullable=False)
    patient_id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    practitioner_id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)

    # Window; scheduled_date mirrors start_time's UTC date for indexing.
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    actual_start_time: Mapped[datetime | None] = mapped_column(UTCDateTime)
    actual_end_time: Mapped[datetime | None] = mapped_column(UTCDateTime)

    status: Mapped[str] = mapped_column(String(20), default="scheduled")
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    payment_status: Mapped[str] = mapped_column(String(20), default="pending")

    # Populated once, on entry into "cancelled"
    cancellation_reason: Mapped[str | None] = mapped_column(Text)
    cancelled_by: Mapped[uuid.UUID | None] = mapped_column(PG_UUID(as_uuid=True), ForeignKey("users.id"))
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    cancellation_fee: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    refund_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    cancellation_type: Mapped[str | None] = mapped_column(String(20))

    # Notes, bucketed by session phase
    notes_pre: Mapped[str | None] = mapped_column(Text)
    notes_during: Mapped[str | None] = mapped_column(Text)
    notes_post: Mapped[str | None] = mapped_column(Text)
    preferences: Mapped[str | None] = mapped_column(Text)

    # Clinical observations
    vitals: Mapped[dict | None] = mapped_column(JSON)
    symptoms: Mapped[dict | None] = mapped_column(JSON)  # before / during / after
    complications: Mapped[str | None] = mapped_column(Text)
    recommendations: Mapped[str | None] = mapped_column(Text)

    # Owned by the external reminder scheduler
    reminder_sent_24h: Mapped[bool] = mapped_column(Boolean, default=False)
    reminder_sent_2h: Mapped[bool] = mapped_column(Boolean, default=False)
    reminder_sent_30min: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow)

    therapy: Mapped[Therapy] = relationship(lazy="selectin")
    reschedule_history: Mapped[list[RescheduleRecord]] = relationship(
        back_populates="session",
        lazy="selectin",
        order_by="RescheduleRecord.rescheduled_at",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_therapy_sessions_patient_date", "patient_id", "scheduled_date"),
        Index("ix_therapy_sessions_practitioner_date", "practitioner_id", "scheduled_date"),
        Index("ix_therapy_sessions_status_date", "status", "scheduled_date"),
        Index("ix_therapy_sessions_window", "start_time", "end_time"),
    )

    def set_window(self, start: datetime, end: datetime) -> None:
        """Replace the time window, keeping scheduled_date in sync."""
        self.start_time = start
        self.end_time = end
        self.scheduled_date = start.astimezone(timezone.utc).date()

    @property
    def reminders(self) -> dict[str, bool]:
        return {
            "sent_24h": bool(self.reminder_sent_24h),
            "sent_2h": bool(self.reminder_sent_2h),
            "sent_30min": bool(self.reminder_sent_30min),
        }


class RescheduleRecord(Base):
    """Append-only reschedule history row."""

    __tablename__ = "session_reschedules"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    session_id: Mapped[uuid.UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("therapy_sessions.id", ondelete="CASCADE"), nullable=False
    )
    original_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    original_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    new_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    new_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    rescheduled_by: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    rescheduled_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)

    session: Mapped[TherapySession] = relationship(back_populates="reschedule_history")

    __table_args__ = (
        Index("ix_session_reschedules_session_id", "session_id"),
    )
