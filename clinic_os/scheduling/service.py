"""Scheduling service: booking, cancellation, status updates and reschedules.

Every write that depends on a conflict check runs through :meth:`SchedulingService._atomic`:
per-user asyncio locks, then one database transaction that claims the
practitioner's and patient's schedules, re-runs the checks and writes.
Events are published only after that transaction has committed.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from datetime import date, datetime, timedelta
from typing import Any, Optional, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from clinic_os.config import Settings, get_settings
from clinic_os.core.models import Therapy, TherapySession, User
from clinic_os.core.repository import SessionRepository, TherapyRepository, UserRepository
from clinic_os.events.dispatcher import EventDispatcher
from clinic_os.events.models import (
    DomainEvent,
    SessionCancelled,
    SessionRescheduled,
    SessionStatusUpdate,
    SlotAvailable,
    SlotBooked,
)
from clinic_os.scheduling.availability import AvailabilityResolver
from clinic_os.scheduling.clock import Clock, SystemClock
from clinic_os.scheduling.conflicts import ConflictChecker
from clinic_os.scheduling.errors import (
    DurationMismatch,
    InvalidState,
    NotFound,
    SlotUnavailable,
    Unauthorized,
    ValidationError,
)
from clinic_os.scheduling.lifecycle import (
    CancellationDetails,
    annotate,
    apply_transition,
    assert_reschedulable,
    parse_status,
    reset_after_reschedule,
    validate_cancellation_reason,
)
from clinic_os.scheduling.locks import KeyedLocks
from clinic_os.scheduling.models import (
    CancellationType,
    PaymentStatus,
    SessionMetrics,
    SessionObservations,
    SessionStatus,
    TimeSlot,
    UserRole,
)
from clinic_os.scheduling.policy import quote_cancellation
from clinic_os.scheduling.timewindow import duration_minutes, ensure_utc, validate_window

logger = logging.getLogger(__name__)

T = TypeVar("T")
Work = Callable[[AsyncSession], Awaitable[tuple[T, list[DomainEvent]]]]

# Raised when a concurrent transaction got to the same rows first.
_RACE_ERRORS = (OperationalError, IntegrityError)

SLOT_TAKEN_MESSAGE = "The requested time slot is no longer available"
CONCURRENT_UPDATE_MESSAGE = "Session was modified concurrently"


def is_party(record: TherapySession, actor: User) -> bool:
    """Patient, practitioner of the session, or an admin."""
    return actor.role == UserRole.ADMIN.value or actor.id in (
        record.patient_id,
        record.practitioner_id,
    )


def session_metrics(record: TherapySession, now: datetime) -> SessionMetrics:
    actual = None
    if record.actual_start_time and record.actual_end_time:
        actual = round(duration_minutes(record.actual_start_time, record.actual_end_time))
    on_time = None
    if record.actual_start_time:
        on_time = record.actual_start_time <= record.start_time
    hours_until = None
    if record.start_time > now:
        hours_until = round((record.start_time - now).total_seconds() / 3600)
    return SessionMetrics(
        actual_duration_minutes=actual,
        scheduled_duration_minutes=round(duration_minutes(record.start_time, record.end_time)),
        is_on_time=on_time,
        hours_until_session=hours_until,
    )


def _id(value: Any) -> str:
    return str(value) if value is not None else ""


class SchedulingService:
    """Entry point for every scheduling operation.

    One instance is shared by all request handlers of a process so that its
    lock registry actually serializes competing requests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        dispatcher: Optional[EventDispatcher] = None,
        locks: Optional[KeyedLocks] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()
        self.dispatcher = dispatcher or EventDispatcher()
        self.locks = locks or KeyedLocks()
        self.resolver = AvailabilityResolver(self.settings.working_hours(), self.clock)

    # ------------------------------------------------------------------
    # Atomic unit
    # ------------------------------------------------------------------

    async def _run_transaction(self, work: Work[T]) -> tuple[T, list[DomainEvent]]:
        async with self.session_factory() as db:
            async with db.begin():
                return await work(db)

    async def _atomic(
        self,
        keys: Iterable[Any],
        work: Work[T],
        race_message: Optional[str] = None,
    ) -> T:
        """Run *work* under the per-user locks in one retried transaction.

        Business-rule failures propagate untouched. Losing a commit race is
        retried; if it keeps losing, the caller sees ``SlotUnavailable`` when
        *race_message* is given, otherwise ``InvalidState``.
        """
        attempts = self.settings.commit_retry_attempts
        runner = retry(
            retry=retry_if_exception_type(_RACE_ERRORS),
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
            reraise=True,
        )(self._run_transaction)

        keys = list(keys)
        async with self.locks.hold(*keys):
            try:
                result, events = await runner(work)
            except _RACE_ERRORS as e:
                logger.warning("Atomic write for %s failed after %d attempts: %s", keys, attempts, e)
                if race_message is None:
                    raise InvalidState(CONCURRENT_UPDATE_MESSAGE) from e
                raise SlotUnavailable(race_message) from e

        await self._publish(events)
        return result

    async def _publish(self, events: list[DomainEvent]) -> None:
        for event in events:
            try:
                await self.dispatcher.dispatch(event)
            except Exception as e:
                logger.warning("Dispatch of %s failed: %s", event.event_type.value, e)

    async def _session_keys(self, session_id: uuid.UUID) -> tuple[uuid.UUID, uuid.UUID]:
        async with self.session_factory() as db:
            record = await SessionRepository(db).get_by_id(session_id)
            if record is None:
                raise NotFound("Session not found")
            return record.practitioner_id, record.patient_id

    @staticmethod
    async def _get_session(repo: SessionRepository, session_id: uuid.UUID) -> TherapySession:
        record = await repo.get_by_id(session_id, lock=True)
        if record is None:
            raise NotFound("Session not found")
        return record

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @staticmethod
    async def _active_therapy(db: AsyncSession, therapy_id: uuid.UUID) -> Therapy:
        therapy = await TherapyRepository(db).get_by_id(therapy_id)
        if therapy is None or not therapy.is_active:
            raise NotFound("Therapy not found or inactive")
        return therapy

    @staticmethod
    async def _bookable_practitioner(db: AsyncSession, practitioner_id: uuid.UUID) -> User:
        practitioner = await UserRepository(db).get_by_id(practitioner_id)
        if (
            practitioner is None
            or practitioner.role != UserRole.PRACTITIONER.value
            or not practitioner.is_approved
            or not practitioner.is_active
        ):
            raise NotFound("Practitioner not found or not available")
        return practitioner

    @staticmethod
    async def _active_patient(db: AsyncSession, patient_id: uuid.UUID) -> User:
        patient = await UserRepository(db).get_by_id(patient_id)
        if patient is None or patient.role != UserRole.PATIENT.value or not patient.is_active:
            raise NotFound("Patient not found or inactive")
        return patient

    def _check_duration(self, therapy: Therapy, start: datetime, end: datetime) -> None:
        minutes = duration_minutes(start, end)
        tolerance = self.settings.duration_tolerance
        if not therapy.duration * (1 - tolerance) <= minutes <= therapy.duration * (1 + tolerance):
            raise DurationMismatch(
                f"Session duration should be approximately {therapy.duration} minutes"
            )

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    async def book(
        self,
        therapy_id: uuid.UUID,
        patient_id: uuid.UUID,
        practitioner_id: uuid.UUID,
        start_time: datetime,
        end_time: datetime,
        notes: Optional[str] = None,
        preferences: Optional[str] = None,
    ) -> TherapySession:
        """Create a ``scheduled`` session after validating it against both calendars."""
        start_time, end_time = ensure_utc(start_time), ensure_utc(end_time)

        async def work(db: AsyncSession) -> tuple[TherapySession, list[DomainEvent]]:
            await UserRepository(db).claim_schedule([practitioner_id, patient_id])
            therapy = await self._active_therapy(db, therapy_id)
            await self._bookable_practitioner(db, practitioner_id)
            await self._active_patient(db, patient_id)

            now = self.clock.now()
            if start_time <= now:
                raise ValidationError("Cannot book sessions in the past")
            validate_window(start_time, end_time)
            self._check_duration(therapy, start_time, end_time)

            sessions = SessionRepository(db)
            await ConflictChecker(sessions).ensure_free(
                practitioner_id, patient_id, start_time, end_time, patient_first=True
            )
            record = await sessions.create(
                therapy=therapy,
                therapy_id=therapy.id,
                patient_id=patient_id,
                practitioner_id=practitioner_id,
                start_time=start_time,
                end_time=end_time,
                status=SessionStatus.SCHEDULED.value,
                price=therapy.price,
                payment_status=PaymentStatus.PENDING.value,
                notes_pre=notes,
                preferences=preferences,
                created_at=now,
                updated_at=now,
            )
            logger.info(
                "Booked session %s: practitioner=%s patient=%s %s-%s",
                record.id, practitioner_id, patient_id,
                start_time.isoformat(), end_time.isoformat(),
            )
            event = SlotBooked(
                session_id=_id(record.id),
                practitioner_id=_id(practitioner_id),
                patient_id=_id(patient_id),
                actor_id=_id(patient_id),
                occurred_at=now,
                therapy_id=_id(therapy.id),
                start_time=start_time,
                end_time=end_time,
            )
            return record, [event]

        return await self._atomic(
            [practitioner_id, patient_id], work, race_message=SLOT_TAKEN_MESSAGE
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel(
        self,
        session_id: uuid.UUID,
        reason: str,
        actor: User,
        cancellation_type: Optional[str] = None,
    ) -> TherapySession:
        min_length = self.settings.min_cancellation_reason_length
        reason = validate_cancellation_reason(reason, min_length)
        try:
            ctype = CancellationType(cancellation_type or actor.role)
        except ValueError:
            raise ValidationError(f"Unknown cancellation type: {cancellation_type!r}")

        keys = await self._session_keys(session_id)

        async def work(db: AsyncSession) -> tuple[TherapySession, list[DomainEvent]]:
            await UserRepository(db).claim_schedule(keys)
            record = await self._get_session(SessionRepository(db), session_id)
            if not is_party(record, actor):
                raise Unauthorized("Not authorized to cancel this session")

            now = self.clock.now()
            quote = quote_cancellation(record.start_time, record.price, now)
            apply_transition(
                record,
                SessionStatus.CANCELLED,
                now,
                cancellation=CancellationDetails(
                    reason=reason,
                    cancelled_by=actor.id,
                    cancellation_type=ctype,
                    quote=quote,
                ),
                min_reason_length=min_length,
            )
            logger.info(
                "Cancelled session %s by %s (%s): fee=%s refund=%s",
                record.id, actor.id, quote.tier, quote.cancellation_fee, quote.refund_amount,
            )
            event = SessionCancelled(
                session_id=_id(record.id),
                practitioner_id=_id(record.practitioner_id),
                patient_id=_id(record.patient_id),
                actor_id=_id(actor.id),
                occurred_at=now,
                therapy_id=_id(record.therapy_id),
                start_time=record.start_time,
                end_time=record.end_time,
                reason=reason,
                cancellation_type=ctype.value,
                cancellation_fee=quote.cancellation_fee,
                refund_amount=quote.refund_amount,
            )
            return record, [event]

        record = await self._atomic(keys, work)
        await self.reallocate_slot(record)
        return record

    async def reallocate_slot(self, record: TherapySession) -> int:
        """Offer a released window to recent patients of the same therapy.

        Best effort: failures are logged and reported as zero recipients.
        """
        now = self.clock.now()
        since = now - timedelta(days=self.settings.reallocation_lookback_days)
        try:
            async with self.session_factory() as db:
                candidates = await SessionRepository(db).completed_patients_for_therapy(
                    record.therapy_id,
                    exclude_patient_id=record.patient_id,
                    since=since,
                    limit=self.settings.reallocation_max_recipients,
                )
            event = SlotAvailable(
                session_id=_id(record.id),
                practitioner_id=_id(record.practitioner_id),
                patient_id=_id(record.patient_id),
                occurred_at=now,
                therapy_id=_id(record.therapy_id),
                start_time=record.start_time,
                end_time=record.end_time,
            )
            return await self.dispatcher.offer_slot(event, [_id(c) for c in candidates])
        except Exception as e:
            logger.warning("Slot reallocation for session %s failed: %s", record.id, e)
            return 0

    # ------------------------------------------------------------------
    # Status updates
    # ------------------------------------------------------------------

    async def update_status(
        self,
        session_id: uuid.UUID,
        actor: User,
        status: Optional[str] = None,
        notes: Optional[str] = None,
        observations: Optional[SessionObservations] = None,
    ) -> TherapySession:
        """Apply a lifecycle transition and/or attach notes and observations.

        Only the session's practitioner or an admin may do this.
        """
        target = parse_status(status) if status is not None else None
        if target is None and not notes and observations is None:
            raise ValidationError("Nothing to update")

        keys = await self._session_keys(session_id)

        async def work(db: AsyncSession) -> tuple[TherapySession, list[DomainEvent]]:
            await UserRepository(db).claim_schedule(keys)
            record = await self._get_session(SessionRepository(db), session_id)
            if actor.role != UserRole.ADMIN.value and actor.id != record.practitioner_id:
                raise Unauthorized("Only the assigned practitioner or an admin can update session status")

            now = self.clock.now()
            if target is None:
                annotate(record, now, notes=notes, observations=observations, recorded_by=actor.id)
                record.updated_at = now
                return record, []

            previous = record.status
            apply_transition(
                record,
                target,
                now,
                notes=notes,
                observations=observations,
                recorded_by=actor.id,
                min_reason_length=self.settings.min_cancellation_reason_length,
            )
            logger.info("Session %s: %s -> %s by %s", record.id, previous, record.status, actor.id)
            event = SessionStatusUpdate(
                session_id=_id(record.id),
                practitioner_id=_id(record.practitioner_id),
                patient_id=_id(record.patient_id),
                actor_id=_id(actor.id),
                occurred_at=now,
                previous_status=previous,
                status=record.status,
            )
            return record, [event]

        return await self._atomic(keys, work)

    async def apply_overdue_transition(
        self,
        session_id: uuid.UUID,
        target: SessionStatus,
        is_due: Callable[[TherapySession, datetime], bool],
        notes: Optional[str] = None,
        rule: str = "sweep",
    ) -> Optional[TherapySession]:
        """Move one overdue session to *target* on behalf of the system.

        *is_due* is evaluated against the locked row, so a session that was
        rescheduled, started or closed after it was listed is left alone and
        ``None`` is returned.
        """
        try:
            keys = await self._session_keys(session_id)
        except NotFound:
            return None

        async def work(db: AsyncSession) -> tuple[Optional[TherapySession], list[DomainEvent]]:
            await UserRepository(db).claim_schedule(keys)
            record = await SessionRepository(db).get_by_id(session_id, lock=True)
            now = self.clock.now()
            if record is None or not is_due(record, now):
                return None, []

            previous = record.status
            apply_transition(record, target, now, notes=notes)
            event = SessionStatusUpdate(
                session_id=_id(record.id),
                practitioner_id=_id(record.practitioner_id),
                patient_id=_id(record.patient_id),
                occurred_at=now,
                previous_status=previous,
                status=record.status,
                metadata={"source": "sweep", "rule": rule},
            )
            return record, [event]

        return await self._atomic(keys, work)

    # ------------------------------------------------------------------
    # Reschedule
    # ------------------------------------------------------------------

    async def reschedule(
        self,
        session_id: uuid.UUID,
        new_start: datetime,
        new_end: datetime,
        reason: str,
        requested_by: User,
    ) -> TherapySession:
        """Move a scheduled or confirmed session to a new window, keeping history."""
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Reschedule reason is required")
        new_start, new_end = ensure_utc(new_start), ensure_utc(new_end)

        keys = await self._session_keys(session_id)

        async def work(db: AsyncSession) -> tuple[TherapySession, list[DomainEvent]]:
            await UserRepository(db).claim_schedule(keys)
            sessions = SessionRepository(db)
            record = await self._get_session(sessions, session_id)
            if not is_party(record, requested_by):
                raise Unauthorized("Not authorized to reschedule this session")
            assert_reschedulable(record)

            now = self.clock.now()
            if new_start <= now:
                raise ValidationError("Cannot reschedule to a past time")
            validate_window(new_start, new_end)
            await ConflictChecker(sessions).ensure_free(
                record.practitioner_id, record.patient_id, new_start, new_end, exclude_id=record.id
            )

            original_start, original_end = record.start_time, record.end_time
            await sessions.add_reschedule(
                record,
                original_start=original_start,
                original_end=original_end,
                new_start=new_start,
                new_end=new_end,
                reason=reason,
                rescheduled_by=requested_by.id,
                rescheduled_at=now,
            )
            record.set_window(new_start, new_end)
            keep = (
                self.settings.preserve_confirmation_on_practitioner_reschedule
                and requested_by.id == record.practitioner_id
            )
            reset_after_reschedule(record, now, keep_confirmation=keep)
            logger.info(
                "Rescheduled session %s by %s: %s -> %s",
                record.id, requested_by.id, original_start.isoformat(), new_start.isoformat(),
            )
            event = SessionRescheduled(
                session_id=_id(record.id),
                practitioner_id=_id(record.practitioner_id),
                patient_id=_id(record.patient_id),
                actor_id=_id(requested_by.id),
                occurred_at=now,
                original_start=original_start,
                original_end=original_end,
                new_start=new_start,
                new_end=new_end,
                reason=reason,
            )
            return record, [event]

        return await self._atomic(keys, work, race_message=SLOT_TAKEN_MESSAGE)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_available_slots(
        self,
        practitioner_id: uuid.UUID,
        day: date,
        duration_minutes: Optional[int] = None,
        therapy_id: Optional[uuid.UUID] = None,
    ) -> list[TimeSlot]:
        """Bookable slots for one practitioner on one day; never takes locks."""
        async with self.session_factory() as db:
            await self._bookable_practitioner(db, practitioner_id)
            if therapy_id is not None:
                duration = (await self._active_therapy(db, therapy_id)).duration
            else:
                duration = duration_minutes or self.settings.default_slot_duration_minutes
            day_start, day_end = self.resolver.day_bounds(day)
            booked = await SessionRepository(db).list_active_between(
                day_start, day_end, practitioner_id=practitioner_id
            )
        return self.resolver.list_available_slots(practitioner_id, day, duration, booked)

    async def get_session(
        self, session_id: uuid.UUID, actor: User
    ) -> tuple[TherapySession, SessionMetrics]:
        async with self.session_factory() as db:
            record = await SessionRepository(db).get_by_id(session_id)
        if record is None:
            raise NotFound("Session not found")
        if not is_party(record, actor):
            raise Unauthorized("Not authorized to view this session")
        return record, session_metrics(record, self.clock.now())

    async def list_sessions(
        self,
        actor: User,
        statuses: Optional[list[str]] = None,
        therapy_id: Optional[uuid.UUID] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        page: int = 1,
        limit: int = 10,
        ascending: bool = False,
    ) -> tuple[list[TherapySession], int]:
        """Role-scoped listing; returns the page and the total match count."""
        try:
            role = UserRole(actor.role)
        except ValueError:
            raise Unauthorized("Access denied")
        if statuses:
            statuses = [parse_status(s).value for s in statuses]
        start = self.resolver.day_bounds(start_date)[0] if start_date else None
        end = self.resolver.day_bounds(end_date)[1] if end_date else None
        page = max(page, 1)

        async with self.session_factory() as db:
            repo = SessionRepository(db)
            filters = dict(
                user_id=actor.id,
                role=role.value,
                statuses=statuses,
                therapy_id=therapy_id,
                start=start,
                end=end,
            )
            records = await repo.list_for_user(
                **filters, offset=(page - 1) * limit, limit=limit, ascending=ascending
            )
            total = await repo.count_for_user(**filters)
        return list(records), total

    async def practitioner_schedule(
        self,
        practitioner_id: uuid.UUID,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        actor: Optional[User] = None,
    ) -> dict[str, list[TherapySession]]:
        """Active sessions of a practitioner grouped by local calendar date."""
        if (
            actor is not None
            and actor.role == UserRole.PRACTITIONER.value
            and actor.id != practitioner_id
        ):
            raise Unauthorized("Can only view your own schedule")

        start_date = start_date or self.resolver.today()
        end_date = end_date or start_date + timedelta(days=6)
        if end_date < start_date:
            raise ValidationError("end_date must not precede start_date")
        start = self.resolver.day_bounds(start_date)[0]
        end = self.resolver.day_bounds(end_date)[1]

        async with self.session_factory() as db:
            practitioner = await UserRepository(db).get_by_id(practitioner_id)
            if practitioner is None or practitioner.role != UserRole.PRACTITIONER.value:
                raise NotFound("Practitioner not found")
            records = await SessionRepository(db).list_for_practitioner(practitioner_id, start, end)

        tz = self.resolver.policy.tz
        grouped: dict[str, list[TherapySession]] = {}
        for record in records:
            key = record.start_time.astimezone(tz).date().isoformat()
            grouped.setdefault(key, []).append(record)
        return grouped
