"""Therapy session endpoints: booking, availability, lifecycle and reschedules."""

import math
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from clinic_os.api.dependencies import get_current_user, get_scheduling_service
from clinic_os.core.models import TherapySession, User
from clinic_os.scheduling.models import (
    RescheduleEntry,
    SessionMetrics,
    SessionObservations,
    TimeSlot,
    UserRole,
)
from clinic_os.scheduling.service import SchedulingService

router = APIRouter(prefix="/sessions")


# ---------------------------------------------------------------------------
# Pydantic request/response schemas
# ---------------------------------------------------------------------------

class BookSessionRequest(BaseModel):
    therapy_id: uuid.UUID
    practitioner_id: uuid.UUID
    patient_id: Optional[uuid.UUID] = None
    start_time: datetime
    end_time: datetime
    notes: Optional[str] = None
    preferences: Optional[str] = None


class CancelSessionRequest(BaseModel):
    reason: str
    cancellation_type: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: Optional[str] = None
    notes: Optional[str] = None
    vitals: Optional[dict[str, Any]] = None
    symptoms: Optional[dict[str, list[str]]] = None
    complications: Optional[str] = None
    recommendations: Optional[str] = None

    def observations(self) -> Optional[SessionObservations]:
        if not any((self.vitals, self.symptoms, self.complications, self.recommendations)):
            return None
        return SessionObservations(
            vitals=self.vitals,
            symptoms=self.symptoms,
            complications=self.complications,
            recommendations=self.recommendations,
        )


class RescheduleRequest(BaseModel):
    new_start_time: datetime
    new_end_time: datetime
    reason: str = Field(min_length=1)


class CancellationInfo(BaseModel):
    reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_fee: Optional[Decimal] = None
    refund_amount: Optional[Decimal] = None
    cancellation_type: Optional[str] = None


class SessionResponse(BaseModel):
    id: str
    therapy_id: str
    therapy_name: Optional[str] = None
    patient_id: str
    practitioner_id: str
    scheduled_date: date
    start_time: datetime
    end_time: datetime
    actual_start_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None
    status: str
    price: Decimal
    payment_status: str
    notes: dict[str, Optional[str]] = {}
    vitals: Optional[dict[str, Any]] = None
    symptoms: Optional[dict[str, Any]] = None
    complications: Optional[str] = None
    recommendations: Optional[str] = None
    cancellation: Optional[CancellationInfo] = None
    reschedule_history: list[RescheduleEntry] = []
    reminders: dict[str, bool] = {}
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SessionDetailResponse(BaseModel):
    session: SessionResponse
    metrics: SessionMetrics


class AvailableSlotsResponse(BaseModel):
    date: date
    practitioner_id: str
    duration_minutes: int
    total_slots: int
    slots: list[TimeSlot]


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class SessionListResponse(BaseModel):
    sessions: list[SessionResponse]
    pagination: Pagination


class PractitionerScheduleResponse(BaseModel):
    practitioner_id: str
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    total_sessions: int
    schedule: dict[str, list[SessionResponse]]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _session_to_response(record: TherapySession) -> SessionResponse:
    cancellation = None
    if record.cancelled_at is not None:
        cancellation = CancellationInfo(
            reason=record.cancellation_reason,
            cancelled_by=str(record.cancelled_by) if record.cancelled_by else None,
            cancelled_at=record.cancelled_at,
            cancellation_fee=record.cancellation_fee,
            refund_amount=record.refund_amount,
            cancellation_type=record.cancellation_type,
        )
    return SessionResponse(
        id=str(record.id),
        therapy_id=str(record.therapy_id),
        therapy_name=record.therapy.name if record.therapy else None,
        patient_id=str(record.patient_id),
        practitioner_id=str(record.practitioner_id),
        scheduled_date=record.scheduled_date,
        start_time=record.start_time,
        end_time=record.end_time,
        actual_start_time=record.actual_start_time,
        actual_end_time=record.actual_end_time,
        status=record.status,
        price=record.price,
        payment_status=record.payment_status,
        notes={
            "pre_session": record.notes_pre,
            "during_session": record.notes_during,
            "post_session": record.notes_post,
            "preferences": record.preferences,
        },
        vitals=record.vitals,
        symptoms=record.symptoms,
        complications=record.complications,
        recommendations=record.recommendations,
        cancellation=cancellation,
        reschedule_history=[
            RescheduleEntry(
                original_start=entry.original_start,
                original_end=entry.original_end,
                new_start=entry.new_start,
                new_end=entry.new_end,
                reason=entry.reason,
                rescheduled_by=str(entry.rescheduled_by),
                rescheduled_at=entry.rescheduled_at,
            )
            for entry in record.reschedule_history
        ],
        reminders=record.reminders,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _booking_patient(body: BookSessionRequest, current_user: User) -> uuid.UUID:
    """Patients book for themselves; staff must name the patient."""
    if current_user.role == UserRole.PATIENT.value:
        if body.patient_id is not None and body.patient_id != current_user.id:
            raise HTTPException(status_code=403, detail="Patients can only book for themselves")
        return current_user.id
    if body.patient_id is None:
        raise HTTPException(status_code=400, detail="patient_id is required")
    return body.patient_id


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------

@router.get("/available-slots", response_model=AvailableSlotsResponse)
async def get_available_slots(
    practitioner_id: uuid.UUID = Query(...),
    day: date = Query(..., alias="date"),
    duration: Optional[int] = Query(None, ge=5, le=480),
    therapy_id: Optional[uuid.UUID] = Query(None),
    current_user: User = Depends(get_current_user),
    service: SchedulingService = Depends(get_scheduling_service),
) -> AvailableSlotsResponse:
    """Return bookable slots for a practitioner on one date."""
    slots = await service.list_available_slots(
        practitioner_id, day, duration_minutes=duration, therapy_id=therapy_id
    )
    length = slots[0].duration_minutes if slots else (
        duration or service.settings.default_slot_duration_minutes
    )
    return AvailableSlotsResponse(
        date=day,
        practitioner_id=str(practitioner_id),
        duration_minutes=length,
        total_slots=len(slots),
        slots=slots,
    )


# ---------------------------------------------------------------------------
# Book / list / get
# ---------------------------------------------------------------------------

@router.post("/book", response_model=SessionResponse, status_code=201)
async def book_session(
    body: BookSessionRequest,
    current_user: User = Depends(get_current_user),
    service: SchedulingService = Depends(get_scheduling_service),
) -> SessionResponse:
    record = await service.book(
        therapy_id=body.therapy_id,
        patient_id=_booking_patient(body, current_user),
        practitioner_id=body.practitioner_id,
        start_time=body.start_time,
        end_time=body.end_time,
        notes=body.notes,
        preferences=body.preferences,
    )
    return _session_to_response(record)


@router.get("/my-sessions", response_model=SessionListResponse)
async def list_my_sessions(
    status: Optional[list[str]] = Query(None),
    therapy_id: Optional[uuid.UUID] = Query(None),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_order: Literal["asc", "desc"] = Query("desc"),
    current_user: User = Depends(get_current_user),
    service: SchedulingService = Depends(get_scheduling_service),
) -> SessionListResponse:
    records, total = await service.list_sessions(
        current_user,
        statuses=status,
        therapy_id=therapy_id,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
        ascending=sort_order == "asc",
    )
    return SessionListResponse(
        sessions=[_session_to_response(r) for r in records],
        pagination=Pagination(
            page=page, limit=limit, total=total, pages=math.ceil(total / limit) if total else 0
        ),
    )


@router.get("/practitioner/{practitioner_id}", response_model=PractitionerScheduleResponse)
async def get_practitioner_schedule(
    practitioner_id: uuid.UUID,
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    current_user: User = Depends(get_current_user),
    service: SchedulingService = Depends(get_scheduling_service),
) -> PractitionerScheduleResponse:
    grouped = await service.practitioner_schedule(
        practitioner_id, start_date=start_date, end_date=end_date, actor=current_user
    )
    return PractitionerScheduleResponse(
        practitioner_id=str(practitioner_id),
        start_date=start_date,
        end_date=end_date,
        total_sessions=sum(len(v) for v in grouped.values()),
        schedule={day: [_session_to_response(r) for r in rows] for day, rows in grouped.items()},
    )


@router.get("/{session_id}", response_model=SessionDetailResponse)
async def get_session_details(
    session_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    service: SchedulingService = Depends(get_scheduling_service),
) -> SessionDetailResponse:
    record, metrics = await service.get_session(session_id, current_user)
    return SessionDetailResponse(session=_session_to_response(record), metrics=metrics)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

@router.patch("/{session_id}/cancel", response_model=SessionResponse)
async def cancel_session(
    session_id: uuid.UUID,
    body: CancelSessionRequest,
    current_user: User = Depends(get_current_user),
    service: SchedulingService = Depends(get_scheduling_service),
) -> SessionResponse:
    record = await service.cancel(
        session_id, body.reason, current_user, cancellation_type=body.cancellation_type
    )
    return _session_to_response(record)


@router.patch("/{session_id}/status", response_model=SessionResponse)
async def update_session_status(
    session_id: uuid.UUID,
    body: StatusUpdateRequest,
    current_user: User = Depends(get_current_user),
    service: SchedulingService = Depends(get_scheduling_service),
) -> SessionResponse:
    record = await service.update_status(
        session_id,
        current_user,
        status=body.status,
        notes=body.notes,
        observations=body.observations(),
    )
    return _session_to_response(record)


@router.post("/{session_id}/reschedule", response_model=SessionResponse)
async def reschedule_session(
    session_id: uuid.UUID,
    body: RescheduleRequest,
    current_user: User = Depends(get_current_user),
    service: SchedulingService = Depends(get_scheduling_service),
) -> SessionResponse:
    record = await service.reschedule(
        session_id, body.new_start_time, body.new_end_time, body.reason, current_user
    )
    return _session_to_response(record)
