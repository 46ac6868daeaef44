"""Tests for the session store repositories using async SQLite."""

from __future__ import annotations

import uuid
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from clinic_os.core.models import TherapySession, User
from clinic_os.core.repository import SessionRepository, TherapyRepository, UserRepository
from tests.conftest import (
    OTHER_PATIENT_ID,
    OTHER_PRACTITIONER_ID,
    PATIENT_ID,
    PRACTITIONER_ID,
    THERAPY_ID,
    at,
)


@pytest.fixture
async def session(session_factory, seed):
    async with session_factory() as sess:
        yield sess
        await sess.rollback()


async def _create(repo: SessionRepository, start, end, status="scheduled", **kwargs):
    fields = dict(
        therapy_id=THERAPY_ID,
        patient_id=PATIENT_ID,
        practitioner_id=PRACTITIONER_ID,
        status=status,
        price=Decimal("1000.00"),
    )
    fields.update(kwargs)
    return await repo.create(start_time=start, end_time=end, **fields)


# --- Users / therapies ---

async def test_user_lookup(session):
    user = await UserRepository(session).get_by_id(PATIENT_ID)
    assert user is not None
    assert user.role == "patient"
    assert await UserRepository(session).get_by_id(uuid.uuid4()) is None


async def test_list_by_role(session):
    practitioners = await UserRepository(session).list_by_role("practitioner")
    assert {p.id for p in practitioners} == {PRACTITIONER_ID, OTHER_PRACTITIONER_ID}


async def test_claim_schedule_bumps_version(session):
    repo = UserRepository(session)
    await repo.claim_schedule([PRACTITIONER_ID, PATIENT_ID, PATIENT_ID])
    result = await session.execute(
        select(User.id, User.schedule_version).where(User.id.in_([PRACTITIONER_ID, PATIENT_ID]))
    )
    assert dict(result.all()) == {PRACTITIONER_ID: 1, PATIENT_ID: 1}


async def test_therapy_lookup(session):
    therapy = await TherapyRepository(session).get_by_id(THERAPY_ID)
    assert therapy.duration == 60
    assert therapy.price == Decimal("1000.00")


# --- Sessions ---

async def test_create_sets_scheduled_date(session):
    record = await _create(SessionRepository(session), at(1, 23, 30), at(2, 0, 30))
    assert record.scheduled_date == date(2026, 3, 3)
    assert record.reschedule_history == []


async def test_times_round_trip_as_utc(session_factory, seed):
    async with session_factory() as sess:
        async with sess.begin():
            record = await _create(SessionRepository(sess), at(1, 10), at(1, 11))
    async with session_factory() as sess:
        stored = await SessionRepository(sess).get_by_id(record.id)
    assert stored.start_time.tzinfo is not None
    assert stored.start_time.utcoffset() == timedelta(0)
    assert stored.start_time == at(1, 10)


async def test_set_window_keeps_date_in_sync(session):
    record = await _create(SessionRepository(session), at(1, 10), at(1, 11))
    record.set_window(at(3, 9), at(3, 10))
    assert record.scheduled_date == date(2026, 3, 5)


async def test_list_active_between(session):
    repo = SessionRepository(session)
    hit = await _create(repo, at(1, 10), at(1, 11))
    await _create(repo, at(1, 11), at(1, 12))  # touches the end of the query window
    await _create(repo, at(1, 10), at(1, 11), status="cancelled")
    await _create(repo, at(1, 10), at(1, 11), practitioner_id=OTHER_PRACTITIONER_ID, patient_id=OTHER_PATIENT_ID)

    rows = await repo.list_active_between(at(1, 10, 30), at(1, 11), practitioner_id=PRACTITIONER_ID)
    assert [r.id for r in rows] == [hit.id]

    rows = await repo.list_active_between(
        at(1, 10, 30), at(1, 11), practitioner_id=PRACTITIONER_ID, exclude_id=hit.id
    )
    assert rows == []

    rows = await repo.list_active_between(at(1, 10), at(1, 11), patient_id=OTHER_PATIENT_ID)
    assert len(rows) == 1


async def test_list_for_user_scopes_by_role(session):
    repo = SessionRepository(session)
    await _create(repo, at(1, 10), at(1, 11))
    await _create(repo, at(2, 10), at(2, 11), practitioner_id=OTHER_PRACTITIONER_ID, patient_id=OTHER_PATIENT_ID)

    assert await repo.count_for_user(PATIENT_ID, "patient") == 1
    assert await repo.count_for_user(OTHER_PRACTITIONER_ID, "practitioner") == 1
    assert await repo.count_for_user(None, "admin") == 2

    rows = await repo.list_for_user(None, "admin", ascending=True)
    assert [r.start_time for r in rows] == [at(1, 10), at(2, 10)]


async def test_list_for_user_filters(session):
    repo = SessionRepository(session)
    await _create(repo, at(1, 10), at(1, 11), status="completed")
    await _create(repo, at(2, 10), at(2, 11))
    await _create(repo, at(3, 10), at(3, 11))

    assert await repo.count_for_user(PATIENT_ID, "patient", statuses=["completed"]) == 1
    assert await repo.count_for_user(PATIENT_ID, "patient", start=at(2, 0), end=at(2, 23)) == 1
    page = await repo.list_for_user(PATIENT_ID, "patient", offset=1, limit=1)
    assert [r.start_time for r in page] == [at(2, 10)]


async def test_list_for_practitioner(session):
    repo = SessionRepository(session)
    await _create(repo, at(1, 15), at(1, 16))
    await _create(repo, at(1, 10), at(1, 11))
    await _create(repo, at(1, 12), at(1, 13), status="no-show")

    active = await repo.list_for_practitioner(PRACTITIONER_ID, at(1, 0), at(2, 0))
    assert [r.start_time for r in active] == [at(1, 10), at(1, 15)]

    everything = await repo.list_for_practitioner(PRACTITIONER_ID, at(1, 0), at(2, 0), active_only=False)
    assert len(everything) == 3


async def test_sweep_queries(session):
    repo = SessionRepository(session)
    unstarted = await _create(repo, at(0, 6), at(0, 7), status="confirmed")
    ended = await _create(repo, at(0, 5), at(0, 6), status="in-progress")
    await _create(repo, at(0, 9), at(0, 10))

    assert [r.id for r in await repo.list_unstarted_before(at(0, 7, 30))] == [unstarted.id]
    assert [r.id for r in await repo.list_in_progress_ended_before(at(0, 7))] == [ended.id]
    assert [r.id for r in await repo.list_in_progress_started_before(at(0, 5, 30))] == [ended.id]
    assert await repo.list_in_progress_started_before(at(0, 4)) == []


async def test_completed_patients_for_therapy(session):
    repo = SessionRepository(session)
    await _create(repo, at(-5, 10), at(-5, 11), status="completed", patient_id=OTHER_PATIENT_ID)
    await _create(repo, at(-4, 10), at(-4, 11), status="completed", patient_id=OTHER_PATIENT_ID)
    await _create(repo, at(-3, 10), at(-3, 11), status="completed")
    await _create(repo, at(-200, 10), at(-200, 11), status="completed", patient_id=OTHER_PATIENT_ID,
                  practitioner_id=OTHER_PRACTITIONER_ID)

    patients = await repo.completed_patients_for_therapy(
        THERAPY_ID, exclude_patient_id=PATIENT_ID, since=at(-90, 0)
    )
    assert patients == [OTHER_PATIENT_ID]

    assert await repo.completed_patients_for_therapy(
        THERAPY_ID, exclude_patient_id=OTHER_PATIENT_ID, since=at(-1, 0)
    ) == []


async def test_add_reschedule(session):
    repo = SessionRepository(session)
    record = await _create(repo, at(1, 10), at(1, 11))
    entry = await repo.add_reschedule(
        record,
        original_start=at(1, 10),
        original_end=at(1, 11),
        new_start=at(2, 10),
        new_end=at(2, 11),
        reason="Moved",
        rescheduled_by=PATIENT_ID,
        rescheduled_at=at(0, 8),
    )
    assert entry.session_id == record.id
    assert record.reschedule_history == [entry]

    rows = await session.execute(select(TherapySession).where(TherapySession.id == record.id))
    assert rows.scalar_one().reschedule_history[0].reason == "Moved"
