"""CRUD repositories for the session store."""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import Select, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_os.core.models import RescheduleRecord, Therapy, TherapySession, User
from clinic_os.scheduling.timewindow import ACTIVE_STATUS_VALUES


class UserRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> User:
        user = User(**kwargs)
        self.session.add(user)
        await self.session.flush()
        return user

    async def get_by_id(self, user_id: uuid.UUID) -> Optional[User]:
        return await self.session.get(User, user_id)

    async def claim_schedule(self, user_ids: Iterable[uuid.UUID]) -> None:
        """Take the write lock on each user's schedule for the rest of the transaction.

        Rows are touched in sorted order so two transactions claiming the same
        pair cannot deadlock. On SQLite the first UPDATE also acquires the
        database write lock, which serializes competing transactions.
        """
        for user_id in sorted(set(user_ids), key=str):
            await self.session.execute(
                update(User)
                .where(User.id == user_id)
                .values(schedule_version=User.schedule_version + 1)
                .execution_options(synchronize_session=False)
            )

    async def list_by_role(self, role: str, active_only: bool = True) -> Sequence[User]:
        stmt = select(User).where(User.role == role)
        if active_only:
            stmt = stmt.where(User.is_active.is_(True))
        result = await self.session.execute(stmt.order_by(User.full_name))
        return result.scalars().all()


class TherapyRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> Therapy:
        therapy = Therapy(**kwargs)
        self.session.add(therapy)
        await self.session.flush()
        return therapy

    async def get_by_id(self, therapy_id: uuid.UUID) -> Optional[Therapy]:
        return await self.session.get(Therapy, therapy_id)


class SessionRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> TherapySession:
        start = kwargs.pop("start_time")
        end = kwargs.pop("end_time")
        kwargs.setdefault("reschedule_history", [])
        record = TherapySession(**kwargs)
        record.set_window(start, end)
        self.session.add(record)
        await self.session.flush()
        return record

    async def get_by_id(self, session_id: uuid.UUID, lock: bool = False) -> Optional[TherapySession]:
        stmt = select(TherapySession).where(TherapySession.id == session_id)
        if lock:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_active_between(
        self,
        start: datetime,
        end: datetime,
        practitioner_id: Optional[uuid.UUID] = None,
        patient_id: Optional[uuid.UUID] = None,
        exclude_id: Optional[uuid.UUID] = None,
    ) -> Sequence[TherapySession]:
        """Active sessions whose window intersects [start, end)."""
        stmt = select(TherapySession).where(
            TherapySession.status.in_(ACTIVE_STATUS_VALUES),
            TherapySession.start_time < end,
            TherapySession.end_time > start,
        )
        if practitioner_id is not None:
            stmt = stmt.where(TherapySession.practitioner_id == practitioner_id)
        if patient_id is not None:
            stmt = stmt.where(TherapySession.patient_id == patient_id)
        if exclude_id is not None:
            stmt = stmt.where(TherapySession.id != exclude_id)
        result = await self.session.execute(stmt.order_by(TherapySession.start_time))
        return result.scalars().all()

    @staticmethod
    def _filter_for_user(
        stmt: Select[Any],
        user_id: Optional[uuid.UUID],
        role: str,
        statuses: Optional[Iterable[str]] = None,
        therapy_id: Optional[uuid.UUID] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Select[Any]:
        if role == "patient":
            stmt = stmt.where(TherapySession.patient_id == user_id)
        elif role == "practitioner":
            stmt = stmt.where(TherapySession.practitioner_id == user_id)
        if statuses:
            stmt = stmt.where(TherapySession.status.in_(list(statuses)))
        if therapy_id is not None:
            stmt = stmt.where(TherapySession.therapy_id == therapy_id)
        if start is not None:
            stmt = stmt.where(TherapySession.start_time >= start)
        if end is not None:
            stmt = stmt.where(TherapySession.start_time <= end)
        return stmt

    async def list_for_user(
        self,
        user_id: Optional[uuid.UUID],
        role: str,
        statuses: Optional[Iterable[str]] = None,
        therapy_id: Optional[uuid.UUID] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 10,
        ascending: bool = False,
    ) -> Sequence[TherapySession]:
        """Sessions visible to a user: own sessions for patients and practitioners, all for admins."""
        stmt = self._filter_for_user(
            select(TherapySession), user_id, role, statuses, therapy_id, start, end
        )
        order = TherapySession.start_time.asc() if ascending else TherapySession.start_time.desc()
        stmt = stmt.order_by(order).offset(offset).limit(limit)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def count_for_user(
        self,
        user_id: Optional[uuid.UUID],
        role: str,
        statuses: Optional[Iterable[str]] = None,
        therapy_id: Optional[uuid.UUID] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> int:
        stmt = self._filter_for_user(
            select(func.count(TherapySession.id)), user_id, role, statuses, therapy_id, start, end
        )
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def list_for_practitioner(
        self,
        practitioner_id: uuid.UUID,
        start: datetime,
        end: datetime,
        active_only: bool = True,
    ) -> Sequence[TherapySession]:
        stmt = select(TherapySession).where(
            TherapySession.practitioner_id == practitioner_id,
            TherapySession.start_time >= start,
            TherapySession.start_time < end,
        )
        if active_only:
            stmt = stmt.where(TherapySession.status.in_(ACTIVE_STATUS_VALUES))
        result = await self.session.execute(stmt.order_by(TherapySession.start_time))
        return result.scalars().all()

    async def list_unstarted_before(self, cutoff: datetime) -> Sequence[TherapySession]:
        """Scheduled/confirmed sessions whose start is earlier than *cutoff*."""
        stmt = select(TherapySession).where(
            TherapySession.status.in_(("scheduled", "confirmed")),
            TherapySession.start_time < cutoff,
        )
        result = await self.session.execute(stmt.order_by(TherapySession.start_time))
        return result.scalars().all()

    async def list_in_progress_ended_before(self, cutoff: datetime) -> Sequence[TherapySession]:
        stmt = select(TherapySession).where(
            TherapySession.status == "in-progress",
            TherapySession.end_time < cutoff,
        )
        result = await self.session.execute(stmt.order_by(TherapySession.start_time))
        return result.scalars().all()

    async def list_in_progress_started_before(self, cutoff: datetime) -> Sequence[TherapySession]:
        stmt = select(TherapySession).where(
            TherapySession.status == "in-progress",
            TherapySession.start_time < cutoff,
        )
        result = await self.session.execute(stmt.order_by(TherapySession.start_time))
        return result.scalars().all()

    async def completed_patients_for_therapy(
        self,
        therapy_id: uuid.UUID,
        exclude_patient_id: uuid.UUID,
        since: datetime,
        limit: int = 10,
    ) -> list[uuid.UUID]:
        """Distinct patients who completed *therapy_id* since *since*."""
        stmt = (
            select(TherapySession.patient_id)
            .where(
                TherapySession.therapy_id == therapy_id,
                TherapySession.patient_id != exclude_patient_id,
                TherapySession.status == "completed",
                TherapySession.start_time >= since,
            )
            .distinct()
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def add_reschedule(self, record: TherapySession, **kwargs) -> RescheduleRecord:
        entry = RescheduleRecord(session_id=record.id, **kwargs)
        record.reschedule_history.append(entry)
        await self.session.flush()
        return entry
