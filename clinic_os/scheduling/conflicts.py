"""Time-window conflict detection for practitioners and patients."""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import TYPE_CHECKING, Optional, TypeVar

from clinic_os.scheduling.errors import SlotUnavailable
from clinic_os.scheduling.models import SessionStatus
from clinic_os.scheduling.timewindow import ACTIVE_STATUSES, overlaps

if TYPE_CHECKING:
    from clinic_os.core.repository import SessionRepository

S = TypeVar("S")


def find_conflict(
    sessions: Iterable[S],
    start: datetime,
    end: datetime,
    exclude_id: Optional[uuid.UUID] = None,
) -> Optional[S]:
    """Return the first active session in *sessions* overlapping [start, end)."""
    for other in sessions:
        if exclude_id is not None and other.id == exclude_id:
            continue
        if SessionStatus(other.status) not in ACTIVE_STATUSES:
            continue
        if overlaps(start, end, other.start_time, other.end_time):
            return other
    return None


class ConflictChecker:
    """Store-backed conflict checks.

    The repository query only narrows the candidate set; the final decision
    always goes through :func:`find_conflict`.
    """

    def __init__(self, repo: SessionRepository):
        self.repo = repo

    async def check_practitioner(
        self,
        practitioner_id: uuid.UUID,
        start: datetime,
        end: datetime,
        exclude_id: Optional[uuid.UUID] = None,
    ) -> None:
        candidates = await self.repo.list_active_between(
            start, end, practitioner_id=practitioner_id, exclude_id=exclude_id
        )
        if find_conflict(candidates, start, end, exclude_id) is not None:
            raise SlotUnavailable(
                "Practitioner is not available at the requested time", scope="practitioner"
            )

    async def check_patient(
        self,
        patient_id: uuid.UUID,
        start: datetime,
        end: datetime,
        exclude_id: Optional[uuid.UUID] = None,
    ) -> None:
        candidates = await self.repo.list_active_between(
            start, end, patient_id=patient_id, exclude_id=exclude_id
        )
        if find_conflict(candidates, start, end, exclude_id) is not None:
            raise SlotUnavailable(
                "Patient already has a session scheduled at this time", scope="patient"
            )

    async def ensure_free(
        self,
        practitioner_id: uuid.UUID,
        patient_id: uuid.UUID,
        start: datetime,
        end: datetime,
        exclude_id: Optional[uuid.UUID] = None,
        patient_first: bool = False,
    ) -> None:
        """Run both checks; practitioner first unless *patient_first* is set."""
        if patient_first:
            await self.check_patient(patient_id, start, end, exclude_id)
            await self.check_practitioner(practitioner_id, start, end, exclude_id)
        else:
            await self.check_practitioner(practitioner_id, start, end, exclude_id)
            await self.check_patient(patient_id, start, end, exclude_id)
