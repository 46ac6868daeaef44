"""Bookable slot computation."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from clinic_os.scheduling.clock import Clock
from clinic_os.scheduling.conflicts import find_conflict
from clinic_os.scheduling.errors import ValidationError
from clinic_os.scheduling.models import TimeSlot, WorkingHoursPolicy
from clinic_os.scheduling.timewindow import overlaps

logger = logging.getLogger(__name__)


class AvailabilityResolver:
    """Subtracts working hours, the lunch break and existing bookings from a day.

    The result depends only on the booked sessions passed in, the policy, the
    clock's current instant and the requested duration.
    """

    def __init__(self, policy: WorkingHoursPolicy, clock: Clock) -> None:
        self.policy = policy
        self.clock = clock

    def _at(self, day: date, minutes: int) -> datetime:
        midnight = datetime.combine(day, time(0), tzinfo=self.policy.tz)
        return (midnight + timedelta(minutes=minutes)).astimezone(timezone.utc)

    def day_bounds(self, day: date) -> tuple[datetime, datetime]:
        """UTC instants of local midnight at the start and end of *day*."""
        return self._at(day, 0), self._at(day + timedelta(days=1), 0)

    def today(self) -> date:
        return self.clock.now().astimezone(self.policy.tz).date()

    def candidate_starts(self, day: date) -> list[datetime]:
        """Every granularity step inside the working window, lunch included."""
        policy = self.policy
        return [
            self._at(day, offset)
            for offset in range(
                policy.start_hour * 60, policy.end_hour * 60, policy.granularity_minutes
            )
        ]

    def list_available_slots(
        self,
        practitioner_id: Any,
        day: date,
        duration_minutes: int,
        booked: Iterable[Any] = (),
    ) -> list[TimeSlot]:
        if duration_minutes <= 0:
            raise ValidationError("Duration must be positive")
        if day < self.today():
            raise ValidationError("Cannot list slots for past dates")

        booked = list(booked)
        now = self.clock.now()
        length = timedelta(minutes=duration_minutes)
        day_end = self._at(day, self.policy.end_hour * 60)
        lunch_start = self._at(day, self.policy.lunch_start_hour * 60)
        lunch_end = self._at(day, self.policy.lunch_end_hour * 60)

        slots: list[TimeSlot] = []
        for start in self.candidate_starts(day):
            end = start + length
            if end > day_end or start <= now:
                continue
            if overlaps(start, end, lunch_start, lunch_end):
                continue
            if find_conflict(booked, start, end) is not None:
                continue
            slots.append(
                TimeSlot(
                    start_time=start,
                    end_time=end,
                    practitioner_id=str(practitioner_id),
                    duration_minutes=duration_minutes,
                )
            )

        logger.debug(
            "Resolved %d slots for practitioner %s on %s (%d min)",
            len(slots), practitioner_id, day, duration_minutes,
        )
        return slots
