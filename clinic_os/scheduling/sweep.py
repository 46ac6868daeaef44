"""Periodic sweep that moves overdue sessions through the lifecycle."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinic_os.config import Settings, get_settings
from clinic_os.core.models import TherapySession
from clinic_os.core.repository import SessionRepository
from clinic_os.events.dispatcher import EventDispatcher
from clinic_os.scheduling.clock import Clock, SystemClock
from clinic_os.scheduling.errors import SchedulingError
from clinic_os.scheduling.models import SessionStatus, SweepReport
from clinic_os.scheduling.service import SchedulingService

logger = logging.getLogger(__name__)

STUCK_SESSION_NOTE = "Auto-completed by system due to extended duration"

UNSTARTED_STATUSES = (SessionStatus.SCHEDULED.value, SessionStatus.CONFIRMED.value)

Finder = Callable[[SessionRepository, datetime], Awaitable[Sequence[TherapySession]]]
Rule = Callable[[TherapySession, datetime], bool]


def is_unstarted_before(record: TherapySession, cutoff: datetime) -> bool:
    return record.status in UNSTARTED_STATUSES and record.start_time < cutoff


def is_running_past_end(record: TherapySession, cutoff: datetime) -> bool:
    return record.status == SessionStatus.IN_PROGRESS.value and record.end_time < cutoff


def is_running_since(record: TherapySession, cutoff: datetime) -> bool:
    return record.status == SessionStatus.IN_PROGRESS.value and record.start_time < cutoff


class SessionSweeper:
    """Applies the time-based transitions nobody requests explicitly.

    * scheduled/confirmed sessions past start + grace become ``no-show``
    * in-progress sessions past end + buffer become ``completed``
    * in-progress sessions started more than N days ago are force-completed

    Candidates are listed without locks; each one is then re-read and
    transitioned through :meth:`SchedulingService.apply_overdue_transition`.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Optional[Clock] = None,
        dispatcher: Optional[EventDispatcher] = None,
        settings: Optional[Settings] = None,
        service: Optional[SchedulingService] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.dispatcher = dispatcher or EventDispatcher()
        self.settings = settings or get_settings()
        self.service = service or SchedulingService(
            session_factory,
            clock=self.clock,
            settings=self.settings,
            dispatcher=self.dispatcher,
        )
        self._running = False

    async def _sweep(
        self,
        label: str,
        find: Finder,
        rule: Rule,
        age: timedelta,
        target: SessionStatus,
        report: SweepReport,
        notes: Optional[str] = None,
    ) -> list[str]:
        async with self.session_factory() as db:
            candidates = [
                record.id
                for record in await find(SessionRepository(db), self.clock.now() - age)
            ]

        updated: list[str] = []
        for session_id in candidates:
            try:
                record = await self.service.apply_overdue_transition(
                    session_id,
                    target,
                    lambda r, now: rule(r, now - age),
                    notes=notes,
                    rule=label,
                )
            except SchedulingError as e:
                report.errors.append(f"{label} {session_id}: {e.message}")
                continue
            if record is not None:
                updated.append(str(record.id))

        if updated:
            logger.info("Sweep %s: %d sessions -> %s", label, len(updated), target.value)
        return updated

    async def mark_no_shows(self, report: Optional[SweepReport] = None) -> list[str]:
        report = report or SweepReport(started_at=self.clock.now())
        return await self._sweep(
            "no_show",
            lambda repo, c: repo.list_unstarted_before(c),
            is_unstarted_before,
            timedelta(minutes=self.settings.no_show_grace_minutes),
            SessionStatus.NO_SHOW,
            report,
        )

    async def auto_complete(self, report: Optional[SweepReport] = None) -> list[str]:
        report = report or SweepReport(started_at=self.clock.now())
        return await self._sweep(
            "auto_complete",
            lambda repo, c: repo.list_in_progress_ended_before(c),
            is_running_past_end,
            timedelta(minutes=self.settings.auto_complete_buffer_minutes),
            SessionStatus.COMPLETED,
            report,
        )

    async def complete_stuck_sessions(self, report: Optional[SweepReport] = None) -> list[str]:
        report = report or SweepReport(started_at=self.clock.now())
        return await self._sweep(
            "stuck",
            lambda repo, c: repo.list_in_progress_started_before(c),
            is_running_since,
            timedelta(days=self.settings.stuck_session_days),
            SessionStatus.COMPLETED,
            report,
            notes=STUCK_SESSION_NOTE,
        )

    async def run_once(self) -> SweepReport:
        report = SweepReport(started_at=self.clock.now())
        report.no_shows = await self.mark_no_shows(report)
        report.auto_completed = await self.auto_complete(report)
        report.stuck_completed = await self.complete_stuck_sessions(report)
        return report

    async def run_forever(
        self,
        interval_seconds: Optional[float] = None,
        max_iterations: Optional[int] = None,
    ) -> None:
        """Run the sweep on a fixed interval until :meth:`stop` is called.

        A failing pass is logged and the loop carries on with the next one.
        """
        interval = interval_seconds or self.settings.sweep_interval_minutes * 60
        self._running = True
        iteration = 0

        logger.info("Starting session sweeper (every %.0fs)", interval)

        while self._running:
            if max_iterations and iteration >= max_iterations:
                break
            try:
                report = await self.run_once()
                if report.total_updated or report.errors:
                    logger.info(
                        "Sweep pass: %d no-show, %d completed, %d stuck, %d errors",
                        len(report.no_shows),
                        len(report.auto_completed),
                        len(report.stuck_completed),
                        len(report.errors),
                    )
            except Exception as e:
                logger.error("Sweep pass failed: %s", e)

            iteration += 1
            if self._running and not (max_iterations and iteration >= max_iterations):
                await asyncio.sleep(interval)

        logger.info("Session sweeper stopped")

    def stop(self) -> None:
        self._running = False
