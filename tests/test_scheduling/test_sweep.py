"""Tests for the periodic session sweep."""

from datetime import timedelta
from decimal import Decimal

import pytest

from clinic_os.core.repository import SessionRepository
from clinic_os.events import GLOBAL_CHANNEL, user_channel
from clinic_os.scheduling.sweep import STUCK_SESSION_NOTE, SessionSweeper
from tests.conftest import NOW, PATIENT_ID, PRACTITIONER_ID, THERAPY_ID, at


@pytest.fixture
def sweeper(session_factory, clock, dispatcher, settings, seed):
    return SessionSweeper(session_factory, clock=clock, dispatcher=dispatcher, settings=settings)


@pytest.fixture
def make_session(session_factory, seed):
    async def _make(status, start, end, **kwargs):
        async with session_factory() as db:
            async with db.begin():
                record = await SessionRepository(db).create(
                    therapy_id=THERAPY_ID,
                    patient_id=PATIENT_ID,
                    practitioner_id=PRACTITIONER_ID,
                    start_time=start,
                    end_time=end,
                    status=status,
                    price=Decimal("1000.00"),
                    **kwargs,
                )
        return record.id

    return _make


async def _status(session_factory, session_id):
    async with session_factory() as db:
        return await SessionRepository(db).get_by_id(session_id)


@pytest.fixture
def after_listing(monkeypatch):
    """Run *action* right after the sweep has listed its candidates."""

    def _install(finder_name, action):
        original = getattr(SessionRepository, finder_name)

        async def listed_then_act(self, cutoff):
            rows = await original(self, cutoff)
            await action()
            return rows

        monkeypatch.setattr(SessionRepository, finder_name, listed_then_act)

    return _install


class TestNoShows:
    async def test_past_grace_marked(self, sweeper, make_session, session_factory):
        late = await make_session("scheduled", NOW - timedelta(minutes=40), NOW + timedelta(minutes=20))
        confirmed = await make_session("confirmed", NOW - timedelta(hours=2), NOW - timedelta(hours=1))

        updated = await sweeper.mark_no_shows()

        assert set(updated) == {str(late), str(confirmed)}
        assert (await _status(session_factory, late)).status == "no-show"
        assert (await _status(session_factory, confirmed)).status == "no-show"

    async def test_within_grace_untouched(self, sweeper, make_session, session_factory):
        recent = await make_session("confirmed", NOW - timedelta(minutes=20), NOW + timedelta(minutes=40))
        assert await sweeper.mark_no_shows() == []
        assert (await _status(session_factory, recent)).status == "confirmed"

    async def test_notifies_practitioner(self, sweeper, make_session, notifier):
        await make_session("scheduled", NOW - timedelta(hours=1), NOW)
        await sweeper.mark_no_shows()
        assert [n.kind for n in notifier.for_recipient(str(PRACTITIONER_ID))] == ["session_no_show"]


class TestAutoComplete:
    async def test_overdue_in_progress_completed(self, sweeper, make_session, session_factory):
        overdue = await make_session(
            "in-progress",
            NOW - timedelta(minutes=80),
            NOW - timedelta(minutes=20),
            actual_start_time=NOW - timedelta(minutes=78),
        )
        running = await make_session("in-progress", NOW - timedelta(minutes=50), NOW + timedelta(minutes=10))

        updated = await sweeper.auto_complete()

        assert updated == [str(overdue)]
        stored = await _status(session_factory, overdue)
        assert stored.status == "completed"
        assert stored.actual_end_time == NOW
        assert stored.actual_start_time == NOW - timedelta(minutes=78)
        assert (await _status(session_factory, running)).status == "in-progress"

    async def test_inside_buffer_untouched(self, sweeper, make_session):
        await make_session("in-progress", NOW - timedelta(minutes=70), NOW - timedelta(minutes=10))
        assert await sweeper.auto_complete() == []


class TestStuckSessions:
    async def test_force_completed_with_note(self, sweeper, make_session, session_factory):
        stuck = await make_session("in-progress", NOW - timedelta(days=4), NOW + timedelta(hours=1))

        updated = await sweeper.complete_stuck_sessions()

        assert updated == [str(stuck)]
        stored = await _status(session_factory, stuck)
        assert stored.status == "completed"
        assert stored.notes_post == STUCK_SESSION_NOTE

    async def test_recent_untouched(self, sweeper, make_session):
        await make_session("in-progress", NOW - timedelta(days=2), NOW + timedelta(hours=1))
        assert await sweeper.complete_stuck_sessions() == []


class TestRunOnce:
    async def test_report(self, sweeper, make_session, broadcaster):
        queue = broadcaster.subscribe(user_channel(PATIENT_ID), GLOBAL_CHANNEL)
        await make_session("scheduled", NOW - timedelta(hours=2), NOW - timedelta(hours=1))
        await make_session("in-progress", NOW - timedelta(hours=3), NOW - timedelta(hours=2))
        await make_session("completed", NOW - timedelta(hours=5), NOW - timedelta(hours=4))

        report = await sweeper.run_once()

        assert len(report.no_shows) == 1
        assert len(report.auto_completed) == 1
        assert report.stuck_completed == []
        assert report.errors == []
        assert report.total_updated == 2

        messages = [queue.get_nowait() for _ in range(queue.qsize())]
        assert {m["event"] for m in messages} == {"sessionStatusUpdate"}
        assert {m["data"]["metadata"]["rule"] for m in messages} == {"no_show", "auto_complete"}

    async def test_idempotent(self, sweeper, make_session):
        await make_session("scheduled", NOW - timedelta(hours=2), NOW - timedelta(hours=1))
        first = await sweeper.run_once()
        second = await sweeper.run_once()
        assert first.total_updated == 1
        assert second.total_updated == 0

    async def test_run_forever_stops_after_iterations(self, sweeper, make_session, session_factory):
        session_id = await make_session("scheduled", NOW - timedelta(hours=2), NOW - timedelta(hours=1))
        await sweeper.run_forever(interval_seconds=0.01, max_iterations=2)
        assert (await _status(session_factory, session_id)).status == "no-show"


class TestConcurrentChanges:
    async def test_reschedule_after_listing_is_kept(
        self, sweeper, service, seed, make_session, after_listing, session_factory
    ):
        late = await make_session("scheduled", NOW - timedelta(hours=1), NOW)
        after_listing(
            "list_unstarted_before",
            lambda: service.reschedule(late, at(1, 10), at(1, 11), "Running late", seed.patient),
        )

        report = await sweeper.run_once()

        assert report.no_shows == []
        assert report.errors == []
        stored = await _status(session_factory, late)
        assert stored.status == "scheduled"
        assert stored.start_time == at(1, 10)

    async def test_cancel_after_listing_is_skipped(
        self, sweeper, service, seed, make_session, after_listing, session_factory, notifier
    ):
        late = await make_session("confirmed", NOW - timedelta(hours=1), NOW)
        after_listing(
            "list_unstarted_before",
            lambda: service.cancel(late, "Could not make it today", seed.patient),
        )

        report = await sweeper.run_once()

        assert report.no_shows == []
        assert report.errors == []
        assert (await _status(session_factory, late)).status == "cancelled"
        assert "session_no_show" not in [n.kind for n in notifier.sent]

    async def test_completion_after_listing_is_skipped(
        self, sweeper, service, seed, make_session, after_listing, session_factory
    ):
        running = await make_session(
            "in-progress",
            NOW - timedelta(hours=2),
            NOW - timedelta(hours=1),
            actual_start_time=NOW - timedelta(hours=2),
        )
        after_listing(
            "list_in_progress_ended_before",
            lambda: service.update_status(
                running, seed.practitioner, status="completed", notes="Went well"
            ),
        )

        updated = await sweeper.auto_complete()

        assert updated == []
        stored = await _status(session_factory, running)
        assert stored.status == "completed"
        assert stored.notes_post == "Went well"

    async def test_shares_service_locks(self, session_factory, clock, dispatcher, settings, service):
        sweeper = SessionSweeper(
            session_factory, clock=clock, dispatcher=dispatcher, settings=settings, service=service
        )
        assert sweeper.service.locks is service.locks
