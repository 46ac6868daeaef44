"""Pytest configuration and fixtures."""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from clinic_os.config import Settings
from clinic_os.core.models import Base, Therapy, User
from clinic_os.events import EventDispatcher, InMemoryBroadcaster, RecordingNotifier
from clinic_os.scheduling.clock import FixedClock
from clinic_os.scheduling.service import SchedulingService

# Monday 2026-03-02 08:00 UTC; "tomorrow" below means Tuesday 2026-03-03.
NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

PRACTITIONER_ID = uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")
OTHER_PRACTITIONER_ID = uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-cccccccccccc")
PATIENT_ID = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")
OTHER_PATIENT_ID = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-cccccccccccc")
ADMIN_ID = uuid.UUID("dddddddd-dddd-dddd-dddd-dddddddddddd")
THERAPY_ID = uuid.UUID("eeeeeeee-eeee-eeee-eeee-eeeeeeeeeeee")
INACTIVE_THERAPY_ID = uuid.UUID("eeeeeeee-eeee-eeee-eeee-ffffffffffff")


def at(days: int, hour: int, minute: int = 0) -> datetime:
    """An instant *days* after NOW's date at hour:minute UTC."""
    base = NOW.replace(hour=0, minute=0) + timedelta(days=days)
    return base.replace(hour=hour, minute=minute)


# ---------------------------------------------------------------------------
# Clock / settings
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def settings():
    return Settings(_env_file=None, database_url="sqlite+aiosqlite://")


# ---------------------------------------------------------------------------
# Database: file-backed SQLite so concurrent transactions get real connections
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'clinic.db'}", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def seed(session_factory):
    """Seed practitioners, patients, an admin and two therapies."""
    users = {
        "practitioner": User(
            id=PRACTITIONER_ID, email="chen@clinic.test", full_name="Sarah Chen",
            role="practitioner", is_active=True, is_approved=True,
        ),
        "other_practitioner": User(
            id=OTHER_PRACTITIONER_ID, email="patel@clinic.test", full_name="Ravi Patel",
            role="practitioner", is_active=True, is_approved=True,
        ),
        "patient": User(
            id=PATIENT_ID, email="jane@clinic.test", full_name="Jane Doe",
            role="patient", is_active=True,
        ),
        "other_patient": User(
            id=OTHER_PATIENT_ID, email="john@clinic.test", full_name="John Roe",
            role="patient", is_active=True,
        ),
        "admin": User(
            id=ADMIN_ID, email="admin@clinic.test", full_name="Clinic Admin",
            role="admin", is_active=True, is_approved=True,
        ),
    }
    therapies = {
        "therapy": Therapy(
            id=THERAPY_ID, name="Abhyanga", category="massage",
            duration=60, price=Decimal("1000.00"), is_active=True,
        ),
        "inactive_therapy": Therapy(
            id=INACTIVE_THERAPY_ID, name="Retired Therapy", category="other",
            duration=60, price=Decimal("500.00"), is_active=False,
        ),
    }
    async with session_factory() as sess:
        sess.add_all([*users.values(), *therapies.values()])
        await sess.commit()
    return SimpleNamespace(**users, **therapies)


# ---------------------------------------------------------------------------
# Collaborators and service
# ---------------------------------------------------------------------------

@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def broadcaster():
    return InMemoryBroadcaster()


@pytest.fixture
def dispatcher(notifier, broadcaster):
    return EventDispatcher(notifier=notifier, broadcaster=broadcaster)


@pytest.fixture
def service(session_factory, clock, settings, dispatcher, seed):
    return SchedulingService(session_factory, clock=clock, settings=settings, dispatcher=dispatcher)


@pytest_asyncio.fixture
async def booked(service):
    """A scheduled 60-minute session tomorrow 10:00-11:00."""
    return await service.book(
        therapy_id=THERAPY_ID,
        patient_id=PATIENT_ID,
        practitioner_id=PRACTITIONER_ID,
        start_time=at(1, 10),
        end_time=at(1, 11),
    )
