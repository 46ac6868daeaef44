"""Tests for half-open interval arithmetic."""

from datetime import datetime, timedelta, timezone

import pytest

from clinic_os.scheduling.errors import ValidationError
from clinic_os.scheduling.models import SessionStatus
from clinic_os.scheduling.timewindow import (
    ACTIVE_STATUSES,
    duration_minutes,
    ensure_utc,
    overlaps,
    validate_window,
)

T0 = datetime(2026, 3, 3, 10, 0, tzinfo=timezone.utc)


def _h(hours: float) -> datetime:
    return T0 + timedelta(hours=hours)


class TestOverlaps:
    def test_partial_overlap(self):
        # 10:30-11:30 against 10:00-11:00
        assert overlaps(_h(0.5), _h(1.5), _h(0), _h(1))

    def test_containment(self):
        assert overlaps(_h(0), _h(3), _h(1), _h(2))
        assert overlaps(_h(1), _h(2), _h(0), _h(3))

    def test_identical_windows(self):
        assert overlaps(_h(0), _h(1), _h(0), _h(1))

    def test_touching_endpoints_do_not_overlap(self):
        assert not overlaps(_h(0), _h(1), _h(1), _h(2))
        assert not overlaps(_h(1), _h(2), _h(0), _h(1))

    def test_disjoint(self):
        assert not overlaps(_h(0), _h(1), _h(2), _h(3))

    def test_symmetric(self):
        pairs = [((0, 1), (0.5, 2)), ((0, 1), (1, 2)), ((0, 4), (1, 2)), ((3, 4), (0, 1))]
        for (a0, a1), (b0, b1) in pairs:
            assert overlaps(_h(a0), _h(a1), _h(b0), _h(b1)) == overlaps(
                _h(b0), _h(b1), _h(a0), _h(a1)
            )


class TestValidateWindow:
    def test_accepts_chronological_window(self):
        validate_window(_h(0), _h(1))

    def test_rejects_equal_endpoints(self):
        with pytest.raises(ValidationError, match="End time must be after start time"):
            validate_window(_h(1), _h(1))

    def test_rejects_reversed_window(self):
        with pytest.raises(ValidationError):
            validate_window(_h(2), _h(1))


def test_duration_minutes():
    assert duration_minutes(_h(0), _h(1.5)) == 90


def test_active_statuses_exclude_terminal():
    assert ACTIVE_STATUSES == {
        SessionStatus.SCHEDULED,
        SessionStatus.CONFIRMED,
        SessionStatus.IN_PROGRESS,
    }
    assert not any(s.is_terminal for s in ACTIVE_STATUSES)


def test_ensure_utc_normalizes():
    naive = datetime(2026, 3, 3, 10, 0)
    assert ensure_utc(naive) == T0
    plus_two = datetime(2026, 3, 3, 12, 0, tzinfo=timezone(timedelta(hours=2)))
    assert ensure_utc(plus_two) == T0
    assert ensure_utc(plus_two).tzinfo == timezone.utc
