"""Tests for the cancellation fee / refund policy."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from clinic_os.scheduling.policy import fee_rate, quote_cancellation

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
PRICE = Decimal("1000")


def _quote(hours: float, price=PRICE):
    return quote_cancellation(NOW + timedelta(hours=hours), price, NOW)


class TestTiers:
    def test_one_hour_before_start(self):
        q = _quote(1)
        assert q.cancellation_fee == Decimal("500.00")
        assert q.refund_amount == Decimal("500.00")
        assert q.tier == "under_2h"

    def test_ten_hours_before_start(self):
        q = _quote(10)
        assert q.cancellation_fee == Decimal("250.00")
        assert q.refund_amount == Decimal("750.00")
        assert q.tier == "under_24h"

    def test_forty_eight_hours_before_start(self):
        q = _quote(48)
        assert q.cancellation_fee == Decimal("0.00")
        assert q.refund_amount == Decimal("1000.00")
        assert q.tier == "free"

    def test_exactly_two_hours_is_middle_tier(self):
        assert _quote(2).tier == "under_24h"

    def test_exactly_twenty_four_hours_is_free(self):
        assert _quote(24).tier == "free"

    def test_just_under_boundaries(self):
        assert _quote(2 - 1 / 3600).tier == "under_2h"
        assert _quote(24 - 1 / 3600).tier == "under_24h"

    def test_after_start_uses_highest_fee(self):
        q = _quote(-0.5)
        assert q.cancellation_fee == Decimal("500.00")
        assert q.hours_until_start == pytest.approx(-0.5)

    def test_fee_rate_table(self):
        assert fee_rate(0.5) == (Decimal("0.50"), "under_2h")
        assert fee_rate(5) == (Decimal("0.25"), "under_24h")
        assert fee_rate(100) == (Decimal("0"), "free")


@pytest.mark.parametrize("hours", [-3, 0, 0.25, 1.99, 2, 7.5, 23.99, 24, 72])
@pytest.mark.parametrize("price", [Decimal("1000"), Decimal("99.99"), Decimal("0.01"), 333, 12.5])
def test_fee_plus_refund_equals_price(hours, price):
    q = _quote(hours, price)
    expected = Decimal(str(price)).quantize(Decimal("0.01"))
    assert q.cancellation_fee + q.refund_amount == expected
    assert q.cancellation_fee >= 0
    assert q.refund_amount >= 0


def test_odd_cent_rounding():
    q = _quote(1, Decimal("99.99"))
    assert q.cancellation_fee == Decimal("50.00")
    assert q.refund_amount == Decimal("49.99")
