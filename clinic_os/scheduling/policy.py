"""Cancellation fee / refund policy."""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from clinic_os.scheduling.models import CancellationQuote

_CENTS = Decimal("0.01")

# (upper bound in hours, fee rate, tier name), checked in order.
_FEE_TIERS: list[tuple[float, Decimal, str]] = [
    (2, Decimal("0.50"), "under_2h"),
    (24, Decimal("0.25"), "under_24h"),
]
_FREE_TIER = (Decimal("0"), "free")


def fee_rate(hours_until_start: float) -> tuple[Decimal, str]:
    """Return the fee rate and tier name for a given lead time."""
    for upper, rate, tier in _FEE_TIERS:
        if hours_until_start < upper:
            return rate, tier
    return _FREE_TIER


def quote_cancellation(start_time: datetime, price: Decimal | float | int, now: datetime) -> CancellationQuote:
    """Split *price* into a cancellation fee and a refund.

    The refund is derived as ``price - fee`` so the two always sum to the
    session price.
    """
    price = Decimal(str(price)).quantize(_CENTS, rounding=ROUND_HALF_UP)
    hours = (start_time - now).total_seconds() / 3600
    rate, tier = fee_rate(hours)
    fee = (price * rate).quantize(_CENTS, rounding=ROUND_HALF_UP)
    return CancellationQuote(
        hours_until_start=hours,
        cancellation_fee=fee,
        refund_amount=price - fee,
        tier=tier,
    )
