"""Shared money and time helpers used across the booking core."""

import math
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Union

Number = Union[int, float, Decimal, str]


def round_cents(value: Number) -> int:
    """Round a cent amount to the nearest whole cent, halves away from zero.

    Examples:
        >>> round_cents(Decimal("3520.5"))
        3521
        >>> round_cents("3519.4999")
        3519
    """
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def ceil_minutes(delta: timedelta) -> int:
    """Whole minutes in ``delta``, rounding any partial minute up."""
    return math.ceil(Decimal(str(delta.total_seconds())) / 60)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def intervals_overlap(
    a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime
) -> bool:
    """Half-open overlap test: ``[a_start, a_end)`` and ``[b_start, b_end)``."""
    return a_start < b_end and b_start < a_end
