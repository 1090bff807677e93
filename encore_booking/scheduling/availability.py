"""
Availability and conflict checks over an expert's calendar.

Read-only: callers pass in the expert's recurring availability and a
snapshot of existing bookings. Nothing here knows about in-flight
reservations; the ledger re-checks under its lock before inserting.

Recurring hours are interpreted in the expert's timezone and expanded into
absolute UTC ranges. Ranges that touch (e.g. Monday 22-24 and Tuesday 0-2)
merge into one continuous range, so a request crossing midnight is accepted
when every calendar day it touches is covered.
"""

import logging
from collections.abc import Collection, Iterable
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from encore_booking.config import settings
from encore_booking.schemas.booking_schema import SLOT_HOLDING_STATUSES, Booking, BookingStatus
from encore_booking.schemas.expert_schema import ExpertAvailability
from encore_booking.utils import ensure_utc

logger = logging.getLogger(__name__)

Range = tuple[datetime, datetime]


def _availability_weekday(day: date) -> int:
    """Sunday=0 numbering used by stored availability."""
    return (day.weekday() + 1) % 7


def _at_hour(day: date, hour: int, zone: ZoneInfo) -> datetime:
    if hour == 24:
        day, hour = day + timedelta(days=1), 0
    return datetime.combine(day, time(hour), tzinfo=zone).astimezone(timezone.utc)


def _merge(ranges: list[Range]) -> list[Range]:
    merged: list[Range] = []
    for start, end in sorted(ranges):
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def available_ranges(
    availability: ExpertAvailability, first_day: date, last_day: date
) -> list[Range]:
    """Merged UTC ranges of recurring availability for local days in ``[first_day, last_day]``."""
    zone = availability.zone
    ranges: list[Range] = []
    day = first_day
    while day <= last_day:
        for interval in availability.intervals_for(_availability_weekday(day)):
            ranges.append((_at_hour(day, interval.start, zone), _at_hour(day, interval.end, zone)))
        day += timedelta(days=1)
    return _merge(ranges)


def _ceil_to_minute(value: datetime) -> datetime:
    floored = value.replace(second=0, microsecond=0)
    return floored if floored == value else floored + timedelta(minutes=1)


def conflicting_bookings(
    existing: Iterable[Booking],
    start: datetime,
    end: datetime,
    holding_statuses: Collection[BookingStatus] = SLOT_HOLDING_STATUSES,
) -> list[Booking]:
    """Bookings in a slot-holding status whose interval overlaps ``[start, end)``."""
    return [b for b in existing if b.status in holding_statuses and b.overlaps(start, end)]


def within_availability(
    availability: ExpertAvailability, start: datetime, end: datetime
) -> bool:
    start, end = ensure_utc(start), ensure_utc(end)
    if end <= start:
        return False
    zone = availability.zone
    # One day of padding on each side lets ranges from adjacent days merge.
    first = start.astimezone(zone).date() - timedelta(days=1)
    last = end.astimezone(zone).date() + timedelta(days=1)
    return any(
        r_start <= start and end <= r_end
        for r_start, r_end in available_ranges(availability, first, last)
    )


def is_bookable(
    availability: ExpertAvailability,
    existing: Iterable[Booking],
    requested_start: datetime,
    requested_end: datetime,
) -> bool:
    """True if the interval is inside availability and free of slot-holding bookings."""
    if not within_availability(availability, requested_start, requested_end):
        return False
    start, end = ensure_utc(requested_start), ensure_utc(requested_end)
    return not conflicting_bookings(existing, start, end)


def next_available_slot(
    availability: ExpertAvailability,
    existing: Iterable[Booking],
    from_: datetime,
    min_duration: Optional[timedelta] = None,
    horizon_days: Optional[int] = None,
) -> Optional[datetime]:
    """
    First whole-minute instant at or after ``from_`` where a booking of
    ``min_duration`` would be accepted, or None within ``horizon_days``.
    """
    duration = min_duration or timedelta(minutes=settings.scheduling.min_slot_minutes)
    horizon = horizon_days if horizon_days is not None else settings.scheduling.horizon_days
    start = _ceil_to_minute(ensure_utc(from_))
    horizon_end = start + timedelta(days=horizon)

    zone = availability.zone
    ranges = available_ranges(
        availability,
        start.astimezone(zone).date() - timedelta(days=1),
        horizon_end.astimezone(zone).date() + timedelta(days=1),
    )
    busy = [
        (b.scheduled_start, b.scheduled_end)
        for b in existing
        if b.status in SLOT_HOLDING_STATUSES
    ]

    for r_start, r_end in ranges:
        if r_end <= start:
            continue
        candidate = _ceil_to_minute(max(r_start, start))
        while candidate < horizon_end and candidate + duration <= r_end:
            blockers = [b_end for b_start, b_end in busy
                        if b_start < candidate + duration and candidate < b_end]
            if not blockers:
                return candidate
            candidate = _ceil_to_minute(max(blockers))
        if r_start >= horizon_end:
            break

    logger.debug("No slot of %s found within %d days of %s", duration, horizon, start.isoformat())
    return None


def free_windows(
    availability: ExpertAvailability,
    existing: Iterable[Booking],
    from_: datetime,
    until: datetime,
    min_duration: Optional[timedelta] = None,
) -> list[Range]:
    """Bookable windows between ``from_`` and ``until``, each at least ``min_duration`` long."""
    duration = min_duration or timedelta(minutes=settings.scheduling.min_slot_minutes)
    start, stop = _ceil_to_minute(ensure_utc(from_)), ensure_utc(until)
    if stop <= start:
        return []

    zone = availability.zone
    ranges = available_ranges(
        availability,
        start.astimezone(zone).date() - timedelta(days=1),
        stop.astimezone(zone).date() + timedelta(days=1),
    )
    busy = sorted(
        (b.scheduled_start, b.scheduled_end)
        for b in existing
        if b.status in SLOT_HOLDING_STATUSES
    )

    windows: list[Range] = []
    for r_start, r_end in ranges:
        cursor, limit = max(r_start, start), min(r_end, stop)
        for b_start, b_end in busy:
            if b_end <= cursor or b_start >= limit:
                continue
            if b_start - cursor >= duration:
                windows.append((cursor, b_start))
            cursor = max(cursor, b_end)
        if limit - cursor >= duration:
            windows.append((cursor, limit))
    return windows
