"""Selection of confirmed bookings due a pre-session reminder."""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from encore_booking.schemas.booking_schema import Booking, BookingStatus


@dataclass(frozen=True)
class DueReminder:
    booking: Booking
    hours_before: int


def due_reminders(
    bookings: Iterable[Booking],
    now: datetime,
    reminder_hours: Sequence[int],
    sweep: timedelta,
) -> list[DueReminder]:
    """
    Reminders to send in a sweep that runs every ``sweep``.

    A reminder for ``h`` hours is due when the session starts in
    ``(h - sweep, h]`` from ``now``, so a sweeper running at a steady
    interval sends each reminder once.
    """
    due: list[DueReminder] = []
    for booking in bookings:
        if booking.status != BookingStatus.CONFIRMED:
            continue
        until_start = booking.scheduled_start - now
        for hours in sorted(reminder_hours, reverse=True):
            lead = timedelta(hours=hours)
            if lead - sweep < until_start <= lead:
                due.append(DueReminder(booking=booking, hours_before=hours))
    return due
