"""
Notification collaborator interface.

Delivery (e-mail, SMS, push) lives outside the core. The core only emits
events, and a failing notifier must never undo a booking change, so every
dispatch goes through ``notify_safely``.
"""

import logging
from enum import Enum
from typing import Any, Protocol

from encore_booking.schemas.booking_schema import Booking

logger = logging.getLogger(__name__)


class BookingEvent(str, Enum):
    """Events the core reports to the notification collaborator."""
    CREATED = "created"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    REMINDER = "reminder"
    PAYMENT_FAILED = "payment_failed"


class Notifier(Protocol):
    def notify(self, event: BookingEvent, booking: Booking, **context: Any) -> None:
        ...


class LoggingNotifier:
    """Writes events to the log; the default when no delivery channel is wired."""

    def notify(self, event: BookingEvent, booking: Booking, **context: Any) -> None:
        logger.info(
            "Notification %s for booking %s (client=%s, expert=%s) %s",
            event.value, booking.id, booking.client_id, booking.expert_id, context or "",
        )


class RecordingNotifier:
    """Keeps every event in memory, in order."""

    def __init__(self) -> None:
        self.events: list[tuple[BookingEvent, str, dict[str, Any]]] = []

    def notify(self, event: BookingEvent, booking: Booking, **context: Any) -> None:
        self.events.append((event, booking.id, dict(context)))

    def of_type(self, event: BookingEvent) -> list[tuple[BookingEvent, str, dict[str, Any]]]:
        return [e for e in self.events if e[0] == event]


def notify_safely(notifier: Notifier, event: BookingEvent, booking: Booking, **context: Any) -> bool:
    """Deliver ``event``; log and swallow any failure. Returns True on success."""
    try:
        notifier.notify(event, booking, **context)
        return True
    except Exception:
        logger.exception("Notification %s for booking %s failed", event.value, booking.id)
        return False
