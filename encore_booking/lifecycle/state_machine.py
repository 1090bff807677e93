"""
Transition table for the booking lifecycle.

    requested --confirm--> confirmed --start--> in_progress --complete--> completed
        |                      |
        +------cancel----------+-----------------> cancelled

Every transition is listed explicitly. Asking for a trigger that has no
entry from the current status is rejected with the list of triggers that
would have been valid. Asking again for the status a booking already has
is a no-op, so upstream callers can retry safely.

Usage:
    target = BookingLifecycle.next_status(BookingStatus.REQUESTED, LifecycleTrigger.CONFIRM)
    assert target == BookingStatus.CONFIRMED
"""

import logging
from dataclasses import dataclass
from enum import Enum

from encore_booking.errors import InvalidTransition
from encore_booking.schemas.booking_schema import BookingStatus

logger = logging.getLogger(__name__)


class LifecycleTrigger(str, Enum):
    """Operations that move a booking between statuses."""
    CONFIRM = "confirm"
    START = "start"
    COMPLETE = "complete"
    CANCEL = "cancel"


@dataclass(frozen=True)
class Transition:
    """A single valid status transition."""
    from_status: BookingStatus
    to_status: BookingStatus
    trigger: LifecycleTrigger


TRIGGER_TARGETS: dict[LifecycleTrigger, BookingStatus] = {
    LifecycleTrigger.CONFIRM: BookingStatus.CONFIRMED,
    LifecycleTrigger.START: BookingStatus.IN_PROGRESS,
    LifecycleTrigger.COMPLETE: BookingStatus.COMPLETED,
    LifecycleTrigger.CANCEL: BookingStatus.CANCELLED,
}

TERMINAL_STATUSES: frozenset[BookingStatus] = frozenset({
    BookingStatus.COMPLETED,
    BookingStatus.CANCELLED,
})


class BookingLifecycle:
    """Static lookups over the booking transition table."""

    TRANSITIONS: list[Transition] = [
        # --- Forward path ---
        Transition(BookingStatus.REQUESTED, BookingStatus.CONFIRMED, LifecycleTrigger.CONFIRM),
        Transition(BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS, LifecycleTrigger.START),
        Transition(BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED, LifecycleTrigger.COMPLETE),

        # --- Cancellation, only before the session starts ---
        Transition(BookingStatus.REQUESTED, BookingStatus.CANCELLED, LifecycleTrigger.CANCEL),
        Transition(BookingStatus.CONFIRMED, BookingStatus.CANCELLED, LifecycleTrigger.CANCEL),
    ]

    @classmethod
    def is_noop(cls, current: BookingStatus, trigger: LifecycleTrigger) -> bool:
        """True when the booking already sits in the trigger's target status."""
        return TRIGGER_TARGETS[trigger] == current

    @classmethod
    def next_status(cls, current: BookingStatus, trigger: LifecycleTrigger) -> BookingStatus:
        """
        Resolve the status ``trigger`` leads to from ``current``.

        Raises:
            InvalidTransition: If the table has no such transition and the
                booking is not already in the target status.
        """
        if cls.is_noop(current, trigger):
            return current
        for t in cls.TRANSITIONS:
            if t.from_status == current and t.trigger == trigger:
                logger.debug(
                    "Lifecycle transition: %s -> %s (trigger: %s)",
                    current.value, t.to_status.value, trigger.value,
                )
                return t.to_status

        valid = [t.value for t in cls.valid_triggers(current)]
        raise InvalidTransition(
            f"Cannot {trigger.value} a booking that is '{current.value}'. "
            f"Valid triggers: {valid}",
            details={"current_status": current.value, "trigger": trigger.value},
        )

    @classmethod
    def valid_triggers(cls, current: BookingStatus) -> list[LifecycleTrigger]:
        """Return all triggers valid from ``current``."""
        return [t.trigger for t in cls.TRANSITIONS if t.from_status == current]

    @classmethod
    def trigger_for(cls, target: BookingStatus) -> LifecycleTrigger:
        for trigger, status in TRIGGER_TARGETS.items():
            if status == target:
                return trigger
        raise InvalidTransition(f"No trigger leads to '{target.value}'")

    @staticmethod
    def is_terminal(status: BookingStatus) -> bool:
        return status in TERMINAL_STATUSES
