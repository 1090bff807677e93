"""
Booking ledger contract.

The ledger is the only component that persists booking state and the only
one that must be atomic. Two guarantees hold for every implementation:

* no two bookings of the same expert hold overlapping slots at once; the
  overlap re-check and the insert run as one step serialized per expert;
* a transition applies its status and field set entirely or not at all, and
  only if the persisted status still equals the caller's expected status.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from encore_booking.errors import BookingNotFound, SlotUnavailable, ValidationError
from encore_booking.schemas.booking_schema import SLOT_HOLDING_STATUSES, Booking, BookingStatus
from encore_booking.scheduling.availability import conflicting_bookings

logger = logging.getLogger(__name__)

# Receives the expert's slot-holding bookings, returns True if the new booking may go in.
ConflictCheck = Callable[[Sequence[Booking]], bool]

TRANSITION_FIELDS: frozenset[str] = frozenset({
    "actual_start",
    "actual_end",
    "price_cents_total",
    "expert_net_cents",
    "captured_cents",
    "confirmed_at",
    "completed_at",
    "cancelled_at",
    "cancelled_by",
})


class ExpertLocks:
    """Per-expert mutexes, created on first use."""

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, expert_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(expert_id)
            if lock is None:
                lock = self._locks[expert_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, expert_id: str) -> Iterator[None]:
        with self.lock_for(expert_id):
            yield


def ensure_insertable(
    booking: Booking,
    existing: Sequence[Booking],
    conflict_check: Optional[ConflictCheck] = None,
) -> None:
    """Raise SlotUnavailable if ``booking`` cannot join ``existing``."""
    clashes = conflicting_bookings(existing, booking.scheduled_start, booking.scheduled_end)
    if clashes:
        raise SlotUnavailable(
            f"Expert {booking.expert_id} is already booked between "
            f"{booking.scheduled_start.isoformat()} and {booking.scheduled_end.isoformat()}",
            details={"conflicting_booking_ids": [b.id for b in clashes]},
        )
    if conflict_check is not None and not conflict_check(existing):
        raise SlotUnavailable(
            f"Requested slot for expert {booking.expert_id} is no longer available"
        )


def apply_transition(
    current: Booking, new_status: BookingStatus, fields: Optional[dict[str, Any]]
) -> Booking:
    """Validated copy of ``current`` moved to ``new_status`` with ``fields`` set."""
    fields = dict(fields or {})
    unknown = set(fields) - TRANSITION_FIELDS
    if unknown:
        raise ValidationError(
            f"Fields cannot be changed by a transition: {sorted(unknown)}",
            details={"fields": sorted(unknown)},
        )
    try:
        return current.with_changes(status=new_status, **fields)
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Transition of booking {current.id} would break an invariant: {exc}"
        ) from exc


class BookingLedger(ABC):
    """Persistence boundary for bookings."""

    @abstractmethod
    def get(self, booking_id: str) -> Optional[Booking]:
        ...

    def require(self, booking_id: str) -> Booking:
        booking = self.get(booking_id)
        if booking is None:
            raise BookingNotFound(f"Booking {booking_id} not found", details={"booking_id": booking_id})
        return booking

    @abstractmethod
    def snapshot_for_expert(self, expert_id: str) -> list[Booking]:
        """Slot-holding bookings of an expert, read without locking (may be stale)."""

    @abstractmethod
    def list_for_party(
        self,
        party_id: str,
        status: Optional[BookingStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Booking]:
        """Bookings where ``party_id`` is the client or the expert, newest start first."""

    @abstractmethod
    def list_by_status(self, status: BookingStatus) -> list[Booking]:
        ...

    @abstractmethod
    def create_if_available(
        self, booking: Booking, conflict_check: Optional[ConflictCheck] = None
    ) -> Booking:
        """
        Insert ``booking`` if its slot is still free.

        Raises:
            SlotUnavailable: If a slot-holding booking overlaps, or
                ``conflict_check`` rejects the expert's current bookings.
        """

    @abstractmethod
    def transition(
        self,
        booking_id: str,
        expected_status: BookingStatus,
        new_status: BookingStatus,
        fields: Optional[dict[str, Any]] = None,
    ) -> Booking:
        """
        Move a booking from ``expected_status`` to ``new_status``.

        Raises:
            BookingNotFound: If the booking does not exist.
            StateConflictError: If the persisted status is not ``expected_status``.
        """


def is_slot_holding(booking: Booking) -> bool:
    return booking.status in SLOT_HOLDING_STATUSES
