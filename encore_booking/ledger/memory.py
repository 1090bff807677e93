"""
In-process booking ledger.

Serializes all writes for one expert behind that expert's mutex. Suitable
for a single worker process, local development and tests; multi-process
deployments use ``SqlBookingLedger``.
"""

import logging
import threading
from typing import Any, Optional

from encore_booking.errors import StateConflictError, ValidationError
from encore_booking.ledger.base import (
    BookingLedger,
    ConflictCheck,
    ExpertLocks,
    apply_transition,
    ensure_insertable,
    is_slot_holding,
)
from encore_booking.schemas.booking_schema import Booking, BookingStatus

logger = logging.getLogger(__name__)


class InMemoryBookingLedger(BookingLedger):
    """Dict-backed ledger with per-expert locking."""

    def __init__(self) -> None:
        self._bookings: dict[str, Booking] = {}
        self._store_lock = threading.Lock()
        self._locks = ExpertLocks()

    def _all(self) -> list[Booking]:
        with self._store_lock:
            return list(self._bookings.values())

    def get(self, booking_id: str) -> Optional[Booking]:
        with self._store_lock:
            return self._bookings.get(booking_id)

    def snapshot_for_expert(self, expert_id: str) -> list[Booking]:
        return [b for b in self._all() if b.expert_id == expert_id and is_slot_holding(b)]

    def list_for_party(
        self,
        party_id: str,
        status: Optional[BookingStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Booking]:
        matches = [
            b for b in self._all()
            if party_id in (b.client_id, b.expert_id) and (status is None or b.status == status)
        ]
        matches.sort(key=lambda b: b.scheduled_start, reverse=True)
        return matches[offset:offset + limit]

    def list_by_status(self, status: BookingStatus) -> list[Booking]:
        return sorted(
            (b for b in self._all() if b.status == status),
            key=lambda b: b.scheduled_start,
        )

    def create_if_available(
        self, booking: Booking, conflict_check: Optional[ConflictCheck] = None
    ) -> Booking:
        with self._locks.hold(booking.expert_id):
            if self.get(booking.id) is not None:
                raise ValidationError(f"Booking {booking.id} already exists")
            ensure_insertable(booking, self.snapshot_for_expert(booking.expert_id), conflict_check)
            with self._store_lock:
                self._bookings[booking.id] = booking
        logger.info(
            "Booking %s stored for expert %s (%s - %s)",
            booking.id, booking.expert_id,
            booking.scheduled_start.isoformat(), booking.scheduled_end.isoformat(),
        )
        return booking

    def transition(
        self,
        booking_id: str,
        expected_status: BookingStatus,
        new_status: BookingStatus,
        fields: Optional[dict[str, Any]] = None,
    ) -> Booking:
        expert_id = self.require(booking_id).expert_id
        with self._locks.hold(expert_id):
            current = self.require(booking_id)
            if current.status != expected_status:
                raise StateConflictError(
                    f"Booking {booking_id} is '{current.status.value}', "
                    f"expected '{expected_status.value}'",
                    current_status=current.status.value,
                )
            updated = apply_transition(current, new_status, fields)
            with self._store_lock:
                self._bookings[booking_id] = updated
        logger.debug("Booking %s: %s -> %s", booking_id, expected_status.value, new_status.value)
        return updated

    def reset(self) -> None:
        """Clear all bookings. Used by test fixtures for isolation."""
        with self._store_lock:
            self._bookings.clear()
