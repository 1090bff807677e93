"""
Typed errors raised by the booking core.

Each error tells the caller what kind of failure happened so the calling
layer can choose its reaction: re-query availability after a lost slot,
retry a failed payment step, re-fetch after a concurrent transition, or
give up on a malformed request. The core never retries on its own.
"""

from typing import Any, Optional


class BookingError(Exception):
    """Base class for every error raised by the booking core."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(BookingError):
    """Malformed request. Not retried."""


class InvalidDuration(ValidationError):
    """No published fixed tier covers the requested duration."""


class InvalidActualWindow(ValidationError):
    """Recorded session end is not after its start."""


class ExpertNotFound(BookingError):
    """Unknown or inactive expert."""


class BookingNotFound(BookingError):
    """No booking with the given id."""


class NotAuthorized(BookingError):
    """Caller is not a participant of the booking and not an admin."""


class ConflictError(BookingError):
    """Requested interval collides with a slot-holding booking."""


class SlotUnavailable(ConflictError):
    """Slot is outside availability or already taken; pick another slot."""


class InvalidTransition(BookingError):
    """Lifecycle does not allow this transition from the current status."""


class StateConflictError(BookingError):
    """Persisted status changed underneath an optimistic transition."""

    def __init__(self, message: str, current_status: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.current_status = current_status
        self.details.setdefault("current_status", current_status)


class PaymentFailure(BookingError):
    """Payment collaborator failed; the booking stays in its last committed state."""

    def __init__(self, message: str, reason: str = "", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason
        self.details.setdefault("reason", reason)


class PaymentAuthorizationFailed(PaymentFailure):
    pass


class PaymentCaptureFailed(PaymentFailure):
    pass


class PaymentVoidFailed(PaymentFailure):
    pass
