"""
Booking lifecycle operations: create, confirm, start, complete, cancel.

``BookingService`` wires the pricing calculator, the availability checker,
the ledger and the external collaborators together. All collaborators are
passed in at construction; nothing is looked up from module globals.

Ordering rules:
    * create authorizes payment first, then persists; if persisting fails
      (lost slot race, crash, cancellation) the authorization is released.
    * complete captures first, then persists; a failed capture leaves the
      booking ``in_progress`` so the capture can be retried.
    * cancel releases the payment first, then persists; a failed release
      leaves the booking in its previous status.

Payment calls run on a small worker pool and are bounded by the configured
timeouts. The service never retries; every failure is raised to the caller
as a typed error from ``encore_booking.errors``.
"""

import contextvars
import uuid
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional, TypeVar, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from encore_booking.config import NotificationConfig, PaymentConfig, SchedulingConfig, settings
from encore_booking.errors import (
    InvalidActualWindow,
    NotAuthorized,
    PaymentAuthorizationFailed,
    PaymentCaptureFailed,
    PaymentVoidFailed,
    SlotUnavailable,
    StateConflictError,
    ValidationError,
)
from encore_booking.experts import ExpertDirectory, require_active_expert
from encore_booking.ledger.base import BookingLedger
from encore_booking.lifecycle.reminders import due_reminders
from encore_booking.lifecycle.state_machine import BookingLifecycle, LifecycleTrigger
from encore_booking.logging_context import get_request_logger
from encore_booking.notifications.notifier import (
    BookingEvent,
    LoggingNotifier,
    Notifier,
    notify_safely,
)
from encore_booking.payments.gateway import (
    AuthorizationHandle,
    CaptureMode,
    CaptureReceipt,
    PaymentError,
    PaymentGateway,
)
from encore_booking.pricing.calculator import PricingCalculator, expert_net_cents
from encore_booking.scheduling import availability as checker
from encore_booking.schemas.booking_schema import (
    Actor,
    Booking,
    BookingStatus,
    CreateBookingCommand,
    PricingMode,
    TransitionCommand,
)
from encore_booking.utils import ensure_utc, utc_now

logger = get_request_logger(__name__)

CommandT = TypeVar("CommandT", bound=BaseModel)

MAX_PAGE_SIZE = 100

CANCELLABLE_STATUSES = frozenset({BookingStatus.REQUESTED, BookingStatus.CONFIRMED})


def _validated(model: type[CommandT], command: Union[CommandT, dict[str, Any]]) -> CommandT:
    """Accept a command object or its raw payload; raise the core ValidationError on bad input."""
    if isinstance(command, model):
        return command
    try:
        return model.model_validate(command)
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Invalid {model.__name__}: {exc.error_count()} error(s)",
            details={"errors": exc.errors(include_url=False)},
        ) from exc


def _capture_mode(mode: PricingMode) -> CaptureMode:
    return CaptureMode.AUTOMATIC if mode == PricingMode.FIXED else CaptureMode.MANUAL


def _handle_for(booking: Booking) -> AuthorizationHandle:
    """Rebuild the payment handle stored on a booking."""
    return AuthorizationHandle(
        id=booking.authorization_id,
        amount_cents=booking.price_cents_total,
        currency=booking.currency,
        capture_mode=_capture_mode(booking.mode),
    )


class BookingService:
    """Entry point for every booking operation."""

    def __init__(
        self,
        ledger: BookingLedger,
        payments: PaymentGateway,
        experts: ExpertDirectory,
        notifier: Optional[Notifier] = None,
        calculator: Optional[PricingCalculator] = None,
        clock: Callable[[], datetime] = utc_now,
        payment_config: Optional[PaymentConfig] = None,
        scheduling_config: Optional[SchedulingConfig] = None,
        notification_config: Optional[NotificationConfig] = None,
    ) -> None:
        self.ledger = ledger
        self.payments = payments
        self.experts = experts
        self.notifier = notifier or LoggingNotifier()
        self.calculator = calculator or PricingCalculator()
        self.clock = clock
        self.payment_config = payment_config or settings.payments
        self.scheduling_config = scheduling_config or settings.scheduling
        self.notification_config = notification_config or settings.notifications
        self._executor = ThreadPoolExecutor(
            max_workers=self.payment_config.max_workers,
            thread_name_prefix="payments",
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def __enter__(self) -> "BookingService":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _now(self) -> datetime:
        return ensure_utc(self.clock())

    # ------------------------------------------------------------------
    # Payment calls
    # ------------------------------------------------------------------

    def _authorize(
        self, booking_id: str, amount_cents: int, currency: str, mode: PricingMode,
        metadata: dict[str, Any],
    ) -> AuthorizationHandle:
        future = self._submit(
            self.payments.authorize, amount_cents, currency, metadata, _capture_mode(mode)
        )
        try:
            return future.result(timeout=self.payment_config.authorize_timeout_sec)
        except FuturesTimeout:
            # The hold may still land; release it when it does.
            future.add_done_callback(self._release_late_authorization)
            logger.warning("Authorization for booking %s timed out", booking_id)
            raise PaymentAuthorizationFailed(
                f"Payment authorization for booking {booking_id} timed out", reason="timeout"
            ) from None
        except PaymentError as exc:
            logger.warning("Authorization for booking %s failed: %s", booking_id, exc.reason)
            raise PaymentAuthorizationFailed(
                f"Payment authorization for booking {booking_id} failed", reason=exc.reason
            ) from exc

    def _release_late_authorization(self, future: "Future[AuthorizationHandle]") -> None:
        if future.cancelled() or future.exception() is not None:
            return
        handle = future.result()
        logger.warning("Releasing authorization %s that arrived after its timeout", handle.id)
        self._release_quietly(handle)

    def _release_quietly(self, handle: AuthorizationHandle) -> None:
        """Best-effort release of a hold that no booking will own."""
        try:
            self.payments.void(handle)
        except PaymentError as exc:
            logger.error(
                "Orphaned authorization %s could not be released: %s", handle.id, exc.reason
            )

    def _submit(self, fn: Callable[..., Any], *args: Any) -> "Future[Any]":
        # Worker threads see the caller's request id in their log records.
        context = contextvars.copy_context()
        return self._executor.submit(context.run, fn, *args)

    def _run_bounded(self, fn: Callable[..., Any], *args: Any) -> Any:
        future = self._submit(fn, *args)
        try:
            return future.result(timeout=self.payment_config.capture_timeout_sec)
        except FuturesTimeout:
            raise PaymentError("timeout") from None

    def _capture(self, booking: Booking, amount_cents: int) -> CaptureReceipt:
        try:
            return self._run_bounded(self.payments.capture, _handle_for(booking), amount_cents)
        except PaymentError as exc:
            logger.warning("Capture of %d on booking %s failed: %s", amount_cents, booking.id, exc.reason)
            notify_safely(self.notifier, BookingEvent.PAYMENT_FAILED, booking, reason=exc.reason)
            raise PaymentCaptureFailed(
                f"Payment capture for booking {booking.id} failed", reason=exc.reason
            ) from exc

    def _release(self, booking: Booking) -> None:
        try:
            self._run_bounded(self.payments.void, _handle_for(booking))
        except PaymentError as exc:
            logger.warning("Release of payment for booking %s failed: %s", booking.id, exc.reason)
            raise PaymentVoidFailed(
                f"Could not release payment for booking {booking.id}", reason=exc.reason
            ) from exc

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_with_payment(
        self, command: Union[CreateBookingCommand, dict[str, Any]]
    ) -> tuple[Booking, AuthorizationHandle]:
        """Create a booking and return it with its payment handle (carries the client secret)."""
        command = _validated(CreateBookingCommand, command)
        profile = require_active_expert(self.experts, command.expert_id)
        now = self._now()
        if command.scheduled_start <= now:
            raise ValidationError("scheduled_start must be in the future")

        start, end = command.scheduled_start, command.scheduled_end

        def slot_is_free(existing: Sequence[Booking]) -> bool:
            return checker.is_bookable(profile.availability, existing, start, end)

        # Advisory only; the ledger re-checks under its lock.
        if not slot_is_free(self.ledger.snapshot_for_expert(command.expert_id)):
            raise SlotUnavailable(
                f"Expert {command.expert_id} is not available between "
                f"{start.isoformat()} and {end.isoformat()}"
            )

        quote = self.calculator.quote(
            command.mode,
            Decimal(str(command.duration.total_seconds())) / 60,
            profile.rates,
            lead_time_hours=(start - now).total_seconds() / 3600,
            commission_pct=profile.commission_pct,
        )
        booking_id = str(uuid.uuid4())
        currency = command.currency or self.payment_config.currency
        handle = self._authorize(
            booking_id, quote.price_cents_total, currency, command.mode,
            metadata={
                "booking_id": booking_id,
                "client_id": command.client_id,
                "expert_id": command.expert_id,
                "mode": command.mode.value,
            },
        )

        try:
            booking = Booking(
                id=booking_id,
                client_id=command.client_id,
                expert_id=command.expert_id,
                mode=command.mode,
                status=BookingStatus.REQUESTED,
                scheduled_start=start,
                scheduled_end=end,
                price_cents_total=quote.price_cents_total,
                commission_pct=quote.commission_pct,
                expert_net_cents=quote.expert_net_cents,
                rate_cents_per_minute=quote.rate_cents_per_minute,
                rush_applied=quote.rush_applied,
                currency=currency,
                authorization_id=handle.id,
                captured_cents=quote.price_cents_total if handle.capture_mode == CaptureMode.AUTOMATIC else None,
                category_id=command.category_id,
                created_at=now,
            )
            stored = self.ledger.create_if_available(booking, slot_is_free)
        except BaseException:
            logger.info("Booking %s not persisted; releasing authorization %s", booking_id, handle.id)
            self._release_quietly(handle)
            raise

        logger.info(
            "Booking %s requested: %s %d cents (rush=%s) for expert %s",
            stored.id, stored.mode.value, stored.price_cents_total, stored.rush_applied, stored.expert_id,
        )
        notify_safely(self.notifier, BookingEvent.CREATED, stored)
        return stored, handle

    def create(self, command: Union[CreateBookingCommand, dict[str, Any]]) -> Booking:
        return self.create_with_payment(command)[0]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(
        self, booking: Booking, target: BookingStatus, fields: dict[str, Any]
    ) -> Booking:
        try:
            return self.ledger.transition(booking.id, booking.status, target, fields)
        except StateConflictError:
            latest = self.ledger.require(booking.id)
            if latest.status == target:
                # Another caller made the same transition first.
                return latest
            raise

    def confirm(self, booking_id: str) -> Booking:
        booking = self.ledger.require(booking_id)
        target = BookingLifecycle.next_status(booking.status, LifecycleTrigger.CONFIRM)
        if target == booking.status:
            return booking
        updated = self._transition(booking, target, {"confirmed_at": self._now()})
        notify_safely(self.notifier, BookingEvent.CONFIRMED, updated)
        return updated

    def start(self, booking_id: str, actual_start: datetime) -> Booking:
        booking = self.ledger.require(booking_id)
        target = BookingLifecycle.next_status(booking.status, LifecycleTrigger.START)
        if target == booking.status:
            return booking
        updated = self._transition(booking, target, {"actual_start": ensure_utc(actual_start)})
        logger.info("Booking %s started at %s", booking_id, updated.actual_start)
        return updated

    def complete(self, booking_id: str, actual_end: datetime) -> Booking:
        booking = self.ledger.require(booking_id)
        target = BookingLifecycle.next_status(booking.status, LifecycleTrigger.COMPLETE)
        if target == booking.status:
            return booking

        actual_end = ensure_utc(actual_end)
        actual_start = booking.actual_start or booking.scheduled_start
        if actual_end <= actual_start:
            raise InvalidActualWindow(
                f"actual_end ({actual_end.isoformat()}) must be after "
                f"actual_start ({actual_start.isoformat()})"
            )
        fields: dict[str, Any] = {"actual_end": actual_end, "completed_at": self._now()}

        if booking.mode == PricingMode.PER_MINUTE:
            quote = self.calculator.reconcile(
                actual_start,
                actual_end,
                booking.rate_cents_per_minute,
                booking.commission_pct,
                rush_applied=booking.rush_applied,
            )
            amount = min(quote.price_cents_total, booking.price_cents_total)
            try:
                receipt = self._capture(booking, amount)
            except PaymentCaptureFailed:
                latest = self.ledger.require(booking_id)
                if latest.status == target:
                    return latest
                raise
            # A retry after a timed-out capture reports what was actually charged.
            amount = receipt.amount_cents
            fields.update(
                price_cents_total=amount,
                expert_net_cents=expert_net_cents(amount, booking.commission_pct),
                captured_cents=amount,
            )
            logger.info(
                "Booking %s reconciled: %d billed minutes, captured %d of %d cents",
                booking_id, quote.billed_minutes, amount, booking.price_cents_total,
            )

        updated = self._transition(booking, target, fields)
        notify_safely(self.notifier, BookingEvent.COMPLETED, updated)
        return updated

    def cancel(self, booking_id: str, actor: Actor) -> Booking:
        booking = self.ledger.require(booking_id)
        if not booking.can_be_accessed_by(actor):
            raise NotAuthorized(f"{actor.role.value} {actor.id} cannot cancel booking {booking_id}")
        target = BookingLifecycle.next_status(booking.status, LifecycleTrigger.CANCEL)
        if target == booking.status:
            return booking

        self._release(booking)
        fields = {"cancelled_at": self._now(), "cancelled_by": actor.id}
        while True:
            try:
                updated = self.ledger.transition(booking_id, booking.status, target, fields)
                break
            except StateConflictError as exc:
                booking = self.ledger.require(booking_id)
                if booking.status == target:
                    return booking
                if booking.status not in CANCELLABLE_STATUSES:
                    logger.error(
                        "Payment for booking %s was released but the booking moved to '%s' first",
                        booking_id, booking.status.value,
                    )
                    raise StateConflictError(
                        f"Booking {booking_id} moved to '{booking.status.value}' during cancel",
                        current_status=booking.status.value,
                    ) from exc
                # Confirmed underneath us; the payment is already released, so cancel anyway.
                logger.info(
                    "Booking %s moved to '%s' during cancel; retrying", booking_id, booking.status.value
                )
        logger.info("Booking %s cancelled by %s %s", booking_id, actor.role.value, actor.id)
        notify_safely(self.notifier, BookingEvent.CANCELLED, updated, cancelled_by=actor.id)
        return updated

    def apply(self, command: Union[TransitionCommand, dict[str, Any]]) -> Booking:
        """Dispatch a typed transition command to the matching operation."""
        command = _validated(TransitionCommand, command)
        if command.target == BookingStatus.CONFIRMED:
            return self.confirm(command.booking_id)
        if command.target == BookingStatus.IN_PROGRESS:
            return self.start(command.booking_id, command.at)
        if command.target == BookingStatus.COMPLETED:
            return self.complete(command.booking_id, command.at)
        return self.cancel(command.booking_id, command.actor)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_booking(self, booking_id: str, actor: Actor) -> Booking:
        booking = self.ledger.require(booking_id)
        if not booking.can_be_accessed_by(actor):
            raise NotAuthorized(f"{actor.role.value} {actor.id} cannot view booking {booking_id}")
        return booking

    def list_bookings(
        self,
        actor: Actor,
        status: Optional[BookingStatus] = None,
        page: int = 1,
        limit: int = 20,
    ) -> list[Booking]:
        if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}")
        return self.ledger.list_for_party(actor.id, status=status, limit=limit, offset=(page - 1) * limit)

    def next_available_slot(
        self, expert_id: str, from_: Optional[datetime] = None
    ) -> Optional[datetime]:
        profile = require_active_expert(self.experts, expert_id)
        return checker.next_available_slot(
            profile.availability,
            self.ledger.snapshot_for_expert(expert_id),
            from_ or self._now(),
            min_duration=timedelta(minutes=self.scheduling_config.min_slot_minutes),
            horizon_days=self.scheduling_config.horizon_days,
        )

    def free_windows(
        self, expert_id: str, from_: datetime, until: datetime
    ) -> list[tuple[datetime, datetime]]:
        profile = require_active_expert(self.experts, expert_id)
        return checker.free_windows(
            profile.availability,
            self.ledger.snapshot_for_expert(expert_id),
            from_,
            until,
            min_duration=timedelta(minutes=self.scheduling_config.min_slot_minutes),
        )

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    def send_due_reminders(self, now: Optional[datetime] = None) -> int:
        """Notify reminders for confirmed sessions entering a reminder window."""
        now = ensure_utc(now) if now is not None else self._now()
        due = due_reminders(
            self.ledger.list_by_status(BookingStatus.CONFIRMED),
            now,
            self.notification_config.reminder_hours,
            timedelta(minutes=self.notification_config.reminder_sweep_minutes),
        )
        for reminder in due:
            notify_safely(
                self.notifier, BookingEvent.REMINDER, reminder.booking,
                hours_before=reminder.hours_before,
            )
        if due:
            logger.info("Sent %d booking reminder(s)", len(due))
        return len(due)
