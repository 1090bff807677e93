"""Integration tests: pricing + availability + ledger + payments through BookingService."""

import contextvars
import threading
import time
from datetime import timedelta

import pytest

from encore_booking.config import PaymentConfig
from encore_booking.errors import (
    ExpertNotFound,
    InvalidActualWindow,
    InvalidDuration,
    InvalidTransition,
    NotAuthorized,
    PaymentAuthorizationFailed,
    PaymentCaptureFailed,
    PaymentVoidFailed,
    SlotUnavailable,
    StateConflictError,
    ValidationError,
)
from encore_booking.lifecycle.booking_service import BookingService
from encore_booking.logging_context import get_request_id, set_request_id
from encore_booking.notifications.notifier import BookingEvent
from encore_booking.payments.gateway import CaptureMode
from encore_booking.payments.memory import InMemoryPaymentGateway
from encore_booking.schemas.booking_schema import (
    Actor,
    ActorRole,
    BookingStatus,
    PricingMode,
)

from tests.conftest import (
    CLIENT_ID,
    MONDAY,
    NOW,
    make_command,
    make_expert,
    monday_at,
)


def run_to_in_progress(service, booking_id, started=None):
    service.confirm(booking_id)
    return service.start(booking_id, started or monday_at(10))


class TestCreate:
    def test_fixed_booking_is_requested_and_priced(self, service, payments, notifier):
        booking = service.create(make_command())
        assert booking.status == BookingStatus.REQUESTED
        assert booking.price_cents_total == 3200
        assert booking.expert_net_cents == 2560
        assert booking.commission_pct == 20.0
        assert not booking.rush_applied
        assert booking.captured_cents == 3200
        assert payments.status_of(booking.authorization_id) == "captured"
        assert notifier.of_type(BookingEvent.CREATED)[0][1] == booking.id

    def test_per_minute_booking_holds_full_estimate(self, service, payments):
        booking = service.create(make_command(mode=PricingMode.PER_MINUTE))
        assert booking.price_cents_total == 18000
        assert booking.rate_cents_per_minute == 600
        assert booking.captured_cents is None
        assert payments.status_of(booking.authorization_id) == "authorized"

    def test_rush_booking(self, service, clock):
        clock.now = MONDAY - timedelta(hours=12)
        booking = service.create(make_command())
        assert booking.rush_applied
        assert booking.price_cents_total == 3520

    def test_expert_commission_override(self, service, experts):
        experts.upsert(make_expert(commission_pct=15))
        booking = service.create(make_command())
        assert booking.commission_pct == 15
        assert booking.expert_net_cents == 2720

    def test_handle_carries_client_secret(self, service):
        booking, handle = service.create_with_payment(make_command())
        assert handle.id == booking.authorization_id
        assert handle.client_secret

    def test_authorization_metadata_names_booking(self, service, payments):
        booking = service.create(make_command())
        record = payments.records[booking.authorization_id]
        assert record.metadata["booking_id"] == booking.id
        assert record.metadata["expert_id"] == "exp-1"

    def test_overlapping_request_rejected(self, service, payments):
        service.create(make_command(monday_at(10), 30))
        with pytest.raises(SlotUnavailable):
            service.create(make_command(monday_at(10, 15), 30, client_id="client-2"))
        assert len(payments.records) == 1

    def test_outside_availability_rejected(self, service):
        with pytest.raises(SlotUnavailable):
            service.create(make_command(monday_at(18), 30))

    def test_duration_beyond_largest_tier(self, service, payments):
        with pytest.raises(InvalidDuration):
            service.create(make_command(monday_at(10), 70))
        assert payments.records == {}

    def test_start_in_past_rejected(self, service, clock):
        clock.now = monday_at(11)
        with pytest.raises(ValidationError):
            service.create(make_command(monday_at(10)))

    def test_unknown_expert(self, service):
        with pytest.raises(ExpertNotFound):
            service.create(make_command(expert_id="nobody"))

    def test_inactive_expert(self, service, experts):
        experts.upsert(make_expert(is_active=False))
        with pytest.raises(ExpertNotFound):
            service.create(make_command())

    def test_raw_payload_with_naive_datetime_rejected(self, service):
        with pytest.raises(ValidationError) as exc_info:
            service.create({
                "client_id": CLIENT_ID,
                "expert_id": "exp-1",
                "mode": "fixed",
                "scheduled_start": "2025-03-10T10:00:00",
                "scheduled_end": "2025-03-10T10:30:00",
            })
        assert exc_info.value.details["errors"]

    def test_raw_payload_accepted(self, service):
        booking = service.create({
            "client_id": CLIENT_ID,
            "expert_id": "exp-1",
            "mode": "per_minute",
            "scheduled_start": "2025-03-10T10:00:00Z",
            "scheduled_end": "2025-03-10T10:20:00Z",
        })
        assert booking.price_cents_total == 12000


class TestCreatePaymentOrdering:
    def test_authorization_failure_persists_nothing(self, service, ledger, payments):
        payments.fail_next("authorize", "card_declined")
        with pytest.raises(PaymentAuthorizationFailed) as exc_info:
            service.create(make_command())
        assert exc_info.value.reason == "card_declined"
        assert ledger.snapshot_for_expert("exp-1") == []

    def test_persistence_failure_releases_authorization(self, service, ledger, payments, monkeypatch):
        def broken(booking, conflict_check=None):
            raise RuntimeError("database went away")

        monkeypatch.setattr(ledger, "create_if_available", broken)
        with pytest.raises(RuntimeError):
            service.create(make_command())
        [record] = payments.records.values()
        assert record.status == "refunded"

    def test_lost_race_releases_authorization(self, service, ledger, payments, monkeypatch):
        real_create = ledger.create_if_available

        def sneak_in_first(booking, conflict_check=None):
            # Another request takes the slot between the advisory check and the insert.
            ledger.create_if_available = real_create
            real_create(booking.with_changes(id="other", client_id="client-2"))
            return real_create(booking, conflict_check)

        monkeypatch.setattr(ledger, "create_if_available", sneak_in_first)
        with pytest.raises(SlotUnavailable):
            service.create(make_command(mode=PricingMode.PER_MINUTE))
        statuses = sorted(r.status for r in payments.records.values())
        assert statuses == ["voided"]
        assert [b.id for b in ledger.snapshot_for_expert("exp-1")] == ["other"]

    def test_authorization_timeout(self, ledger, payments, experts, notifier, calculator, clock):
        config = PaymentConfig(
            provider="memory", currency="usd",
            authorize_timeout_sec=0.2, capture_timeout_sec=5.0, max_workers=2,
        )
        with BookingService(
            ledger=ledger, payments=payments, experts=experts, notifier=notifier,
            calculator=calculator, clock=clock, payment_config=config,
        ) as service:
            payments.delay_next("authorize", 0.6)
            with pytest.raises(PaymentAuthorizationFailed) as exc_info:
                service.create(make_command())
            assert exc_info.value.reason == "timeout"
            assert ledger.snapshot_for_expert("exp-1") == []

            # The late authorization is released once it lands.
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline:
                if payments.records and all(r.status == "refunded" for r in payments.records.values()):
                    break
                time.sleep(0.05)
            assert [r.status for r in payments.records.values()] == ["refunded"]

    def test_concurrent_requests_for_same_slot(self, service, ledger, payments):
        n = 8
        barrier = threading.Barrier(n)
        outcomes = []
        lock = threading.Lock()

        def attempt(i):
            barrier.wait()
            try:
                booking = service.create(make_command(client_id=f"client-{i}"))
                result = booking.authorization_id
            except SlotUnavailable:
                result = None
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=attempt, args=(i,)) for i in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        winners = [o for o in outcomes if o is not None]
        assert len(outcomes) == n
        assert len(winners) == 1
        assert len(ledger.snapshot_for_expert("exp-1")) == 1
        for auth_id, record in payments.records.items():
            expected = "captured" if auth_id == winners[0] else "refunded"
            assert record.status == expected


class TestLifecycle:
    def test_fixed_session_end_to_end(self, service, notifier):
        booking = service.create(make_command())
        confirmed = service.confirm(booking.id)
        assert confirmed.status == BookingStatus.CONFIRMED
        assert confirmed.confirmed_at == NOW
        started = service.start(booking.id, monday_at(10, 1))
        assert started.actual_start == monday_at(10, 1)
        done = service.complete(booking.id, monday_at(10, 31))
        assert done.status == BookingStatus.COMPLETED
        assert done.price_cents_total == 3200
        assert done.captured_cents == 3200
        assert done.actual_end == monday_at(10, 31)
        events = [e for e, _, _ in notifier.events]
        assert events == [
            BookingEvent.CREATED, BookingEvent.CONFIRMED, BookingEvent.COMPLETED,
        ]

    def test_per_minute_reconciled_on_completion(self, service, payments):
        booking = service.create(make_command(mode=PricingMode.PER_MINUTE))
        run_to_in_progress(service, booking.id)
        done = service.complete(booking.id, monday_at(10, 22))
        assert done.price_cents_total == 13200
        assert done.captured_cents == 13200
        assert done.expert_net_cents == 10560
        record = payments.records[booking.authorization_id]
        assert record.status == "captured"
        assert record.captured_cents == 13200

    def test_per_minute_short_call_billed_at_floor(self, service):
        booking = service.create(make_command(mode=PricingMode.PER_MINUTE))
        run_to_in_progress(service, booking.id)
        assert service.complete(booking.id, monday_at(10, 4)).price_cents_total == 6000

    def test_overrun_capped_at_authorized_amount(self, service, payments):
        booking = service.create(make_command(mode=PricingMode.PER_MINUTE))
        run_to_in_progress(service, booking.id)
        done = service.complete(booking.id, monday_at(10, 45))
        assert done.price_cents_total == 18000
        assert payments.records[booking.authorization_id].captured_cents == 18000

    def test_rush_carries_into_reconciliation(self, service, clock):
        clock.now = MONDAY - timedelta(hours=2)
        booking = service.create(make_command(mode=PricingMode.PER_MINUTE))
        assert booking.price_cents_total == 19800
        run_to_in_progress(service, booking.id)
        assert service.complete(booking.id, monday_at(10, 22)).price_cents_total == 14520

    def test_complete_without_start_uses_scheduled_start(self, service):
        booking = service.create(make_command(mode=PricingMode.PER_MINUTE))
        service.confirm(booking.id)
        service.ledger.transition(booking.id, BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS)
        assert service.complete(booking.id, monday_at(10, 15)).price_cents_total == 9000

    def test_end_before_start_rejected(self, service):
        booking = service.create(make_command(mode=PricingMode.PER_MINUTE))
        run_to_in_progress(service, booking.id, monday_at(10, 5))
        with pytest.raises(InvalidActualWindow):
            service.complete(booking.id, monday_at(10, 5))
        assert service.ledger.require(booking.id).status == BookingStatus.IN_PROGRESS

    def test_cannot_start_requested_booking(self, service):
        booking = service.create(make_command())
        with pytest.raises(InvalidTransition):
            service.start(booking.id, monday_at(10))

    def test_completed_booking_frees_slot(self, service):
        booking = service.create(make_command())
        run_to_in_progress(service, booking.id)
        service.complete(booking.id, monday_at(10, 30))
        again = service.create(make_command(client_id="client-2"))
        assert again.status == BookingStatus.REQUESTED


class TestIdempotency:
    def test_confirm_twice(self, service, notifier):
        booking = service.create(make_command())
        first = service.confirm(booking.id)
        second = service.confirm(booking.id)
        assert second == first
        assert len(notifier.of_type(BookingEvent.CONFIRMED)) == 1

    def test_start_twice(self, service):
        booking = service.create(make_command(mode=PricingMode.PER_MINUTE))
        first = run_to_in_progress(service, booking.id, started=monday_at(10, 1))
        second = service.start(booking.id, monday_at(10, 5))
        assert second == first
        assert second.actual_start == monday_at(10, 1)

    def test_complete_twice_captures_once(self, service, payments):
        booking = service.create(make_command(mode=PricingMode.PER_MINUTE))
        run_to_in_progress(service, booking.id)
        first = service.complete(booking.id, monday_at(10, 22))
        second = service.complete(booking.id, monday_at(10, 40))
        assert second == first
        assert payments.records[booking.authorization_id].captured_cents == 13200

    def test_cancel_twice(self, service, client_actor, payments):
        booking = service.create(make_command())
        service.cancel(booking.id, client_actor)
        assert service.cancel(booking.id, client_actor).status == BookingStatus.CANCELLED
        assert payments.status_of(booking.authorization_id) == "refunded"

    def test_lost_transition_race_to_same_target(self, service, ledger, monkeypatch):
        booking = service.create(make_command())
        real_transition = ledger.transition

        def someone_else_first(booking_id, expected, new, fields=None):
            real_transition(booking_id, expected, new, fields)
            return real_transition(booking_id, expected, new, fields)

        monkeypatch.setattr(ledger, "transition", someone_else_first)
        assert service.confirm(booking.id).status == BookingStatus.CONFIRMED

    def test_lost_transition_race_to_other_target(self, service, ledger, monkeypatch):
        booking = service.create(make_command())
        real_transition = ledger.transition

        def cancelled_meanwhile(booking_id, expected, new, fields=None):
            real_transition(booking_id, expected, BookingStatus.CANCELLED)
            return real_transition(booking_id, expected, new, fields)

        monkeypatch.setattr(ledger, "transition", cancelled_meanwhile)
        with pytest.raises(StateConflictError):
            service.confirm(booking.id)


class TestCapture:
    def test_failed_capture_keeps_session_in_progress(self, service, payments, notifier):
        booking = service.create(make_command(mode=PricingMode.PER_MINUTE))
        run_to_in_progress(service, booking.id)
        payments.fail_next("capture", "processor_unavailable")
        with pytest.raises(PaymentCaptureFailed) as exc_info:
            service.complete(booking.id, monday_at(10, 22))
        assert exc_info.value.reason == "processor_unavailable"
        assert service.ledger.require(booking.id).status == BookingStatus.IN_PROGRESS
        assert notifier.of_type(BookingEvent.PAYMENT_FAILED)
        assert not notifier.of_type(BookingEvent.COMPLETED)

        # Retry succeeds once the processor is back.
        done = service.complete(booking.id, monday_at(10, 22))
        assert done.status == BookingStatus.COMPLETED
        assert done.captured_cents == 13200

    def test_retry_after_capture_timeout(self, ledger, payments, experts, notifier, calculator, clock):
        config = PaymentConfig(
            provider="memory", currency="usd",
            authorize_timeout_sec=5.0, capture_timeout_sec=0.2, max_workers=2,
        )
        with BookingService(
            ledger=ledger, payments=payments, experts=experts, notifier=notifier,
            calculator=calculator, clock=clock, payment_config=config,
        ) as service:
            booking = service.create(make_command(mode=PricingMode.PER_MINUTE))
            run_to_in_progress(service, booking.id)
            payments.delay_next("capture", 0.6)
            with pytest.raises(PaymentCaptureFailed) as exc_info:
                service.complete(booking.id, monday_at(10, 22))
            assert exc_info.value.reason == "timeout"
            assert ledger.require(booking.id).status == BookingStatus.IN_PROGRESS

            # The slow capture still goes through.
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline:
                if payments.status_of(booking.authorization_id) == "captured":
                    break
                time.sleep(0.05)
            assert payments.status_of(booking.authorization_id) == "captured"

            # The retry records what was charged, not a fresh reconciliation.
            done = service.complete(booking.id, monday_at(10, 30))
            assert done.status == BookingStatus.COMPLETED
            assert done.captured_cents == 13200
            assert done.price_cents_total == 13200
            assert done.expert_net_cents == 10560

    def test_gateway_capture_repeats_first_receipt(self, payments):
        handle = payments.authorize(18000, "usd", {"booking_id": "b-1"}, CaptureMode.MANUAL)
        first = payments.capture(handle, 13200)
        again = payments.capture(handle, 18000)
        assert again == first
        assert payments.records[handle.id].captured_cents == 13200


class TestCancel:
    def test_client_cancels_fixed_booking_with_refund(self, service, client_actor, payments, notifier):
        booking = service.create(make_command())
        cancelled = service.cancel(booking.id, client_actor)
        assert cancelled.status == BookingStatus.CANCELLED
        assert cancelled.cancelled_by == CLIENT_ID
        assert cancelled.cancelled_at == NOW
        assert payments.status_of(booking.authorization_id) == "refunded"
        [(_, _, context)] = notifier.of_type(BookingEvent.CANCELLED)
        assert context == {"cancelled_by": CLIENT_ID}

    def test_expert_cancels_per_minute_booking_with_void(self, service, expert_actor, payments):
        booking = service.create(make_command(mode=PricingMode.PER_MINUTE))
        service.confirm(booking.id)
        service.cancel(booking.id, expert_actor)
        assert payments.status_of(booking.authorization_id) == "voided"

    def test_admin_may_cancel(self, service, admin_actor):
        booking = service.create(make_command())
        assert service.cancel(booking.id, admin_actor).cancelled_by == "admin-1"

    def test_stranger_may_not_cancel(self, service, payments):
        booking = service.create(make_command())
        stranger = Actor(id="client-9", role=ActorRole.CLIENT)
        with pytest.raises(NotAuthorized):
            service.cancel(booking.id, stranger)
        assert payments.status_of(booking.authorization_id) == "captured"

    def test_cannot_cancel_running_session(self, service, client_actor, payments):
        booking = service.create(make_command(mode=PricingMode.PER_MINUTE))
        run_to_in_progress(service, booking.id)
        with pytest.raises(InvalidTransition):
            service.cancel(booking.id, client_actor)
        assert payments.status_of(booking.authorization_id) == "authorized"

    def test_failed_release_keeps_booking(self, service, client_actor, payments):
        booking = service.create(make_command())
        payments.fail_next("void", "network_error")
        with pytest.raises(PaymentVoidFailed):
            service.cancel(booking.id, client_actor)
        assert service.ledger.require(booking.id).status == BookingStatus.REQUESTED

    def test_confirmed_while_releasing_still_cancels(self, service, client_actor, payments, notifier, monkeypatch):
        booking = service.create(make_command())
        real_void = payments.void

        def confirmed_meanwhile(handle):
            real_void(handle)
            service.confirm(booking.id)

        monkeypatch.setattr(payments, "void", confirmed_meanwhile)
        cancelled = service.cancel(booking.id, client_actor)
        assert cancelled.status == BookingStatus.CANCELLED
        assert cancelled.cancelled_by == CLIENT_ID
        assert service.ledger.require(booking.id).status == BookingStatus.CANCELLED
        assert payments.status_of(booking.authorization_id) == "refunded"
        assert len(notifier.of_type(BookingEvent.CANCELLED)) == 1

    def test_started_while_releasing_raises(self, service, client_actor, payments, monkeypatch):
        booking = service.create(make_command(mode=PricingMode.PER_MINUTE))
        service.confirm(booking.id)
        real_void = payments.void

        def started_meanwhile(handle):
            real_void(handle)
            service.start(booking.id, monday_at(10))

        monkeypatch.setattr(payments, "void", started_meanwhile)
        with pytest.raises(StateConflictError) as exc_info:
            service.cancel(booking.id, client_actor)
        assert exc_info.value.current_status == "in_progress"

    def test_cancelled_slot_can_be_rebooked(self, service, client_actor):
        booking = service.create(make_command())
        service.cancel(booking.id, client_actor)
        assert service.create(make_command(client_id="client-2")).status == BookingStatus.REQUESTED


class TestApply:
    def test_confirm_from_payload(self, service):
        booking = service.create(make_command())
        updated = service.apply({"booking_id": booking.id, "target": "confirmed"})
        assert updated.status == BookingStatus.CONFIRMED

    def test_full_sequence_through_apply(self, service):
        booking = service.create(make_command())
        service.apply({"booking_id": booking.id, "target": "confirmed"})
        service.apply({"booking_id": booking.id, "target": "in_progress", "at": "2025-03-10T10:00:00Z"})
        done = service.apply({"booking_id": booking.id, "target": "completed", "at": "2025-03-10T10:30:00Z"})
        assert done.status == BookingStatus.COMPLETED

    def test_cancel_requires_actor(self, service):
        booking = service.create(make_command())
        with pytest.raises(ValidationError):
            service.apply({"booking_id": booking.id, "target": "cancelled"})

    def test_cancel_with_actor(self, service):
        booking = service.create(make_command())
        updated = service.apply({
            "booking_id": booking.id,
            "target": "cancelled",
            "actor": {"id": CLIENT_ID, "role": "client"},
        })
        assert updated.cancelled_by == CLIENT_ID

    def test_requested_is_not_a_target(self, service):
        booking = service.create(make_command())
        with pytest.raises(ValidationError):
            service.apply({"booking_id": booking.id, "target": "requested"})


class TestReads:
    def test_participant_can_read(self, service, client_actor, expert_actor):
        booking = service.create(make_command())
        assert service.get_booking(booking.id, client_actor) == booking
        assert service.get_booking(booking.id, expert_actor) == booking

    def test_stranger_cannot_read(self, service):
        booking = service.create(make_command())
        with pytest.raises(NotAuthorized):
            service.get_booking(booking.id, Actor(id="exp-2", role=ActorRole.EXPERT))

    def test_list_bookings_for_client(self, service, client_actor):
        early = service.create(make_command(monday_at(9)))
        late = service.create(make_command(monday_at(11)))
        service.create(make_command(monday_at(13), client_id="client-2"))
        assert [b.id for b in service.list_bookings(client_actor)] == [late.id, early.id]

    def test_list_bookings_filtered_by_status(self, service, client_actor):
        booking = service.create(make_command(monday_at(9)))
        service.create(make_command(monday_at(11)))
        service.confirm(booking.id)
        confirmed = service.list_bookings(client_actor, status=BookingStatus.CONFIRMED)
        assert [b.id for b in confirmed] == [booking.id]

    @pytest.mark.parametrize("page,limit", [(0, 20), (1, 0), (1, 101)])
    def test_bad_paging(self, service, client_actor, page, limit):
        with pytest.raises(ValidationError):
            service.list_bookings(client_actor, page=page, limit=limit)

    def test_next_available_slot_after_booking(self, service):
        service.create(make_command(monday_at(10), 30))
        assert service.next_available_slot("exp-1", monday_at(10)) == monday_at(10, 30)

    def test_next_available_slot_defaults_to_now(self, service):
        # NOW is Saturday; first opening is Monday 09:00.
        assert service.next_available_slot("exp-1") == monday_at(9)

    def test_free_windows(self, service):
        service.create(make_command(monday_at(10), 30))
        windows = service.free_windows("exp-1", MONDAY, MONDAY + timedelta(days=1))
        assert windows == [(monday_at(9), monday_at(10)), (monday_at(10, 30), monday_at(17))]


class TestReminders:
    def test_confirmed_booking_gets_day_before_reminder(self, service, notifier):
        booking = service.create(make_command())
        service.confirm(booking.id)
        assert service.send_due_reminders(monday_at(10) - timedelta(hours=24)) == 1
        [(_, booking_id, context)] = notifier.of_type(BookingEvent.REMINDER)
        assert booking_id == booking.id
        assert context == {"hours_before": 24}

    def test_requested_booking_gets_no_reminder(self, service, notifier):
        service.create(make_command())
        assert service.send_due_reminders(monday_at(9, 1)) == 0
        assert not notifier.of_type(BookingEvent.REMINDER)


class RequestTrackingGateway(InMemoryPaymentGateway):
    def __init__(self):
        super().__init__()
        self.seen = []

    def authorize(self, *args, **kwargs):
        self.seen.append(("authorize", get_request_id()))
        return super().authorize(*args, **kwargs)

    def capture(self, *args, **kwargs):
        self.seen.append(("capture", get_request_id()))
        return super().capture(*args, **kwargs)


class TestRequestContext:
    def test_payment_calls_carry_caller_request_id(
        self, ledger, experts, notifier, calculator, clock, payment_config
    ):
        gateway = RequestTrackingGateway()

        def scenario():
            with BookingService(
                ledger=ledger, payments=gateway, experts=experts, notifier=notifier,
                calculator=calculator, clock=clock, payment_config=payment_config,
            ) as service:
                set_request_id("REQ-create")
                booking = service.create(make_command(mode=PricingMode.PER_MINUTE))
                run_to_in_progress(service, booking.id)
                set_request_id("REQ-complete")
                service.complete(booking.id, monday_at(10, 22))

        # Run in a copy so the request id does not leak into other tests.
        contextvars.copy_context().run(scenario)
        assert gateway.seen == [("authorize", "REQ-create"), ("capture", "REQ-complete")]
