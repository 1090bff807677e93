"""Shared test fixtures and helpers."""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from encore_booking.config import NotificationConfig, PaymentConfig, SchedulingConfig
from encore_booking.experts import InMemoryExpertDirectory
from encore_booking.ledger.memory import InMemoryBookingLedger
from encore_booking.lifecycle.booking_service import BookingService
from encore_booking.notifications.notifier import RecordingNotifier
from encore_booking.payments.memory import InMemoryPaymentGateway
from encore_booking.pricing.calculator import PricingCalculator, PricingPolicy
from encore_booking.schemas.booking_schema import (
    Actor,
    ActorRole,
    Booking,
    BookingStatus,
    CreateBookingCommand,
    PricingMode,
)
from encore_booking.schemas.expert_schema import ExpertAvailability, ExpertProfile, ExpertRates

# Saturday; the Monday below is 48 hours away.
NOW = datetime(2025, 3, 8, 10, 0, tzinfo=timezone.utc)
MONDAY = datetime(2025, 3, 10, tzinfo=timezone.utc)

EXPERT_ID = "exp-1"
CLIENT_ID = "client-1"

WEEKDAYS_9_TO_17 = {day: [{"start": 9, "end": 17}] for day in range(1, 6)}


def monday_at(hour: int, minute: int = 0) -> datetime:
    return MONDAY.replace(hour=hour, minute=minute)


def make_expert(
    expert_id: str = EXPERT_ID,
    rate: Optional[int] = 600,
    fixed_15m: Optional[int] = 1800,
    fixed_30m: Optional[int] = 3200,
    fixed_60m: Optional[int] = 5800,
    weekly: Optional[dict] = None,
    tz: str = "UTC",
    commission_pct: Optional[float] = None,
    is_active: bool = True,
) -> ExpertProfile:
    """Helper to create an ExpertProfile with Monday-Friday 09-17 availability."""
    return ExpertProfile(
        id=expert_id,
        display_name=f"Expert {expert_id}",
        rates=ExpertRates.from_profile_columns(rate, fixed_15m, fixed_30m, fixed_60m),
        availability=ExpertAvailability(
            weekly=WEEKDAYS_9_TO_17 if weekly is None else weekly, timezone=tz
        ),
        commission_pct=commission_pct,
        is_active=is_active,
    )


def make_booking(
    start: Optional[datetime] = None,
    minutes: int = 30,
    status: BookingStatus = BookingStatus.CONFIRMED,
    expert_id: str = EXPERT_ID,
    client_id: str = CLIENT_ID,
    mode: PricingMode = PricingMode.FIXED,
    price_cents_total: int = 3200,
    booking_id: Optional[str] = None,
    **overrides,
) -> Booking:
    """Helper to create a stored-looking Booking with sensible defaults."""
    start = start or monday_at(10)
    fields = dict(
        id=booking_id or str(uuid.uuid4()),
        client_id=client_id,
        expert_id=expert_id,
        mode=mode,
        status=status,
        scheduled_start=start,
        scheduled_end=start + timedelta(minutes=minutes),
        price_cents_total=price_cents_total,
        commission_pct=20.0,
        expert_net_cents=price_cents_total * 8 // 10,
        rate_cents_per_minute=600 if mode == PricingMode.PER_MINUTE else None,
        authorization_id=f"auth_{uuid.uuid4().hex[:12]}",
        created_at=NOW,
    )
    fields.update(overrides)
    return Booking(**fields)


def make_command(
    start: Optional[datetime] = None,
    minutes: int = 30,
    mode: PricingMode = PricingMode.FIXED,
    expert_id: str = EXPERT_ID,
    client_id: str = CLIENT_ID,
) -> CreateBookingCommand:
    start = start or monday_at(10)
    return CreateBookingCommand(
        client_id=client_id,
        expert_id=expert_id,
        mode=mode,
        scheduled_start=start,
        scheduled_end=start + timedelta(minutes=minutes),
    )


class FixedClock:
    """Settable clock for the service."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def client_actor():
    return Actor(id=CLIENT_ID, role=ActorRole.CLIENT)


@pytest.fixture
def expert_actor():
    return Actor(id=EXPERT_ID, role=ActorRole.EXPERT)


@pytest.fixture
def admin_actor():
    return Actor(id="admin-1", role=ActorRole.ADMIN)


@pytest.fixture
def calculator():
    return PricingCalculator(PricingPolicy())


@pytest.fixture
def ledger():
    return InMemoryBookingLedger()


@pytest.fixture
def payments():
    return InMemoryPaymentGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def experts():
    return InMemoryExpertDirectory([make_expert()])


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def payment_config():
    return PaymentConfig(
        provider="memory",
        currency="usd",
        authorize_timeout_sec=5.0,
        capture_timeout_sec=5.0,
        max_workers=4,
    )


@pytest.fixture
def service(ledger, payments, experts, notifier, calculator, clock, payment_config):
    svc = BookingService(
        ledger=ledger,
        payments=payments,
        experts=experts,
        notifier=notifier,
        calculator=calculator,
        clock=clock,
        payment_config=payment_config,
        scheduling_config=SchedulingConfig(min_slot_minutes=10, horizon_days=30),
        notification_config=NotificationConfig(reminder_hours=(24, 1), reminder_sweep_minutes=5),
    )
    yield svc
    svc.close()
