"""Booking record, caller identity and typed command models."""

from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import (
    AwareDatetime,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from encore_booking.utils import ensure_utc, intervals_overlap


class PricingMode(str, Enum):
    """Pricing policy chosen for a session."""
    FIXED = "fixed"
    PER_MINUTE = "per_minute"


class BookingStatus(str, Enum):
    """Lifecycle status of a booking."""
    REQUESTED = "requested"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# A requested booking already carries a payment hold, so it keeps its slot
# alongside confirmed and running sessions.
SLOT_HOLDING_STATUSES: frozenset[BookingStatus] = frozenset({
    BookingStatus.REQUESTED,
    BookingStatus.CONFIRMED,
    BookingStatus.IN_PROGRESS,
})


class ActorRole(str, Enum):
    CLIENT = "client"
    EXPERT = "expert"
    ADMIN = "admin"


class Actor(BaseModel):
    """Validated caller identity supplied by the auth layer."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    role: ActorRole


class Booking(BaseModel):
    """
    A single consultation booking.

    Instances are immutable; every change goes through ``with_changes``,
    which re-runs validation so a copy that breaks an invariant is never
    produced.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    client_id: str
    expert_id: str
    mode: PricingMode
    status: BookingStatus = BookingStatus.REQUESTED

    scheduled_start: datetime
    scheduled_end: datetime
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None

    price_cents_total: int = Field(ge=0)
    commission_pct: float = Field(ge=0, le=100)
    expert_net_cents: int = Field(ge=0)
    rate_cents_per_minute: Optional[Decimal] = None
    rush_applied: bool = False
    currency: str = "usd"
    authorization_id: str
    captured_cents: Optional[int] = Field(default=None, ge=0)

    category_id: Optional[str] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None

    @field_validator(
        "scheduled_start", "scheduled_end", "actual_start", "actual_end",
        "created_at", "confirmed_at", "completed_at", "cancelled_at",
    )
    @classmethod
    def _normalize_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _check_invariants(self) -> "Booking":
        if self.scheduled_end <= self.scheduled_start:
            raise ValueError("scheduled_end must be after scheduled_start")
        if self.actual_start and self.actual_end and self.actual_end <= self.actual_start:
            raise ValueError("actual_end must be after actual_start")
        if self.expert_net_cents > self.price_cents_total:
            raise ValueError("expert_net_cents cannot exceed price_cents_total")
        if self.captured_cents is not None and self.captured_cents > self.price_cents_total:
            raise ValueError("captured_cents cannot exceed price_cents_total")
        if self.mode == PricingMode.PER_MINUTE and self.rate_cents_per_minute is None:
            raise ValueError("per-minute bookings must lock in a rate")
        return self

    @property
    def holds_slot(self) -> bool:
        return self.status in SLOT_HOLDING_STATUSES

    @property
    def scheduled_minutes(self) -> float:
        return (self.scheduled_end - self.scheduled_start).total_seconds() / 60

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return intervals_overlap(self.scheduled_start, self.scheduled_end, start, end)

    def is_participant(self, actor: Actor) -> bool:
        return actor.id in (self.client_id, self.expert_id)

    def can_be_accessed_by(self, actor: Actor) -> bool:
        return actor.role == ActorRole.ADMIN or self.is_participant(actor)

    def with_changes(self, **fields: Any) -> "Booking":
        """Return a validated copy with ``fields`` replaced."""
        return Booking.model_validate({**self.model_dump(), **fields})


class CreateBookingCommand(BaseModel):
    """A client's request to book an expert, validated once at the boundary."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    client_id: str = Field(min_length=1)
    expert_id: str = Field(min_length=1)
    mode: PricingMode
    scheduled_start: AwareDatetime
    scheduled_end: AwareDatetime
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    category_id: Optional[str] = None

    @field_validator("scheduled_start", "scheduled_end")
    @classmethod
    def _normalize_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_window(self) -> "CreateBookingCommand":
        if self.scheduled_end <= self.scheduled_start:
            raise ValueError("scheduled_end must be after scheduled_start")
        return self

    @property
    def duration(self) -> timedelta:
        return self.scheduled_end - self.scheduled_start


class TransitionCommand(BaseModel):
    """Request to move a booking to ``target``.

    ``at`` is the recorded session boundary for ``in_progress`` and
    ``completed``; ``actor`` is required for ``cancelled``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    booking_id: str = Field(min_length=1)
    target: BookingStatus
    at: Optional[AwareDatetime] = None
    actor: Optional[Actor] = None

    @model_validator(mode="after")
    def _check_target(self) -> "TransitionCommand":
        if self.target == BookingStatus.REQUESTED:
            raise ValueError("bookings enter 'requested' only through create")
        if self.target in (BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED) and self.at is None:
            raise ValueError(f"'{self.target.value}' requires the session time 'at'")
        if self.target == BookingStatus.CANCELLED and self.actor is None:
            raise ValueError("'cancelled' requires an actor")
        return self
