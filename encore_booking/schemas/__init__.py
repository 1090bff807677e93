from encore_booking.schemas.booking_schema import (
    SLOT_HOLDING_STATUSES,
    Actor,
    ActorRole,
    Booking,
    BookingStatus,
    CreateBookingCommand,
    PricingMode,
    TransitionCommand,
)
from encore_booking.schemas.expert_schema import (
    ExpertAvailability,
    ExpertProfile,
    ExpertRates,
    TimeInterval,
)

__all__ = [
    "Actor", "ActorRole", "Booking", "BookingStatus", "CreateBookingCommand",
    "PricingMode", "TransitionCommand", "SLOT_HOLDING_STATUSES",
    "ExpertAvailability", "ExpertProfile", "ExpertRates", "TimeInterval",
]
