from encore_booking.scheduling.availability import (
    available_ranges,
    conflicting_bookings,
    free_windows,
    is_bookable,
    next_available_slot,
    within_availability,
)

__all__ = [
    "is_bookable", "next_available_slot", "free_windows",
    "conflicting_bookings", "within_availability", "available_ranges",
]
