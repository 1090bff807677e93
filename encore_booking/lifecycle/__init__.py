from encore_booking.lifecycle.booking_service import BookingService
from encore_booking.lifecycle.reminders import DueReminder, due_reminders
from encore_booking.lifecycle.state_machine import (
    BookingLifecycle,
    LifecycleTrigger,
    Transition,
)

__all__ = [
    "BookingService",
    "BookingLifecycle",
    "LifecycleTrigger",
    "Transition",
    "DueReminder",
    "due_reminders",
]
