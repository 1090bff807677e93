from encore_booking.notifications.notifier import (
    BookingEvent,
    LoggingNotifier,
    Notifier,
    RecordingNotifier,
    notify_safely,
)

__all__ = ["BookingEvent", "Notifier", "LoggingNotifier", "RecordingNotifier", "notify_safely"]
