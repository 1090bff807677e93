from encore_booking.ledger.base import BookingLedger, ConflictCheck, ExpertLocks
from encore_booking.ledger.memory import InMemoryBookingLedger
from encore_booking.ledger.sql import SqlBookingLedger, create_ledger_engine

__all__ = [
    "BookingLedger", "ConflictCheck", "ExpertLocks",
    "InMemoryBookingLedger", "SqlBookingLedger", "create_ledger_engine",
]
