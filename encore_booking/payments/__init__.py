from encore_booking.payments.gateway import (
    AuthorizationHandle,
    CaptureMode,
    CaptureReceipt,
    PaymentError,
    PaymentGateway,
)
from encore_booking.payments.memory import InMemoryPaymentGateway

__all__ = [
    "AuthorizationHandle", "CaptureMode", "CaptureReceipt", "PaymentError",
    "PaymentGateway", "InMemoryPaymentGateway",
]
