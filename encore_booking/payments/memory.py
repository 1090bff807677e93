"""
In-memory payment gateway.

Stands in for the card processor during local development, the console
demo and tests. Tracks every authorization so callers can assert on holds,
captures and voids, and can be told to fail or stall the next call.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from encore_booking.payments.gateway import (
    AuthorizationHandle,
    CaptureMode,
    CaptureReceipt,
    PaymentError,
)

logger = logging.getLogger(__name__)

PROVIDER = "memory"


@dataclass
class AuthorizationRecord:
    """Provider-side view of one authorization."""

    handle: AuthorizationHandle
    metadata: dict[str, Any]
    status: str
    captured_cents: int = 0


class InMemoryPaymentGateway:
    """Thread-safe fake of a card processor."""

    def __init__(self) -> None:
        self.records: dict[str, AuthorizationRecord] = {}
        self._lock = threading.Lock()
        self._failures: dict[str, str] = {}
        self._delays: dict[str, float] = {}

    def fail_next(self, operation: str, reason: str = "card_declined") -> None:
        """Make the next ``authorize``/``capture``/``void`` call raise PaymentError."""
        self._failures[operation] = reason

    def delay_next(self, operation: str, seconds: float) -> None:
        """Make the next call to ``operation`` sleep before doing its work."""
        self._delays[operation] = seconds

    def _before(self, operation: str) -> None:
        delay = self._delays.pop(operation, 0.0)
        if delay:
            time.sleep(delay)
        reason = self._failures.pop(operation, None)
        if reason is not None:
            raise PaymentError(reason, provider=PROVIDER)

    def authorize(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, Any],
        capture_mode: CaptureMode,
    ) -> AuthorizationHandle:
        self._before("authorize")
        if amount_cents <= 0:
            raise PaymentError("amount_must_be_positive", provider=PROVIDER)
        auth_id = f"auth_{uuid.uuid4().hex[:12]}"
        handle = AuthorizationHandle(
            id=auth_id,
            amount_cents=amount_cents,
            currency=currency,
            capture_mode=capture_mode,
            provider=PROVIDER,
            client_secret=f"{auth_id}_secret",
        )
        status = "captured" if capture_mode == CaptureMode.AUTOMATIC else "authorized"
        record = AuthorizationRecord(
            handle=handle,
            metadata=dict(metadata),
            status=status,
            captured_cents=amount_cents if capture_mode == CaptureMode.AUTOMATIC else 0,
        )
        with self._lock:
            self.records[auth_id] = record
        logger.info("Authorized %d %s as %s (%s)", amount_cents, currency, auth_id, capture_mode.value)
        return handle

    def _record(self, handle: AuthorizationHandle) -> AuthorizationRecord:
        record = self.records.get(handle.id)
        if record is None:
            raise PaymentError("unknown_authorization", provider=PROVIDER)
        return record

    def capture(self, handle: AuthorizationHandle, amount_cents: int) -> CaptureReceipt:
        self._before("capture")
        with self._lock:
            record = self._record(handle)
            if record.status == "captured":
                logger.info("Authorization %s already captured %d", handle.id, record.captured_cents)
                return CaptureReceipt(
                    authorization_id=handle.id, amount_cents=record.captured_cents, provider=PROVIDER
                )
            if record.status != "authorized":
                raise PaymentError(f"cannot_capture_{record.status}", provider=PROVIDER)
            if amount_cents > record.handle.amount_cents:
                raise PaymentError("amount_exceeds_authorization", provider=PROVIDER)
            record.status = "captured"
            record.captured_cents = amount_cents
        logger.info("Captured %d of %d on %s", amount_cents, handle.amount_cents, handle.id)
        return CaptureReceipt(authorization_id=handle.id, amount_cents=amount_cents, provider=PROVIDER)

    def void(self, handle: AuthorizationHandle) -> None:
        self._before("void")
        with self._lock:
            record = self._record(handle)
            if record.status == "authorized":
                record.status = "voided"
            elif record.status == "captured":
                record.status = "refunded"
            else:
                raise PaymentError(f"cannot_void_{record.status}", provider=PROVIDER)
        logger.info("Released authorization %s (%s)", handle.id, record.status)

    def status_of(self, auth_id: str) -> Optional[str]:
        record = self.records.get(auth_id)
        return record.status if record else None

    def reset(self) -> None:
        """Forget all authorizations. Used by test fixtures for isolation."""
        with self._lock:
            self.records.clear()
        self._failures.clear()
        self._delays.clear()
