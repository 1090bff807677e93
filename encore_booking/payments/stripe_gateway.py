"""
Stripe implementation of the payment collaborator.

Uses PaymentIntents: fixed-price sessions are created with automatic capture,
per-minute sessions with manual capture so the final amount can be captured
after the call. The API key is passed per request; nothing is written to the
``stripe`` module's global configuration.
"""

import logging
from typing import Any, Optional

import stripe

from encore_booking.payments.gateway import (
    AuthorizationHandle,
    CaptureMode,
    CaptureReceipt,
    PaymentError,
)

logger = logging.getLogger(__name__)

PROVIDER = "stripe"


def _reason(exc: Exception) -> str:
    code = getattr(exc, "code", None)
    message = getattr(exc, "user_message", None) or str(exc)
    return f"{code}: {message}" if code else message


class StripePaymentGateway:
    """Authorize, capture and release funds through Stripe PaymentIntents."""

    def __init__(self, api_key: str, idempotency_prefix: Optional[str] = None) -> None:
        if not api_key:
            raise ValueError("StripePaymentGateway requires an API key")
        self._api_key = api_key
        self._idempotency_prefix = idempotency_prefix

    def _options(self, idempotency_ref: Optional[str] = None) -> dict[str, Any]:
        """Per-request options: the API key, plus an idempotency key when configured.

        Only creation is keyed; captures and releases must stay retryable after
        a failure, and Stripe replays the stored response for a reused key.
        """
        options: dict[str, Any] = {"api_key": self._api_key}
        if self._idempotency_prefix and idempotency_ref:
            options["idempotency_key"] = f"{self._idempotency_prefix}:{idempotency_ref}"
        return options

    def authorize(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, Any],
        capture_mode: CaptureMode,
    ) -> AuthorizationHandle:
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency,
                metadata={k: str(v) for k, v in metadata.items()},
                capture_method=capture_mode.value,
                automatic_payment_methods={"enabled": True},
                **self._options(f"authorize:{metadata.get('booking_id', '')}"),
            )
        except stripe.StripeError as exc:
            logger.warning("Stripe authorization of %d %s failed: %s", amount_cents, currency, exc)
            raise PaymentError(_reason(exc), provider=PROVIDER) from exc

        logger.info("Created PaymentIntent %s for %d %s", intent.id, amount_cents, currency)
        return AuthorizationHandle(
            id=intent.id,
            amount_cents=amount_cents,
            currency=currency,
            capture_mode=capture_mode,
            provider=PROVIDER,
            client_secret=getattr(intent, "client_secret", None),
        )

    def capture(self, handle: AuthorizationHandle, amount_cents: int) -> CaptureReceipt:
        if amount_cents > handle.amount_cents:
            raise PaymentError("amount_exceeds_authorization", provider=PROVIDER)
        try:
            intent = stripe.PaymentIntent.capture(
                handle.id,
                amount_to_capture=amount_cents,
                **self._options(),
            )
        except stripe.StripeError as exc:
            intent = self._already_captured(handle)
            if intent is None:
                logger.warning("Stripe capture on %s failed: %s", handle.id, exc)
                raise PaymentError(_reason(exc), provider=PROVIDER) from exc
            logger.info("PaymentIntent %s was already captured", handle.id)

        received = getattr(intent, "amount_received", None)
        return CaptureReceipt(
            authorization_id=handle.id,
            amount_cents=received if received is not None else amount_cents,
            provider=PROVIDER,
        )

    def _already_captured(self, handle: AuthorizationHandle) -> Any:
        """Return the intent if an earlier capture went through, else None."""
        try:
            intent = stripe.PaymentIntent.retrieve(handle.id, **self._options())
        except stripe.StripeError as exc:
            logger.warning("Could not look up PaymentIntent %s: %s", handle.id, exc)
            return None
        return intent if getattr(intent, "status", None) == "succeeded" else None

    def void(self, handle: AuthorizationHandle) -> None:
        try:
            if handle.capture_mode == CaptureMode.AUTOMATIC:
                stripe.Refund.create(payment_intent=handle.id, **self._options())
            else:
                stripe.PaymentIntent.cancel(handle.id, **self._options())
        except stripe.StripeError as exc:
            logger.warning("Stripe release of %s failed: %s", handle.id, exc)
            raise PaymentError(_reason(exc), provider=PROVIDER) from exc
        logger.info("Released PaymentIntent %s", handle.id)
