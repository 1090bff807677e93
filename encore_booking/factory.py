"""Builds a BookingService from configuration."""

import logging
from typing import Optional

from encore_booking.config import AppConfig, settings
from encore_booking.experts import ExpertDirectory, InMemoryExpertDirectory
from encore_booking.ledger.base import BookingLedger
from encore_booking.ledger.memory import InMemoryBookingLedger
from encore_booking.ledger.sql import SqlBookingLedger
from encore_booking.lifecycle.booking_service import BookingService
from encore_booking.notifications.notifier import Notifier
from encore_booking.payments.gateway import PaymentGateway
from encore_booking.payments.memory import InMemoryPaymentGateway
from encore_booking.pricing.calculator import PricingCalculator, PricingPolicy

logger = logging.getLogger(__name__)


def build_ledger(config: AppConfig) -> BookingLedger:
    if config.ledger.backend == "sql":
        return SqlBookingLedger.from_url(config.ledger.database_url)
    return InMemoryBookingLedger()


def build_payment_gateway(config: AppConfig) -> PaymentGateway:
    if config.payments.provider == "stripe":
        from encore_booking.payments.stripe_gateway import StripePaymentGateway

        return StripePaymentGateway(config.payments.stripe_api_key, idempotency_prefix=config.service_name)
    return InMemoryPaymentGateway()


def build_service(
    config: Optional[AppConfig] = None,
    experts: Optional[ExpertDirectory] = None,
    notifier: Optional[Notifier] = None,
) -> BookingService:
    config = config or settings
    logger.info(
        "Building booking service (ledger=%s, payments=%s)",
        config.ledger.backend, config.payments.provider,
    )
    return BookingService(
        ledger=build_ledger(config),
        payments=build_payment_gateway(config),
        experts=experts or InMemoryExpertDirectory(),
        notifier=notifier,
        calculator=PricingCalculator(PricingPolicy.from_config(config.pricing)),
        payment_config=config.payments,
        scheduling_config=config.scheduling,
        notification_config=config.notifications,
    )
