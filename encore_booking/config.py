"""
Centralized configuration with environment variable overrides.

Pricing constants, scheduling bounds, payment timeouts and reminder
windows are configurable here. Nothing is hardcoded in pricing, scheduling
or lifecycle logic; components receive these values at construction.
"""

import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _safe_int(env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid integer for {env_var}: {raw!r}"
        ) from None


def _safe_float(env_var: str, default: str) -> float:
    """Parse a float from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid float for {env_var}: {raw!r}"
        ) from None


def _safe_int_tuple(env_var: str, default: str) -> tuple[int, ...]:
    """Parse a comma-separated list of integers, e.g. ``"15,30,60"``."""
    raw = os.getenv(env_var, default)
    try:
        return tuple(int(part) for part in raw.split(",") if part.strip())
    except (ValueError, TypeError, AttributeError):
        raise ValueError(
            f"Invalid integer list for {env_var}: {raw!r}"
        ) from None


@dataclass(frozen=True)
class PricingConfig:
    """Session pricing policy."""

    fixed_tiers_minutes: tuple[int, ...] = _safe_int_tuple("PRICING_FIXED_TIERS", "15,30,60")
    minimum_minutes: int = _safe_int("PRICING_MINIMUM_MINUTES", "10")
    rush_window_hours: float = _safe_float("PRICING_RUSH_WINDOW_HOURS", "24")
    rush_multiplier: str = os.getenv("PRICING_RUSH_MULTIPLIER", "1.10")
    default_commission_pct: float = _safe_float("PRICING_DEFAULT_COMMISSION_PCT", "20")


@dataclass(frozen=True)
class SchedulingConfig:
    """Bounds for slot search."""

    min_slot_minutes: int = _safe_int("SCHEDULING_MIN_SLOT_MINUTES", "10")
    horizon_days: int = _safe_int("SCHEDULING_HORIZON_DAYS", "30")


@dataclass(frozen=True)
class PaymentConfig:
    """Payment collaborator settings."""

    provider: str = os.getenv("PAYMENT_PROVIDER", "memory")
    stripe_api_key: str = os.getenv("STRIPE_SECRET_KEY", "")
    currency: str = os.getenv("PAYMENT_CURRENCY", "usd")
    authorize_timeout_sec: float = _safe_float("PAYMENT_AUTHORIZE_TIMEOUT_SEC", "10.0")
    capture_timeout_sec: float = _safe_float("PAYMENT_CAPTURE_TIMEOUT_SEC", "10.0")
    max_workers: int = _safe_int("PAYMENT_MAX_WORKERS", "4")


@dataclass(frozen=True)
class LedgerConfig:
    """Persistence settings for the booking ledger."""

    backend: str = os.getenv("LEDGER_BACKEND", "memory")
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///encore_bookings.db")


@dataclass(frozen=True)
class NotificationConfig:
    """Reminder scheduling for the notification collaborator."""

    reminder_hours: tuple[int, ...] = _safe_int_tuple("NOTIFY_REMINDER_HOURS", "24,1")
    reminder_sweep_minutes: int = _safe_int("NOTIFY_REMINDER_SWEEP_MINUTES", "5")


@dataclass(frozen=True)
class AppConfig:
    """Root configuration aggregating all sub-configs."""

    pricing: PricingConfig = field(default_factory=PricingConfig)
    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)
    payments: PaymentConfig = field(default_factory=PaymentConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    service_name: str = os.getenv("SERVICE_NAME", "encore-booking")


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values are within acceptable ranges."""
    pricing = config.pricing
    if not pricing.fixed_tiers_minutes or any(t < 1 for t in pricing.fixed_tiers_minutes):
        raise ValueError(
            f"PRICING_FIXED_TIERS must be positive minutes, got {pricing.fixed_tiers_minutes}"
        )
    if pricing.minimum_minutes < 1:
        raise ValueError(
            f"PRICING_MINIMUM_MINUTES must be >= 1, got {pricing.minimum_minutes}"
        )
    if pricing.rush_window_hours < 0:
        raise ValueError(
            f"PRICING_RUSH_WINDOW_HOURS must be >= 0, got {pricing.rush_window_hours}"
        )
    try:
        multiplier = float(pricing.rush_multiplier)
    except ValueError:
        raise ValueError(
            f"Invalid float for PRICING_RUSH_MULTIPLIER: {pricing.rush_multiplier!r}"
        ) from None
    if multiplier < 1.0:
        raise ValueError(f"PRICING_RUSH_MULTIPLIER must be >= 1.0, got {multiplier}")
    if not 0.0 <= pricing.default_commission_pct <= 100.0:
        raise ValueError(
            "PRICING_DEFAULT_COMMISSION_PCT must be between 0 and 100, "
            f"got {pricing.default_commission_pct}"
        )

    if config.scheduling.min_slot_minutes < 1:
        raise ValueError(
            f"SCHEDULING_MIN_SLOT_MINUTES must be >= 1, got {config.scheduling.min_slot_minutes}"
        )
    if config.scheduling.horizon_days < 1:
        raise ValueError(
            f"SCHEDULING_HORIZON_DAYS must be >= 1, got {config.scheduling.horizon_days}"
        )

    payments = config.payments
    if payments.provider not in ("memory", "stripe"):
        raise ValueError(f"PAYMENT_PROVIDER must be 'memory' or 'stripe', got {payments.provider!r}")
    for name, value in [
        ("PAYMENT_AUTHORIZE_TIMEOUT_SEC", payments.authorize_timeout_sec),
        ("PAYMENT_CAPTURE_TIMEOUT_SEC", payments.capture_timeout_sec),
    ]:
        if value <= 0:
            raise ValueError(f"{name} must be > 0, got {value}")
    if payments.max_workers < 1:
        raise ValueError(f"PAYMENT_MAX_WORKERS must be >= 1, got {payments.max_workers}")

    if config.ledger.backend not in ("memory", "sql"):
        raise ValueError(f"LEDGER_BACKEND must be 'memory' or 'sql', got {config.ledger.backend!r}")

    if any(h < 1 for h in config.notifications.reminder_hours):
        raise ValueError(
            f"NOTIFY_REMINDER_HOURS must be >= 1, got {config.notifications.reminder_hours}"
        )
    if config.notifications.reminder_sweep_minutes < 1:
        raise ValueError(
            "NOTIFY_REMINDER_SWEEP_MINUTES must be >= 1, "
            f"got {config.notifications.reminder_sweep_minutes}"
        )


def load_config() -> AppConfig:
    """Load and validate application configuration."""
    config = AppConfig()
    _validate_config(config)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger.info("Configuration loaded for '%s'", config.service_name)
    return config


# Singleton instance
settings = load_config()
