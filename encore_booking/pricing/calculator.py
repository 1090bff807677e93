"""
Session pricing: fixed tiers, per-minute billing, rush surcharge, commission
and usage reconciliation.

Every function here is pure. Money is handled as integer cents and all
intermediate arithmetic uses ``Decimal`` so a 10% surcharge on 3200 is
exactly 3520, not 3520.0000000000005.

Usage:
    calc = PricingCalculator()
    quote = calc.quote(PricingMode.FIXED, 30, rates, lead_time_hours=48)
    quote.price_cents_total, quote.expert_net_cents  # (3200, 2560)
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from encore_booking.config import PricingConfig, settings
from encore_booking.errors import InvalidActualWindow, InvalidDuration, ValidationError
from encore_booking.schemas.booking_schema import PricingMode
from encore_booking.schemas.expert_schema import ExpertRates
from encore_booking.utils import ceil_minutes, round_cents

logger = logging.getLogger(__name__)

Minutes = Union[int, float, Decimal]


@dataclass(frozen=True)
class PricingPolicy:
    """Platform-wide pricing constants."""

    fixed_tiers_minutes: tuple[int, ...] = (15, 30, 60)
    minimum_minutes: int = 10
    rush_window_hours: float = 24.0
    rush_multiplier: Decimal = Decimal("1.10")
    default_commission_pct: float = 20.0

    @classmethod
    def from_config(cls, config: PricingConfig) -> "PricingPolicy":
        return cls(
            fixed_tiers_minutes=tuple(sorted(config.fixed_tiers_minutes)),
            minimum_minutes=config.minimum_minutes,
            rush_window_hours=config.rush_window_hours,
            rush_multiplier=Decimal(config.rush_multiplier),
            default_commission_pct=config.default_commission_pct,
        )


@dataclass(frozen=True)
class PriceQuote:
    """Result of pricing a session."""

    mode: PricingMode
    price_cents_total: int
    expert_net_cents: int
    commission_pct: float
    rush_applied: bool
    billed_minutes: int
    rate_cents_per_minute: Optional[Decimal] = None


def expert_net_cents(price_cents_total: int, commission_pct: float) -> int:
    """Expert's share after platform commission, rounded to the nearest cent."""
    if not 0 <= commission_pct <= 100:
        raise ValidationError(f"commission_pct must be between 0 and 100, got {commission_pct}")
    share = 1 - Decimal(str(commission_pct)) / 100
    return round_cents(Decimal(price_cents_total) * share)


def _whole_minutes(duration_minutes: Minutes) -> int:
    minutes = math.ceil(Decimal(str(duration_minutes)))
    if minutes <= 0:
        raise InvalidDuration(
            f"Session duration must be positive, got {duration_minutes} minutes",
            details={"duration_minutes": str(duration_minutes)},
        )
    return minutes


class PricingCalculator:
    """Prices sessions under a fixed ``PricingPolicy``."""

    def __init__(self, policy: Optional[PricingPolicy] = None) -> None:
        self.policy = policy or PricingPolicy.from_config(settings.pricing)

    def commission_for(self, override_pct: Optional[float] = None) -> float:
        return self.policy.default_commission_pct if override_pct is None else override_pct

    def is_rush(self, lead_time_hours: float) -> bool:
        return lead_time_hours < self.policy.rush_window_hours

    def apply_rush(self, price_cents: int) -> int:
        return round_cents(Decimal(price_cents) * self.policy.rush_multiplier)

    def fixed_tier_for(self, duration_minutes: Minutes, rates: ExpertRates) -> int:
        """Smallest published tier length covering ``duration_minutes``."""
        minutes = _whole_minutes(duration_minutes)
        offered = sorted(
            tier for tier in rates.fixed_tiers if tier in self.policy.fixed_tiers_minutes
        )
        for tier in offered:
            if tier >= minutes:
                return tier
        raise InvalidDuration(
            f"No fixed tier covers a {minutes}-minute session (tiers: {offered})",
            details={"duration_minutes": minutes, "tiers": offered},
        )

    def _per_minute(self, minutes: int, rate: Optional[Decimal]) -> tuple[int, int]:
        if rate is None:
            raise ValidationError("Expert does not offer per-minute sessions")
        billed = max(self.policy.minimum_minutes, minutes)
        return round_cents(billed * rate), billed

    def base_price(
        self, mode: PricingMode, duration_minutes: Minutes, rates: ExpertRates
    ) -> tuple[int, int]:
        """Price before surcharge, with the number of minutes it pays for."""
        if mode == PricingMode.FIXED:
            tier = self.fixed_tier_for(duration_minutes, rates)
            return rates.fixed_tiers[tier], tier
        return self._per_minute(_whole_minutes(duration_minutes), rates.rate_cents_per_minute)

    def price(
        self,
        mode: PricingMode,
        duration_minutes: Minutes,
        rates: ExpertRates,
        lead_time_hours: float,
    ) -> int:
        """Total price in cents, rush surcharge included."""
        return self.quote(mode, duration_minutes, rates, lead_time_hours).price_cents_total

    def quote(
        self,
        mode: PricingMode,
        duration_minutes: Minutes,
        rates: ExpertRates,
        lead_time_hours: float,
        commission_pct: Optional[float] = None,
    ) -> PriceQuote:
        price, billed = self.base_price(mode, duration_minutes, rates)
        rush = self.is_rush(lead_time_hours)
        if rush:
            price = self.apply_rush(price)
        pct = self.commission_for(commission_pct)
        return PriceQuote(
            mode=mode,
            price_cents_total=price,
            expert_net_cents=expert_net_cents(price, pct),
            commission_pct=pct,
            rush_applied=rush,
            billed_minutes=billed,
            rate_cents_per_minute=rates.rate_cents_per_minute if mode == PricingMode.PER_MINUTE else None,
        )

    def reconcile(
        self,
        actual_start: datetime,
        actual_end: datetime,
        rate_cents_per_minute: Decimal,
        commission_pct: float,
        rush_applied: bool = False,
    ) -> PriceQuote:
        """
        Re-price a finished per-minute session from its recorded boundaries.

        Uses the rate locked in at creation. A surcharge decided at creation
        carries over; it is never decided anew here. So 22 minutes at 600
        cents is 13200 only for a booking made without the rush surcharge;
        the same call on a rush booking reconciles to 14520.
        """
        if actual_end <= actual_start:
            raise InvalidActualWindow(
                f"actual_end ({actual_end.isoformat()}) must be after "
                f"actual_start ({actual_start.isoformat()})"
            )
        price, billed = self._per_minute(ceil_minutes(actual_end - actual_start), rate_cents_per_minute)
        if rush_applied:
            price = self.apply_rush(price)
        logger.debug("Reconciled %d billed minutes to %d cents", billed, price)
        return PriceQuote(
            mode=PricingMode.PER_MINUTE,
            price_cents_total=price,
            expert_net_cents=expert_net_cents(price, commission_pct),
            commission_pct=commission_pct,
            rush_applied=rush_applied,
            billed_minutes=billed,
            rate_cents_per_minute=rate_cents_per_minute,
        )
