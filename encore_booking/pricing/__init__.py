from encore_booking.pricing.calculator import (
    PriceQuote,
    PricingCalculator,
    PricingPolicy,
    expert_net_cents,
)

__all__ = ["PricingCalculator", "PricingPolicy", "PriceQuote", "expert_net_cents"]
