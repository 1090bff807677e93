"""
Command-line entry point for the booking core.

Usage:
    Price quote:   python main.py quote --mode fixed --minutes 30 --tier 30=3200 --lead-hours 48
                   python main.py quote --mode per_minute --minutes 22 --rate 600 --lead-hours 5
    Console demo:  python main.py demo [--scenario conflict]
"""

import argparse
import logging
import sys
from typing import Optional

from encore_booking.config import settings
from encore_booking.errors import BookingError
from encore_booking.pricing.calculator import PricingCalculator, PricingPolicy
from encore_booking.schemas.booking_schema import PricingMode
from encore_booking.schemas.expert_schema import ExpertRates

logger = logging.getLogger(__name__)


def _parse_tier(value: str) -> tuple[int, int]:
    """Parse ``MINUTES=CENTS``, e.g. ``30=3200``."""
    try:
        minutes, cents = value.split("=", 1)
        return int(minutes), int(cents)
    except ValueError:
        raise argparse.ArgumentTypeError(f"tier must look like MINUTES=CENTS, got {value!r}") from None


def _run_quote(args: argparse.Namespace) -> int:
    calculator = PricingCalculator(PricingPolicy.from_config(settings.pricing))
    rates = ExpertRates(rate_cents_per_minute=args.rate, fixed_tiers=dict(args.tier or []))
    try:
        quote = calculator.quote(
            PricingMode(args.mode), args.minutes, rates, args.lead_hours, commission_pct=args.commission
        )
    except BookingError as exc:
        logger.error("%s: %s", exc.code, exc.message)
        return 1
    sys.stdout.write(
        f"mode={quote.mode.value} billed_minutes={quote.billed_minutes} "
        f"price_cents_total={quote.price_cents_total} expert_net_cents={quote.expert_net_cents} "
        f"commission_pct={quote.commission_pct} rush_applied={quote.rush_applied}\n"
    )
    return 0


def _run_demo(args: argparse.Namespace) -> int:
    from console_demo import ConsoleSession

    session = ConsoleSession()
    session.run([args.scenario] if args.scenario else None)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Expert consultation booking core")
    sub = parser.add_subparsers(dest="command", required=True)

    quote = sub.add_parser("quote", help="Price a session.")
    quote.add_argument("--mode", choices=[m.value for m in PricingMode], required=True)
    quote.add_argument("--minutes", type=float, required=True, help="Requested duration in minutes.")
    quote.add_argument("--rate", type=int, default=None, help="Per-minute rate in cents.")
    quote.add_argument("--tier", type=_parse_tier, action="append", help="Fixed tier as MINUTES=CENTS.")
    quote.add_argument("--lead-hours", type=float, default=48.0, help="Hours until the session starts.")
    quote.add_argument("--commission", type=float, default=None, help="Commission override in percent.")
    quote.set_defaults(handler=_run_quote)

    demo = sub.add_parser("demo", help="Run the offline console demo.")
    demo.add_argument("--scenario", default=None, help="Scenario name (default: all).")
    demo.set_defaults(handler=_run_demo)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return args.handler(args)


if __name__ == "__main__":
    sys.exit(main())
