"""
Offline console demo: runs booking scenarios end to end without any API keys.

Uses the real pricing calculator, availability checker, lifecycle and
in-memory ledger, with the in-memory payment gateway standing in for the
card processor. No network calls.

Usage:
    python console_demo.py
    python console_demo.py --scenario per-minute
    python console_demo.py --scenario conflict
"""

import argparse
import sys
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from encore_booking.errors import BookingError
from encore_booking.experts import InMemoryExpertDirectory
from encore_booking.ledger.memory import InMemoryBookingLedger
from encore_booking.lifecycle.booking_service import BookingService
from encore_booking.notifications.notifier import RecordingNotifier
from encore_booking.payments.memory import InMemoryPaymentGateway
from encore_booking.schemas.booking_schema import (
    Actor,
    ActorRole,
    Booking,
    CreateBookingCommand,
    PricingMode,
)
from encore_booking.schemas.expert_schema import ExpertAvailability, ExpertProfile, ExpertRates

GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
DIM = "\033[2m"
RESET = "\033[0m"
BOLD = "\033[1m"

WEEKDAYS_9_TO_17 = {day: [{"start": 9, "end": 17}] for day in range(1, 6)}

DEMO_EXPERTS = [
    ExpertProfile(
        id="exp-1",
        display_name="Strategic Business Consultant",
        rates=ExpertRates.from_profile_columns(850, 1800, 3200, 5800),
        availability=ExpertAvailability(weekly=WEEKDAYS_9_TO_17),
    ),
    ExpertProfile(
        id="exp-2",
        display_name="Senior AI Engineer",
        rates=ExpertRates.from_profile_columns(600, 1200, 2200, 4000),
        availability=ExpertAvailability(weekly=WEEKDAYS_9_TO_17),
        commission_pct=15,
    ),
]

CLIENT = Actor(id="client-1", role=ActorRole.CLIENT)


def next_weekday_at(now: datetime, hour: int, min_lead: timedelta) -> datetime:
    """First Monday-Friday ``hour``:00 UTC at least ``min_lead`` after ``now``."""
    candidate = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    while candidate - now < min_lead or candidate.weekday() >= 5:
        candidate += timedelta(days=1)
    return candidate


class ConsoleSession:
    """Runs scripted booking scenarios and prints each step."""

    def __init__(self, now: Optional[datetime] = None) -> None:
        self.now = now or datetime.now(timezone.utc)
        self.ledger = InMemoryBookingLedger()
        self.payments = InMemoryPaymentGateway()
        self.notifier = RecordingNotifier()
        self.service = BookingService(
            ledger=self.ledger,
            payments=self.payments,
            experts=InMemoryExpertDirectory(DEMO_EXPERTS),
            notifier=self.notifier,
            clock=lambda: self.now,
        )

    def say(self, text: str) -> None:
        print(f"{GREEN}{BOLD}[booking]{RESET} {GREEN}{text}{RESET}")

    def system_log(self, text: str) -> None:
        print(f"{DIM}  >> {text}{RESET}")

    def warn(self, text: str) -> None:
        print(f"{YELLOW}  !! {text}{RESET}")

    def show(self, booking: Booking) -> None:
        self.system_log(
            f"{booking.id[:8]} {booking.status.value:<11} {booking.mode.value:<10} "
            f"price={booking.price_cents_total} net={booking.expert_net_cents} "
            f"rush={booking.rush_applied} auth={self.payments.status_of(booking.authorization_id)}"
        )

    def _request(self, expert_id: str, mode: PricingMode, start: datetime, minutes: int) -> Booking:
        return self.service.create(CreateBookingCommand(
            client_id=CLIENT.id,
            expert_id=expert_id,
            mode=mode,
            scheduled_start=start,
            scheduled_end=start + timedelta(minutes=minutes),
        ))

    def scenario_booking(self) -> None:
        start = next_weekday_at(self.now, 10, timedelta(hours=48))
        self.say(f"Client books a fixed 30-minute session with exp-1 at {start:%a %Y-%m-%d %H:%M} UTC")
        booking = self._request("exp-1", PricingMode.FIXED, start, 30)
        self.show(booking)
        for step in (
            lambda: self.service.confirm(booking.id),
            lambda: self.service.start(booking.id, start),
            lambda: self.service.complete(booking.id, start + timedelta(minutes=30)),
        ):
            self.show(step())

    def scenario_per_minute(self) -> None:
        start = next_weekday_at(self.now, 10, timedelta(hours=48))
        self.say("Client books 30 per-minute minutes with exp-2; the call lasts 22 minutes")
        booking = self._request("exp-2", PricingMode.PER_MINUTE, start, 30)
        self.show(booking)
        self.service.confirm(booking.id)
        self.service.start(booking.id, start)
        done = self.service.complete(booking.id, start + timedelta(minutes=22))
        self.show(done)
        self.system_log(f"captured {done.captured_cents} of {booking.price_cents_total} authorized")

    def scenario_conflict(self) -> None:
        start = next_weekday_at(self.now, 10, timedelta(hours=48))
        first = self._request("exp-1", PricingMode.FIXED, start, 30)
        self.service.confirm(first.id)
        self.show(self.ledger.require(first.id))
        self.say("A second client asks for the overlapping 10:15-10:45 slot")
        try:
            self._request("exp-1", PricingMode.FIXED, start + timedelta(minutes=15), 30)
        except BookingError as exc:
            self.warn(f"{exc.code}: {exc.message}")
        slot = self.service.next_available_slot("exp-1", start)
        self.say(f"Next available slot: {slot:%a %H:%M} UTC" if slot else "No slot in horizon")

    def scenario_rush(self) -> None:
        start = next_weekday_at(self.now, 10, timedelta(hours=1))
        lead = start - self.now
        self.say(f"Client books a fixed 30-minute session {lead} ahead")
        booking = self._request("exp-1", PricingMode.FIXED, start, 30)
        self.show(booking)
        cancelled = self.service.cancel(booking.id, CLIENT)
        self.show(cancelled)

    SCENARIOS: dict[str, str] = {
        "booking": "scenario_booking",
        "per-minute": "scenario_per_minute",
        "conflict": "scenario_conflict",
        "rush": "scenario_rush",
    }

    def run_scenario(self, scenario: str) -> None:
        runner: Callable[[], None] = getattr(self, self.SCENARIOS[scenario])
        print(f"\n{BOLD}=== {scenario} ==={RESET}")
        try:
            runner()
        except BookingError as exc:
            print(f"{RED}  xx {exc.code}: {exc.message}{RESET}")
        events = [event.value for event, _, _ in self.notifier.events]
        self.system_log(f"notifications: {events}")

    def run(self, scenarios: Optional[list[str]] = None) -> None:
        try:
            for scenario in scenarios or list(self.SCENARIOS):
                self.run_scenario(scenario)
                self.notifier.events.clear()
        finally:
            self.service.close()


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Offline booking console demo")
    parser.add_argument(
        "--scenario",
        choices=sorted(ConsoleSession.SCENARIOS),
        default=None,
        help="Run a single scenario (default: all).",
    )
    args = parser.parse_args(argv)
    session = ConsoleSession()
    session.run([args.scenario] if args.scenario else None)
    sys.stdout.flush()


if __name__ == "__main__":
    main()
