"""Expert profile, rate card and recurring availability models."""

from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class TimeInterval(BaseModel):
    """Half-open ``[start, end)`` range of whole hours within one day."""

    model_config = ConfigDict(frozen=True)

    start: int = Field(ge=0, le=23)
    end: int = Field(ge=1, le=24)

    @model_validator(mode="after")
    def _check_order(self) -> "TimeInterval":
        if self.end <= self.start:
            raise ValueError(f"interval end ({self.end}) must be after start ({self.start})")
        return self


class ExpertAvailability(BaseModel):
    """
    Recurring weekly availability in the expert's own timezone.

    Weekdays are numbered 0 (Sunday) to 6 (Saturday), matching the
    ``availability_json`` stored on expert profiles, e.g.
    ``{"1": [{"start": 9, "end": 17}]}`` for Mondays 09:00-17:00.
    """

    model_config = ConfigDict(frozen=True)

    weekly: dict[int, list[TimeInterval]] = Field(default_factory=dict)
    timezone: str = "UTC"

    @field_validator("weekly")
    @classmethod
    def _check_weekly(cls, weekly: dict[int, list[TimeInterval]]) -> dict[int, list[TimeInterval]]:
        for weekday, intervals in weekly.items():
            if not 0 <= weekday <= 6:
                raise ValueError(f"weekday must be 0-6, got {weekday}")
            for prev, cur in zip(intervals, intervals[1:]):
                if cur.start < prev.start:
                    raise ValueError(f"intervals for weekday {weekday} are not sorted by start")
                if cur.start < prev.end:
                    raise ValueError(f"intervals for weekday {weekday} overlap")
        return weekly

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone: {value!r}") from None
        return value

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def intervals_for(self, weekday: int) -> list[TimeInterval]:
        return self.weekly.get(weekday, [])


class ExpertRates(BaseModel):
    """Published prices: a per-minute rate and/or flat prices per duration tier."""

    model_config = ConfigDict(frozen=True)

    rate_cents_per_minute: Optional[Decimal] = Field(default=None, gt=0)
    fixed_tiers: dict[int, int] = Field(default_factory=dict)

    @field_validator("fixed_tiers")
    @classmethod
    def _check_tiers(cls, tiers: dict[int, int]) -> dict[int, int]:
        for minutes, cents in tiers.items():
            if minutes < 1:
                raise ValueError(f"tier length must be >= 1 minute, got {minutes}")
            if cents < 0:
                raise ValueError(f"tier price must be >= 0 cents, got {cents}")
        return tiers

    @classmethod
    def from_profile_columns(
        cls,
        rate_cents_per_minute: Optional[int] = None,
        fixed_15m_cents: Optional[int] = None,
        fixed_30m_cents: Optional[int] = None,
        fixed_60m_cents: Optional[int] = None,
    ) -> "ExpertRates":
        """Build a rate card from the flat columns of an expert profile row."""
        tiers = {
            minutes: cents
            for minutes, cents in [(15, fixed_15m_cents), (30, fixed_30m_cents), (60, fixed_60m_cents)]
            if cents is not None
        }
        return cls(rate_cents_per_minute=rate_cents_per_minute, fixed_tiers=tiers)


class ExpertProfile(BaseModel):
    """The parts of an expert profile the booking core reads."""

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str = ""
    rates: ExpertRates
    availability: ExpertAvailability = Field(default_factory=ExpertAvailability)
    # Reduced-fee agreements (e.g. founding experts) override the platform default.
    commission_pct: Optional[float] = Field(default=None, ge=0, le=100)
    is_active: bool = True
