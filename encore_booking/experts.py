"""
Expert directory collaborator.

In production the profiles come from the managed database's
``expert_profiles`` table; the in-memory directory serves the console demo
and tests.
"""

import logging
import threading
from typing import Optional, Protocol

from encore_booking.errors import ExpertNotFound
from encore_booking.schemas.expert_schema import ExpertProfile

logger = logging.getLogger(__name__)


class ExpertDirectory(Protocol):
    def get(self, expert_id: str) -> Optional[ExpertProfile]:
        ...


class InMemoryExpertDirectory:
    """Dict-backed expert profiles."""

    def __init__(self, profiles: Optional[list[ExpertProfile]] = None) -> None:
        self._profiles: dict[str, ExpertProfile] = {}
        self._lock = threading.Lock()
        for profile in profiles or []:
            self.upsert(profile)

    def get(self, expert_id: str) -> Optional[ExpertProfile]:
        with self._lock:
            return self._profiles.get(expert_id)

    def upsert(self, profile: ExpertProfile) -> ExpertProfile:
        """Add or replace a profile (the expert or an admin editing availability or rates)."""
        with self._lock:
            self._profiles[profile.id] = profile
        logger.debug("Expert profile %s stored", profile.id)
        return profile


def require_active_expert(directory: ExpertDirectory, expert_id: str) -> ExpertProfile:
    """Look up a bookable expert or raise ExpertNotFound."""
    profile = directory.get(expert_id)
    if profile is None or not profile.is_active:
        raise ExpertNotFound(f"Expert {expert_id} not found", details={"expert_id": expert_id})
    return profile
