"""Booking pricing, slot-conflict and session-lifecycle core for expert consultations."""

__version__ = "0.1.0"
