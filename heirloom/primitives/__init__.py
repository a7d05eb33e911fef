"""
Heirloom — Primitives

Shared identifiers, timestamps, and concurrency helpers used across systems.
"""

from heirloom.primitives.common import new_id, utc_now
from heirloom.primitives.singleflight import SingleFlight

__all__ = ["new_id", "utc_now", "SingleFlight"]
