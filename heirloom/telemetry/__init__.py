"""
Heirloom — Observability Infrastructure

Structured logging.
"""

from heirloom.telemetry.logging import setup_logging

__all__ = ["setup_logging"]
