"""
Utility helpers for the ingestion app.
"""

from ingestion.utils.numbers import clamp, percentage, round_half_up

__all__ = [
    "clamp",
    "percentage",
    "round_half_up",
]
