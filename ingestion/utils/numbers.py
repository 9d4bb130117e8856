"""
Numeric helpers shared by scoring, strategy and budget code.

Python's built-in round() rounds half to even; scores and rates in this
service round half away from zero so that 76.65 -> 76.7 and 50.5 -> 51.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

Number = Union[int, float]


def round_half_up(value: Number, places: int = 0) -> Number:
    """
    Round a number half away from zero.

    Args:
        value: Number to round
        places: Decimal places to keep (0 returns an int)

    Returns:
        Rounded int when places == 0, otherwise a float
    """
    quantum = Decimal(1).scaleb(-places)
    rounded = Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP)
    if places == 0:
        return int(rounded)
    return float(rounded)


def clamp(value: Number, lower: Number = 0, upper: Number = 100) -> Number:
    """Clamp value into [lower, upper]."""
    return max(lower, min(upper, value))


def percentage(used: Number, limit: Number) -> float:
    """100 * used / limit. May exceed 100; 0 when limit is not positive."""
    if limit <= 0:
        return 0.0
    return 100.0 * used / limit
