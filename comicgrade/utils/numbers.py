# comicgrade/utils/numbers.py
from __future__ import annotations

import math

__all__ = ["round_half_up", "round_to_tenth", "clamp"]


def round_half_up(value: float) -> int:
    """
    Round to the nearest integer, halves away from zero for positives.

    Python's round() is banker's rounding (round(0.5) == 0); grades and
    scores here follow the usual half-up convention (8.925 -> 8.9 via 89.25).
    """
    return int(math.floor(float(value) + 0.5))


def round_to_tenth(value: float) -> float:
    return round_half_up(float(value) * 10) / 10


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))
