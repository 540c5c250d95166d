from __future__ import annotations

"""
Table-driven market value estimate.

Only used when the pricing engine did not return a usable valuation:
age-bucket base value x nearest grade multiplier x key-issue multiplier.
"""

from typing import Optional

from .config import (
    AGE_BUCKETS,
    GRADE_MULTIPLIERS,
    KEY_ISSUE_MULTIPLIER,
    MODERN_BASE_VALUE,
)
from .utils.numbers import round_half_up


def base_value(year: Optional[int]) -> int:
    """Older books start higher. Unknown years are priced as modern."""
    if year is None:
        return MODERN_BASE_VALUE
    for before, value in AGE_BUCKETS:
        if int(year) < before:
            return value
    return MODERN_BASE_VALUE


def grade_multiplier(grade: float) -> float:
    """
    Multiplier of the nearest table grade by absolute distance.

    Ties (e.g. 9.5 between 9.4 and 9.6) resolve to the higher grade because
    the table is scanned from the top and only a strictly closer entry
    replaces the current pick.
    """
    best_grade = None
    best_dist = None
    for table_grade in sorted(GRADE_MULTIPLIERS, reverse=True):
        dist = abs(table_grade - float(grade))
        if best_dist is None or dist < best_dist - 1e-9:
            best_grade, best_dist = table_grade, dist
    return GRADE_MULTIPLIERS[best_grade]


def estimate_value(grade: float, year: Optional[int], key_issue: bool) -> int:
    value = base_value(year) * grade_multiplier(grade)
    if key_issue:
        value *= KEY_ISSUE_MULTIPLIER
    return round_half_up(value)
