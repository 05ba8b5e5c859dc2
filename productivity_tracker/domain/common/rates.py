"""Ratio helpers. A zero denominator always yields 0.0, never NaN."""
from __future__ import annotations

from typing import Iterable, Optional


def percent(part: float, whole: float, digits: int = 1) -> float:
    if not whole:
        return 0.0
    return round(part / whole * 100.0, digits)


def mean_or_zero(values: Iterable[Optional[float]], digits: int = 1) -> float:
    present = [v for v in values if v is not None]
    if not present:
        return 0.0
    return round(sum(present) / len(present), digits)
