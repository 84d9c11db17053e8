"""Derived KPI ratios with null-on-zero-denominator semantics."""

from __future__ import annotations

import math
from decimal import Decimal
from typing import Union

Number = Union[int, float, Decimal]

RATIO_PRECISION = 6


def safe_ratio(numerator: Number | None, denominator: Number | None) -> float | None:
    """``numerator / denominator``, or None when undefined. Never NaN or infinity."""
    if numerator is None or denominator is None:
        return None
    denominator = float(denominator)
    if denominator == 0 or not math.isfinite(denominator):
        return None
    value = float(numerator) / denominator
    if not math.isfinite(value):
        return None
    return round(value, RATIO_PRECISION)


def roas(revenue: Number | None, spend: Number | None) -> float | None:
    return safe_ratio(revenue, spend)


def cos(spend: Number | None, revenue: Number | None) -> float | None:
    return safe_ratio(spend, revenue)


def aov(revenue: Number | None, conversions: Number | None) -> float | None:
    return safe_ratio(revenue, conversions)


def micros_to_units(micros: int | None) -> float | None:
    if micros is None:
        return None
    return round(micros / 1_000_000, RATIO_PRECISION)


def cents_to_units(cents: int | None) -> float | None:
    if cents is None:
        return None
    return round(cents / 100, 2)
