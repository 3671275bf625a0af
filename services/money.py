# services/money.py
"""Integer-cent helpers. Every rounding in the billing path goes through half_up."""
from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

Number = Union[int, float, Decimal, str]


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() keeps 8.25 as 8.25 instead of its binary float expansion
    return Decimal(str(value))


def half_up(value: Number) -> int:
    return int(to_decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percent_of(amount_cents: int, percentage: Number) -> int:
    if not percentage:
        return 0
    return half_up(to_decimal(amount_cents) * to_decimal(percentage) / Decimal(100))


def cents_to_str(amount_cents: int) -> str:
    return f"{Decimal(int(amount_cents)) / Decimal(100):.2f}"
