# services/proration.py
"""
Proration math (pure; no Flask/DB imports).

A plan change at `at` inside [start, end) credits the unused share of the old
price and charges the same share of the new price. All amounts are cents.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from services.money import half_up


@dataclass(frozen=True)
class Proration:
    credit: int
    charge: int
    net: int
    fraction: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def period_fraction(start: datetime, end: datetime, at: datetime) -> Decimal:
    """Share of the period still ahead of `at`, clamped to [0, 1]."""
    total = (end - start).total_seconds()
    if total <= 0:
        return Decimal(0)
    remaining = (end - at).total_seconds()
    frac = Decimal(str(remaining)) / Decimal(str(total))
    return max(Decimal(0), min(Decimal(1), frac))


def prorate(
    old_unit: int,
    old_qty: int,
    new_unit: int,
    new_qty: int,
    start: datetime,
    end: datetime,
    at: datetime,
) -> Proration:
    if old_unit == new_unit and old_qty == new_qty:
        return Proration(0, 0, 0, 0.0)

    frac = period_fraction(start, end, at)
    credit = half_up(Decimal(int(old_unit) * int(old_qty)) * frac)
    charge = half_up(Decimal(int(new_unit) * int(new_qty)) * frac)
    return Proration(credit=credit, charge=charge, net=charge - credit, fraction=float(frac))
