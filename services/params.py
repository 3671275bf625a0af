# services/params.py
"""Query-string helpers shared by the JSON blueprints."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Tuple

from flask import request

from services.dates import parse_dt, utcnow
from services.errors import ValidationFailed


def int_arg(name: str, default: Optional[int] = None, lo: int = 1, hi: Optional[int] = None) -> Optional[int]:
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    try:
        n = int(raw)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{name} must be an integer.")
    n = max(lo, n)
    return min(n, hi) if hi is not None else n


def limit_arg(default: int = 100, max_cap: int = 500) -> int:
    return int_arg("limit", default, lo=1, hi=max_cap)


def bool_arg(name: str) -> Optional[bool]:
    raw = (request.args.get(name) or "").strip().lower()
    if not raw:
        return None
    return raw in {"1", "true", "yes", "on"}


def date_arg(name: str) -> Optional[datetime]:
    try:
        return parse_dt(request.args.get(name))
    except (ValueError, OverflowError):
        raise ValidationFailed(f"{name} must be an ISO-8601 date.")


def date_range(default_days: int = 30) -> Tuple[datetime, datetime]:
    """?start=&end= (end exclusive); defaults to the last `default_days` days."""
    end = date_arg("end") or utcnow()
    start = date_arg("start") or (end - timedelta(days=default_days))
    if start >= end:
        raise ValidationFailed("start must be before end.")
    return start, end
