# services/dates.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from dateutil.relativedelta import relativedelta
from dateutil import parser as _dtparser


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def add_interval(start: datetime, interval: str, count: int = 1) -> datetime:
    """Advance by calendar months/years (Jan 31 + 1 month -> Feb 28/29)."""
    if interval == "year":
        return start + relativedelta(years=count)
    if interval == "month":
        return start + relativedelta(months=count)
    if interval == "week":
        return start + relativedelta(weeks=count)
    if interval == "day":
        return start + relativedelta(days=count)
    raise ValueError(f"Unknown billing interval: {interval!r}")


def month_start(d: datetime) -> datetime:
    return d.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def parse_dt(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-ish date string from a query arg; aware values are converted to naive UTC."""
    if not value:
        return None
    dt = _dtparser.isoparse(value)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def from_timestamp(ts) -> Optional[datetime]:
    """Stripe-style unix seconds -> naive UTC."""
    if ts in (None, ""):
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).replace(tzinfo=None)
