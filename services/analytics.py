# services/analytics.py
from __future__ import annotations

import csv
import io
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from dateutil.relativedelta import relativedelta

from models import Customer, Organization, Payment, Subscription
from services.dates import month_start, utcnow
from services.money import cents_to_str

MRR_STATUSES = ("active", "past_due")


def _subs(organization: Organization):
    return Subscription.query.join(Customer).filter(Customer.organization_id == organization.id)


def mrr(organization: Organization) -> int:
    """Monthly recurring revenue in cents (yearly plans / 12)."""
    total = 0.0
    for sub in _subs(organization).filter(Subscription.status.in_(MRR_STATUSES)).all():
        total += sub.plan.monthly_amount * int(sub.quantity or 1)
    return int(round(total))


def churn_rate(organization: Organization, start: datetime, end: datetime) -> float:
    """Percent of subscriptions live at `start` that were canceled within [start, end)."""
    subs = _subs(organization)
    starting = subs.filter(
        Subscription.created_at < start,
        (Subscription.canceled_at.is_(None)) | (Subscription.canceled_at >= start),
        Subscription.status != "incomplete",
    ).count()
    churned = subs.filter(
        Subscription.canceled_at >= start,
        Subscription.canceled_at < end,
        Subscription.created_at < start,
    ).count()
    return round(churned / starting * 100, 2) if starting else 0.0


def _days(start: datetime, end: datetime) -> List[str]:
    out, d = [], start.date()
    while d < end.date() or (d == end.date() and end.time() != datetime.min.time()):
        out.append(d.isoformat())
        d += timedelta(days=1)
    return out


def revenue_by_day(organization: Organization, start: datetime, end: datetime) -> List[Dict[str, Any]]:
    buckets: "OrderedDict[str, Dict[str, int]]" = OrderedDict(
        (d, {"gross": 0, "refunds": 0}) for d in _days(start, end)
    )
    rows = Payment.query.filter(
        Payment.organization_id == organization.id,
        Payment.status.in_(("succeeded", "refunded")),
        Payment.created_at >= start,
        Payment.created_at < end,
    ).all()
    for p in rows:
        b = buckets.setdefault(p.created_at.date().isoformat(), {"gross": 0, "refunds": 0})
        b["gross"] += int(p.amount)
        b["refunds"] += int(p.refunded_amount or 0)
    return [{"date": d, **v, "net": v["gross"] - v["refunds"]} for d, v in sorted(buckets.items())]


def customer_growth(organization: Organization, start: datetime, end: datetime) -> Dict[str, Any]:
    q = Customer.query.filter(Customer.organization_id == organization.id)
    before = q.filter(Customer.created_at < start).count()
    new_rows = q.filter(Customer.created_at >= start, Customer.created_at < end).all()
    per_day: Dict[str, int] = {}
    for c in new_rows:
        k = c.created_at.date().isoformat()
        per_day[k] = per_day.get(k, 0) + 1
    return {
        "starting": before,
        "new": len(new_rows),
        "ending": before + len(new_rows),
        "growth_pct": round(len(new_rows) / before * 100, 2) if before else None,
        "by_day": [{"date": k, "new": v} for k, v in sorted(per_day.items())],
    }


def subscription_cohorts(organization: Organization, months: int = 6,
                         now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Retention by signup month: share of each cohort still subscribed N months later."""
    now = now or utcnow()
    first = month_start(now) - relativedelta(months=max(1, months) - 1)
    subs = _subs(organization).filter(Subscription.created_at >= first).all()

    cohorts: Dict[str, List[Subscription]] = OrderedDict()
    for i in range(max(1, months)):
        cohorts[(first + relativedelta(months=i)).strftime("%Y-%m")] = []
    for s in subs:
        cohorts.setdefault(s.created_at.strftime("%Y-%m"), []).append(s)

    out = []
    for key, members in cohorts.items():
        start = datetime.strptime(key, "%Y-%m")
        retention = []
        offset = 0
        while start + relativedelta(months=offset) <= now:
            checkpoint = start + relativedelta(months=offset + 1)
            alive = sum(1 for s in members if s.canceled_at is None or s.canceled_at >= checkpoint)
            retention.append(round(alive / len(members) * 100, 2) if members else None)
            offset += 1
        out.append({"cohort": key, "size": len(members), "retention": retention})
    return out


def revenue_summary(organization: Organization, start: datetime, end: datetime) -> Dict[str, Any]:
    days = revenue_by_day(organization, start, end)
    gross = sum(d["gross"] for d in days)
    refunds = sum(d["refunds"] for d in days)

    span = end - start
    prev = revenue_by_day(organization, start - span, start)
    prev_net = sum(d["net"] for d in prev)
    net = gross - refunds

    current_mrr = mrr(organization)
    status_counts: Dict[str, int] = {}
    for s in _subs(organization).all():
        status_counts[s.status] = status_counts.get(s.status, 0) + 1

    return {
        "start": start.isoformat(),
        "end": end.isoformat(),
        "gross_revenue": gross,
        "refunds": refunds,
        "net_revenue": net,
        "previous_net_revenue": prev_net,
        "growth_pct": round((net - prev_net) / prev_net * 100, 2) if prev_net else None,
        "mrr": current_mrr,
        "arr": current_mrr * 12,
        "churn_rate": churn_rate(organization, start, end),
        "subscriptions": status_counts,
        "customers": customer_growth(organization, start, end),
        "by_day": days,
    }


def export_revenue_csv(organization: Organization, start: datetime, end: datetime) -> str:
    buf = io.StringIO()
    w = csv.writer(buf)
    w.writerow(["date", "gross", "refunds", "net"])
    for d in revenue_by_day(organization, start, end):
        w.writerow([d["date"], cents_to_str(d["gross"]), cents_to_str(d["refunds"]), cents_to_str(d["net"])])
    return buf.getvalue()
