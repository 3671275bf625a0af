# services/usage_store.py
"""
Metered usage: recording (idempotent), aggregation, limit alerts and
volume-tier pricing for invoices.
"""
from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from flask import current_app
from sqlalchemy import func

from app import db
from models import InvoiceItem, PlanFeature, PricingTier, Subscription, UsageRecord
from services.dates import utcnow
from services.errors import Conflict, ValidationFailed
from services.events import record_event
from services.money import half_up, to_decimal

RECORDABLE_STATUSES = ("active", "trialing", "past_due")
AGGREGATIONS = ("sum", "max", "min", "avg", "last")


# ------------------------- validation -------------------------

def _check_quantity(quantity: Any) -> float:
    try:
        q = float(quantity)
    except (TypeError, ValueError):
        raise ValidationFailed("Quantity must be a number.")
    if not math.isfinite(q) or q < 0:
        raise ValidationFailed("Quantity must be a finite number >= 0.")
    return q


def _check_metric(metric: Any) -> str:
    m = str(metric or "").strip()
    if not m:
        raise ValidationFailed("Metric is required.")
    return m


def _check_subscription(sub: Subscription) -> None:
    if sub.status not in RECORDABLE_STATUSES:
        raise Conflict(f"Cannot record usage on a {sub.status} subscription.")


# ------------------------- aggregation -------------------------

def aggregate_usage(subscription_id: int, metric: str, start: datetime, end: datetime,
                    aggregation: str = "sum") -> float:
    """Aggregate over [start, end). No records -> 0."""
    aggregation = (aggregation or "sum").lower()
    if aggregation not in AGGREGATIONS:
        raise ValidationFailed(f"Unknown aggregation: {aggregation}")

    base = db.session.query(UsageRecord).filter(
        UsageRecord.subscription_id == subscription_id,
        UsageRecord.metric == metric,
        UsageRecord.recorded_at >= start,
        UsageRecord.recorded_at < end,
    )

    if aggregation == "last":
        row = base.order_by(UsageRecord.recorded_at.desc(), UsageRecord.id.desc()).first()
        return float(row.quantity) if row else 0.0

    fn = {"sum": func.sum, "max": func.max, "min": func.min, "avg": func.avg}[aggregation]
    value = base.with_entities(fn(UsageRecord.quantity)).scalar()
    return float(value or 0)


def _period_total(sub: Subscription, metric: str, feature: Optional[PlanFeature]) -> float:
    return aggregate_usage(
        sub.id, metric, sub.current_period_start, sub.current_period_end,
        feature.aggregation if feature else "sum",
    )


# ------------------------- limit alerts -------------------------

def _check_limits(sub: Subscription, metric: str, before: float, after: float) -> List[str]:
    """Fire USAGE_WARNING / USAGE_LIMIT_EXCEEDED when the period total crosses a threshold."""
    feature = sub.plan.feature_for(metric) if sub.plan else None
    if not feature or feature.limit is None or feature.limit <= 0:
        return []

    limit = float(feature.limit)
    warn_at = limit * (feature.warning_pct or 80) / 100.0
    org_id = sub.customer.organization_id
    fired = []

    meta = {
        "customer_id": sub.customer_id,
        "subscription_id": sub.id,
        "metric": metric,
        "usage": after,
        "limit": limit,
        "percent": round(after / limit * 100, 2),
    }

    if before < warn_at <= after:
        fired.append("USAGE_WARNING")
        record_event("USAGE_WARNING", "subscription", sub.id, organization_id=org_id,
                     severity="WARNING",
                     metadata={**meta, "message": f"{metric} usage reached {meta['percent']}% of the limit"})
    if before < limit <= after:
        fired.append("USAGE_LIMIT_EXCEEDED")
        record_event("USAGE_LIMIT_EXCEEDED", "subscription", sub.id, organization_id=org_id,
                     severity="ERROR",
                     metadata={**meta, "message": f"{metric} usage exceeded the limit of {limit:g}"})
    return fired


# ------------------------- recording -------------------------

def record_usage(
    subscription: Subscription,
    metric: str,
    quantity: Any,
    recorded_at: Optional[datetime] = None,
    idempotency_key: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> UsageRecord:
    metric = _check_metric(metric)
    quantity = _check_quantity(quantity)
    _check_subscription(subscription)

    if idempotency_key:
        existing = UsageRecord.query.filter_by(
            subscription_id=subscription.id, idempotency_key=idempotency_key
        ).first()
        if existing:
            return existing

    feature = subscription.plan.feature_for(metric) if subscription.plan else None
    before = _period_total(subscription, metric, feature)

    rec = UsageRecord(
        subscription_id=subscription.id,
        metric=metric,
        quantity=quantity,
        recorded_at=recorded_at or utcnow(),
        idempotency_key=idempotency_key,
        meta=metadata or {},
    )
    db.session.add(rec)
    db.session.flush()

    after = _period_total(subscription, metric, feature)
    _check_limits(subscription, metric, before, after)
    return rec


def record_usage_bulk(subscription: Subscription, records: Iterable[Dict[str, Any]]) -> List[UsageRecord]:
    """Validate every record first; insert all or none."""
    _check_subscription(subscription)
    records = list(records)
    if not records:
        raise ValidationFailed("No usage records supplied.")

    errors = []
    for i, r in enumerate(records):
        try:
            _check_metric(r.get("metric"))
            _check_quantity(r.get("quantity"))
        except ValidationFailed as e:
            errors.append({"index": i, "error": e.message})
    if errors:
        raise ValidationFailed("Invalid usage records.", details=errors)

    out = []
    for r in records:
        out.append(record_usage(
            subscription,
            r["metric"],
            r["quantity"],
            recorded_at=r.get("recorded_at"),
            idempotency_key=r.get("idempotency_key"),
            metadata=r.get("metadata"),
        ))
    current_app.logger.info("[Usage] bulk subscription=%s records=%s", subscription.id, len(out))
    return out


def list_usage(subscription: Subscription, metric: Optional[str] = None,
               start: Optional[datetime] = None, end: Optional[datetime] = None,
               limit: int = 500) -> List[UsageRecord]:
    q = UsageRecord.query.filter_by(subscription_id=subscription.id)
    if metric:
        q = q.filter(UsageRecord.metric == metric)
    if start:
        q = q.filter(UsageRecord.recorded_at >= start)
    if end:
        q = q.filter(UsageRecord.recorded_at < end)
    return q.order_by(UsageRecord.recorded_at.desc()).limit(limit).all()


# ------------------------- pricing -------------------------

def select_tier(quantity: float, tiers: List[PricingTier]) -> Optional[PricingTier]:
    """Smallest tier whose up_to covers quantity; unbounded tier last."""
    if not tiers:
        return None
    bounded = sorted((t for t in tiers if t.up_to is not None), key=lambda t: t.up_to)
    for t in bounded:
        if quantity <= t.up_to:
            return t
    unbounded = [t for t in tiers if t.up_to is None]
    return unbounded[0] if unbounded else bounded[-1]


def price_usage(quantity: float, tiers: List[PricingTier]) -> int:
    """Volume pricing: the whole quantity at one tier's unit price, plus its flat fee."""
    if quantity <= 0:
        return 0
    tier = select_tier(quantity, tiers)
    if tier is None:
        return 0
    return half_up(to_decimal(quantity) * to_decimal(tier.unit_amount) + int(tier.flat_amount or 0))


def _metrics_for(sub: Subscription) -> List[str]:
    plan = sub.plan
    names = [f.metric for f in plan.features] + [t.metric for t in plan.tiers]
    return list(dict.fromkeys(names))


def usage_summary(subscription: Subscription, start: Optional[datetime] = None,
                  end: Optional[datetime] = None) -> List[Dict[str, Any]]:
    start = start or subscription.current_period_start
    end = end or subscription.current_period_end
    recorded = [
        m for (m,) in db.session.query(UsageRecord.metric)
        .filter(UsageRecord.subscription_id == subscription.id,
                UsageRecord.recorded_at >= start, UsageRecord.recorded_at < end)
        .distinct()
        .all()
    ]
    metrics = list(dict.fromkeys(_metrics_for(subscription) + recorded))

    out = []
    for metric in metrics:
        feature = subscription.plan.feature_for(metric)
        aggregation = feature.aggregation if feature else "sum"
        total = aggregate_usage(subscription.id, metric, start, end, aggregation)
        included = float(feature.included) if feature else 0.0
        limit = float(feature.limit) if feature and feature.limit is not None else None
        billable = max(0.0, total - included)
        out.append({
            "metric": metric,
            "aggregation": aggregation,
            "total": total,
            "included": included,
            "limit": limit,
            "percent_of_limit": round(total / limit * 100, 2) if limit else None,
            "billable": billable,
            "estimated_amount": price_usage(billable, subscription.plan.tiers_for(metric)),
        })
    return out


def usage_line_items(subscription: Subscription, start: datetime, end: datetime) -> List[InvoiceItem]:
    """Unsaved invoice items for every metric with a non-zero overage price."""
    items = []
    for row in usage_summary(subscription, start, end):
        tiers = subscription.plan.tiers_for(row["metric"])
        amount = price_usage(row["billable"], tiers)
        if amount <= 0:
            continue
        qty = row["billable"]
        items.append(InvoiceItem(
            description=f"{row['metric']} usage ({qty:g} units)",
            quantity=qty,
            unit_amount=round(amount / qty, 4) if qty else 0,
            amount=amount,
            metric=row["metric"],
            period_start=start,
            period_end=end,
        ))
    return items
