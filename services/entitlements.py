"""
Entitlements (plan -> capabilities) for a customer's subscription.

This module is pure logic (no Flask/DB imports). It reads lightweight
attributes off the objects it is given:
  - subscription.status, subscription.plan
  - plan.code, plan.features (metric, included, limit, warning_pct)
and optional usage totals for the current period {metric: total}.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

# Statuses that keep paid features switched on.
ENTITLED_STATUSES = frozenset({"active", "trialing", "past_due"})


def _feature_row(feature: Any, used: float) -> Dict[str, Any]:
    included = float(getattr(feature, "included", 0) or 0)
    limit = getattr(feature, "limit", None)
    limit = float(limit) if limit is not None else None
    remaining = None if limit is None else max(0.0, limit - used)
    warn_pct = int(getattr(feature, "warning_pct", 80) or 80)
    return {
        "included": included,
        "limit": limit,
        "used": used,
        "remaining": remaining,
        "overage": max(0.0, used - included),
        "warning": limit is not None and limit > 0 and used >= limit * warn_pct / 100.0,
        "exceeded": limit is not None and used >= limit,
    }


def get_entitlements(subscription: Any, usage: Optional[Mapping[str, float]] = None) -> Dict[str, Any]:
    """
    Compute effective entitlements for a subscription.

    Returns {"plan_key", "status", "active", "features": {metric: {...}}}.
    No subscription (or a canceled/incomplete/paused one) -> inactive with
    no features.
    """
    usage = usage or {}
    if subscription is None:
        return {"plan_key": None, "status": None, "active": False, "features": {}}

    status = getattr(subscription, "status", None)
    plan = getattr(subscription, "plan", None)
    active = status in ENTITLED_STATUSES and plan is not None
    base = {
        "plan_key": getattr(plan, "code", None),
        "status": status,
        "active": active,
        "features": {},
    }
    if not active:
        return base

    for f in getattr(plan, "features", []) or []:
        base["features"][f.metric] = _feature_row(f, float(usage.get(f.metric, 0) or 0))
    return base


def has_feature(entitlements: Mapping[str, Any], metric: str) -> bool:
    """True when the plan includes the metric and its limit is not used up."""
    if not entitlements.get("active"):
        return False
    row = entitlements.get("features", {}).get(metric)
    return bool(row) and not row["exceeded"]


def describe_plan(subscription: Any) -> str:
    """
    Human-friendly summary for account chips/badges, e.g.
    "PRO · active · api_calls: 1,000 included / 5,000 max".
    """
    ent = get_entitlements(subscription)
    if not ent["plan_key"]:
        return "No plan"
    parts = [str(ent["plan_key"]).upper(), ent["status"] or "unknown"]
    for metric, row in sorted(ent["features"].items()):
        cap = "unlimited" if row["limit"] is None else f"{row['limit']:,.0f} max"
        parts.append(f"{metric}: {row['included']:,.0f} included / {cap}")
    return " · ".join(parts)
