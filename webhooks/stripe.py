# webhooks/stripe.py
"""
Stripe event handlers.

Each handler receives the event's data.object as a plain dict, changes the
session (no commit) and returns a small result dict for the response body.
webhooks/routes.py verifies the signature, dedupes and commits.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from flask import current_app

from app import db
from models import Customer, Invoice, Payment, Plan, Subscription, LIVE_SUBSCRIPTION_STATUSES
from services.dates import add_interval, from_timestamp, utcnow
from services.events import record_event
from services.payments import record_provider_payment

# Stripe subscription.status -> local status
STATUS_MAP = {
    "trialing": "trialing",
    "active": "active",
    "past_due": "past_due",
    "unpaid": "past_due",
    "paused": "paused",
    "canceled": "canceled",
    "incomplete": "incomplete",
    "incomplete_expired": "incomplete",
}


# ------------------ lookups ------------------

def _int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _find_customer(stripe_customer_id: Optional[str], metadata: Optional[dict] = None,
                   client_reference_id: Optional[str] = None) -> Optional[Customer]:
    local_id = _int(client_reference_id) or _int((metadata or {}).get("customer_id"))
    if local_id:
        c = db.session.get(Customer, local_id)
        if c:
            return c
    if stripe_customer_id:
        return Customer.query.filter_by(stripe_customer_id=stripe_customer_id).first()
    return None


def _find_subscription(stripe_subscription_id: Optional[str], metadata: Optional[dict] = None) -> Optional[Subscription]:
    if stripe_subscription_id:
        sub = Subscription.query.filter_by(stripe_subscription_id=stripe_subscription_id).first()
        if sub:
            return sub
    local_id = _int((metadata or {}).get("subscription_id"))
    return db.session.get(Subscription, local_id) if local_id else None


def _find_invoice(obj: Dict[str, Any]) -> Optional[Invoice]:
    """Local invoice for a Stripe invoice object (by id, then by metadata)."""
    inv = Invoice.query.filter_by(stripe_invoice_id=obj.get("id")).first() if obj.get("id") else None
    if inv is None:
        local_id = _int((obj.get("metadata") or {}).get("invoice_id"))
        inv = db.session.get(Invoice, local_id) if local_id else None
    return inv


def _first_item(obj: Dict[str, Any]) -> Dict[str, Any]:
    items = ((obj.get("items") or {}).get("data")) or []
    return items[0] if items else {}


def _sub_event(sub: Subscription, event_type: str, **meta: Any) -> None:
    record_event(
        event_type, "subscription", sub.id,
        organization_id=sub.customer.organization_id,
        metadata={"customer_id": sub.customer_id, "status": sub.status, "source": "stripe", **meta},
    )


# ------------------ checkout ------------------

def checkout_completed(obj: Dict[str, Any]) -> Dict[str, Any]:
    meta = obj.get("metadata") or {}
    customer = _find_customer(obj.get("customer"), meta, obj.get("client_reference_id"))
    if customer is None:
        return {"note": "customer not found"}

    if obj.get("customer") and customer.stripe_customer_id != obj.get("customer"):
        customer.stripe_customer_id = obj["customer"]

    stripe_sub_id = obj.get("subscription")
    if (obj.get("mode") or "").lower() != "subscription" or not stripe_sub_id:
        return {"customer_id": customer.id}

    sub = _find_subscription(stripe_sub_id, meta)
    if sub is None:
        plan = db.session.get(Plan, _int(meta.get("plan_id"))) if _int(meta.get("plan_id")) else None
        if plan is None and meta.get("price_id"):
            plan = Plan.query.filter_by(organization_id=customer.organization_id,
                                        stripe_price_id=meta["price_id"]).first()
        if plan is None or plan.organization_id != customer.organization_id:
            current_app.logger.info("[Stripe] checkout for unknown plan; customer=%s", customer.id)
            return {"customer_id": customer.id, "note": "plan not found"}

        live = Subscription.query.filter(
            Subscription.customer_id == customer.id,
            Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES),
        ).first()
        if live is not None:
            # one live subscription per customer: link instead of duplicating
            live.stripe_subscription_id = stripe_sub_id
            return {"customer_id": customer.id, "subscription_id": live.id, "linked": True}

        now = utcnow()
        sub = Subscription(
            customer_id=customer.id,
            plan_id=plan.id,
            status="active",
            quantity=1,
            current_period_start=now,
            current_period_end=add_interval(now, plan.interval),
            stripe_subscription_id=stripe_sub_id,
            meta={"source": "checkout"},
            created_at=now,
        )
        sub.customer = customer
        sub.plan = plan
        db.session.add(sub)
        db.session.flush()
        _sub_event(sub, "SUBSCRIPTION_CREATED", plan_id=plan.id)
    elif not sub.stripe_subscription_id:
        sub.stripe_subscription_id = stripe_sub_id

    return {"customer_id": customer.id, "subscription_id": sub.id}


# ------------------ subscriptions ------------------

def subscription_updated(obj: Dict[str, Any]) -> Dict[str, Any]:
    sub = _find_subscription(obj.get("id"), obj.get("metadata"))
    if sub is None:
        return {"note": "subscription not found"}

    previous = sub.status
    sub.status = STATUS_MAP.get(obj.get("status") or "", sub.status)

    # period fields moved from the subscription to its items in newer API versions
    item = _first_item(obj)
    start = from_timestamp(obj.get("current_period_start") or item.get("current_period_start"))
    end = from_timestamp(obj.get("current_period_end") or item.get("current_period_end"))
    if start and end:
        sub.current_period_start, sub.current_period_end = start, end
    if obj.get("trial_end"):
        sub.trial_end = from_timestamp(obj["trial_end"])
    sub.cancel_at_period_end = bool(obj.get("cancel_at_period_end"))
    if item.get("quantity"):
        sub.quantity = int(item["quantity"])

    price_id = (item.get("price") or {}).get("id")
    if price_id and price_id != sub.plan.stripe_price_id:
        plan = Plan.query.filter_by(
            organization_id=sub.customer.organization_id, stripe_price_id=price_id
        ).first()
        if plan is not None:
            sub.plan = plan
            sub.plan_id = plan.id
        else:
            current_app.logger.info("[Stripe] unknown price_id=%s; plan unchanged", price_id)

    _sub_event(sub, "SUBSCRIPTION_UPDATED", previous_status=previous)
    return {"subscription_id": sub.id, "status": sub.status}


def subscription_deleted(obj: Dict[str, Any]) -> Dict[str, Any]:
    sub = _find_subscription(obj.get("id"), obj.get("metadata"))
    if sub is None:
        return {"note": "subscription not found"}
    if sub.status != "canceled":
        sub.status = "canceled"
        sub.canceled_at = from_timestamp(obj.get("canceled_at")) or utcnow()
        sub.cancel_at_period_end = False
        _sub_event(sub, "SUBSCRIPTION_CANCELLED", at_period_end=False)
    return {"subscription_id": sub.id, "status": sub.status}


# ------------------ invoices ------------------

def invoice_paid(obj: Dict[str, Any]) -> Dict[str, Any]:
    inv = _find_invoice(obj)
    if inv is None:
        return {"note": "invoice not found"}
    if inv.status == "paid":
        return {"invoice_id": inv.id, "status": inv.status, "note": "already paid"}
    payment = record_provider_payment(
        "stripe",
        obj.get("payment_intent") or obj["id"],
        "succeeded",
        amount=int(obj.get("amount_paid") or 0) or None,
        currency=obj.get("currency"),
        invoice=inv,
    )
    sub = inv.subscription
    if sub is not None and sub.status == "past_due":
        sub.status = "active"
    return {"invoice_id": inv.id, "status": inv.status, "payment_id": payment.id if payment else None}


def invoice_payment_failed(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Mirror the failure locally. Stripe owns the retries, so no dunning is scheduled."""
    inv = _find_invoice(obj)
    sub = inv.subscription if inv is not None else _find_subscription(obj.get("subscription"))
    if sub is not None and sub.status in ("active", "trialing"):
        sub.status = "past_due"
    if inv is None:
        return {"subscription_id": sub.id if sub else None, "note": "invoice not found"}
    if obj.get("id") and not inv.stripe_invoice_id:
        inv.stripe_invoice_id = obj["id"]

    reason = ((obj.get("last_finalization_error") or {}).get("message")) or "invoice payment failed"
    record_provider_payment(
        "stripe",
        obj.get("payment_intent") or obj["id"],
        "failed",
        amount=int(obj.get("amount_due") or 0) or None,
        currency=obj.get("currency"),
        invoice=inv,
        failure_reason=reason,
    )
    return {"invoice_id": inv.id, "subscription_id": sub.id if sub else None}


# ------------------ payment intents / charges ------------------

def _intent_invoice(obj: Dict[str, Any]) -> Optional[Invoice]:
    local_id = _int((obj.get("metadata") or {}).get("invoice_id"))
    return db.session.get(Invoice, local_id) if local_id else None


def payment_intent_succeeded(obj: Dict[str, Any]) -> Dict[str, Any]:
    p = record_provider_payment(
        "stripe",
        obj["id"],
        "succeeded",
        amount=int(obj.get("amount_received") or obj.get("amount") or 0),
        currency=obj.get("currency"),
        invoice=_intent_invoice(obj),
        customer=_find_customer(obj.get("customer"), obj.get("metadata")),
    )
    return {"payment_id": p.id if p else None}


def payment_intent_failed(obj: Dict[str, Any]) -> Dict[str, Any]:
    error = obj.get("last_payment_error") or {}
    p = record_provider_payment(
        "stripe",
        obj["id"],
        "failed",
        amount=int(obj.get("amount") or 0),
        currency=obj.get("currency"),
        invoice=_intent_invoice(obj),
        customer=_find_customer(obj.get("customer"), obj.get("metadata")),
        failure_reason=error.get("message") or error.get("code"),
    )
    return {"payment_id": p.id if p else None}


def charge_refunded(obj: Dict[str, Any]) -> Dict[str, Any]:
    intent_id = obj.get("payment_intent")
    p = Payment.query.filter_by(provider="stripe", external_id=intent_id).first() if intent_id else None
    if p is None:
        return {"note": "payment not found"}

    refunded = int(obj.get("amount_refunded") or 0)
    if refunded >= int(p.amount):
        record_provider_payment("stripe", intent_id, "refunded", amount=refunded)
    elif refunded > int(p.refunded_amount or 0):
        p.refunded_amount = refunded
        record_event(
            "PAYMENT_REFUNDED", "payment", p.id,
            organization_id=p.organization_id,
            metadata={"customer_id": p.customer_id, "invoice_id": p.invoice_id,
                      "refunded_amount": refunded, "provider": "stripe"},
        )
    return {"payment_id": p.id, "refunded_amount": int(p.refunded_amount or 0)}


HANDLERS: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    "checkout.session.completed": checkout_completed,
    "customer.subscription.created": subscription_updated,
    "customer.subscription.updated": subscription_updated,
    "customer.subscription.deleted": subscription_deleted,
    "invoice.paid": invoice_paid,
    "invoice.payment_succeeded": invoice_paid,
    "invoice.payment_failed": invoice_payment_failed,
    "payment_intent.succeeded": payment_intent_succeeded,
    "payment_intent.payment_failed": payment_intent_failed,
    "charge.refunded": charge_refunded,
}
