# services/subscriptions.py
"""
Subscription lifecycle: create / trial / change plan (prorated) / cancel /
pause / resume. Stripe is mirrored when the plan carries a stripe_price_id
and STRIPE_SECRET_KEY is configured; the local row stays authoritative.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from flask import current_app

from app import db
from models import Customer, Invoice, LIVE_SUBSCRIPTION_STATUSES, Organization, Plan, Subscription
from services.coupons import redeem_coupon, validate_coupon
from services.dates import add_interval, utcnow
from services.errors import Conflict, NotFound, ProviderError, ValidationFailed
from services.events import record_event
from services.proration import prorate
from services.settings import ensure_stripe, stripe_enabled


# ------------------------- helpers -------------------------

def _event(sub: Subscription, event_type: str, severity: str = "INFO", **meta: Any) -> None:
    record_event(
        event_type,
        "subscription",
        sub.id,
        organization_id=sub.customer.organization_id,
        severity=severity,
        metadata={"customer_id": sub.customer_id, "plan_id": sub.plan_id, "status": sub.status, **meta},
    )


def _stripe_linked(sub: Subscription) -> bool:
    return bool(sub.stripe_subscription_id) and stripe_enabled()


def _stripe_call(label: str, fn, *args, **kwargs):
    stripe = ensure_stripe()
    try:
        return fn(*args, **kwargs)
    except stripe.StripeError as e:
        current_app.logger.error("[Stripe] %s failed: %s", label, e)
        raise ProviderError(getattr(e, "user_message", None) or f"Stripe {label} failed")


def live_subscription_for(customer: Customer) -> Optional[Subscription]:
    return Subscription.query.filter(
        Subscription.customer_id == customer.id,
        Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES),
    ).first()


def get_subscription(organization: Organization, subscription_id: int) -> Subscription:
    sub = (
        Subscription.query.join(Customer)
        .filter(Subscription.id == subscription_id, Customer.organization_id == organization.id)
        .first()
    )
    if not sub:
        raise NotFound("Subscription not found")
    return sub


def list_subscriptions(organization: Organization, customer_id: Optional[int] = None,
                       status: Optional[str] = None) -> List[Subscription]:
    q = Subscription.query.join(Customer).filter(Customer.organization_id == organization.id)
    if customer_id:
        q = q.filter(Subscription.customer_id == customer_id)
    if status:
        q = q.filter(Subscription.status == status)
    return q.order_by(Subscription.id.desc()).all()


# ------------------------- create -------------------------

def create_subscription(
    customer: Customer,
    plan: Plan,
    quantity: int = 1,
    trial_days: Optional[int] = None,
    coupon_code: Optional[str] = None,
    now: Optional[datetime] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Subscription:
    now = now or utcnow()
    if not plan.active:
        raise ValidationFailed("Plan is not active.")
    if plan.organization_id != customer.organization_id:
        raise NotFound("Plan not found")
    quantity = int(quantity or 0)
    if quantity < 1:
        raise ValidationFailed("Quantity must be at least 1.")
    if live_subscription_for(customer):
        raise Conflict("Customer already has an active subscription.")

    coupon = None
    if coupon_code:
        check = validate_coupon(customer.organization_id, coupon_code, plan_id=plan.id, now=now)
        if not check["valid"]:
            raise ValidationFailed(check["reason"])
        coupon = check["coupon"]

    days = plan.trial_days if trial_days is None else int(trial_days)
    sub = Subscription(
        customer_id=customer.id,
        plan_id=plan.id,
        quantity=quantity,
        coupon_id=coupon.id if coupon else None,
        meta=metadata or {},
        created_at=now,
    )
    sub.customer = customer
    sub.plan = plan
    sub.coupon = coupon
    if days and days > 0:
        sub.status = "trialing"
        sub.trial_start = now
        sub.trial_end = now + timedelta(days=days)
        sub.current_period_start = now
        sub.current_period_end = sub.trial_end
    else:
        sub.status = "active"
        sub.current_period_start = now
        sub.current_period_end = add_interval(now, plan.interval)
    db.session.add(sub)
    db.session.flush()

    if coupon:
        redeem_coupon(coupon)

    latest_stripe_invoice = None
    if plan.stripe_price_id and stripe_enabled():
        from services.payments import ensure_stripe_customer
        stripe = ensure_stripe()
        params: Dict[str, Any] = {
            "customer": ensure_stripe_customer(customer),
            "items": [{"price": plan.stripe_price_id, "quantity": quantity}],
            "metadata": {"subscription_id": str(sub.id), "customer_id": str(customer.id)},
        }
        if sub.status == "trialing":
            params["trial_period_days"] = days
        if customer.default_payment_method:
            params["default_payment_method"] = customer.default_payment_method
        created = _stripe_call("subscription create", stripe.Subscription.create, **params)
        sub.stripe_subscription_id = created["id"]
        latest_stripe_invoice = created.get("latest_invoice")

    _event(sub, "SUBSCRIPTION_CREATED", quantity=quantity, trial_days=days or 0)
    if sub.status == "trialing":
        _event(sub, "TRIAL_STARTED", trial_end=sub.trial_end.isoformat())
    else:
        from services.invoices import create_invoice_from_subscription
        inv = create_invoice_from_subscription(
            sub, sub.current_period_start, sub.current_period_end, include_usage=False, now=now
        )
        if inv is not None and isinstance(latest_stripe_invoice, str):
            inv.stripe_invoice_id = latest_stripe_invoice

    current_app.logger.info("[Subscription] created id=%s customer=%s plan=%s status=%s",
                            sub.id, customer.id, plan.code, sub.status)
    return sub


def start_trial(customer: Customer, plan: Plan, trial_days: Optional[int] = None,
                now: Optional[datetime] = None) -> Subscription:
    days = plan.trial_days if trial_days is None else int(trial_days)
    if not days or days <= 0:
        raise ValidationFailed("Trial length must be at least one day.")
    return create_subscription(customer, plan, trial_days=days, now=now)


# ------------------------- plan changes -------------------------

def preview_plan_change(subscription: Subscription, new_plan: Plan, quantity: Optional[int] = None,
                        at: Optional[datetime] = None) -> Dict[str, Any]:
    at = at or utcnow()
    qty = int(quantity) if quantity is not None else int(subscription.quantity or 1)
    if qty < 1:
        raise ValidationFailed("Quantity must be at least 1.")
    old = subscription.plan
    if new_plan.currency != old.currency:
        raise ValidationFailed("Cannot switch between plans with different currencies.")

    if new_plan.id == old.id and qty == subscription.quantity:
        p = prorate(0, 0, 0, 0, subscription.current_period_start, subscription.current_period_end, at)
    else:
        p = prorate(
            int(old.price), int(subscription.quantity or 1),
            int(new_plan.price), qty,
            subscription.current_period_start, subscription.current_period_end, at,
        )
    return {
        "subscription_id": subscription.id,
        "current_plan_id": old.id,
        "new_plan_id": new_plan.id,
        "quantity": qty,
        "credit": p.credit,
        "charge": p.charge,
        "net": p.net,
        "fraction": round(p.fraction, 6),
        "currency": new_plan.currency,
        "next_invoice_date": subscription.current_period_end.isoformat(),
    }


def change_plan(subscription: Subscription, new_plan: Plan, quantity: Optional[int] = None,
                at: Optional[datetime] = None, actor_id: Optional[int] = None) -> Dict[str, Any]:
    at = at or utcnow()
    if subscription.status not in ("active", "trialing", "past_due"):
        raise Conflict(f"Cannot change plan of a {subscription.status} subscription.")
    if not new_plan.active:
        raise ValidationFailed("Plan is not active.")
    if new_plan.organization_id != subscription.customer.organization_id:
        raise NotFound("Plan not found")

    preview = preview_plan_change(subscription, new_plan, quantity, at)
    qty = preview["quantity"]
    old_plan_id = subscription.plan_id
    customer = subscription.customer

    # trials carry no paid period to prorate
    invoice: Optional[Invoice] = None
    if subscription.status != "trialing":
        if preview["net"] > 0:
            from services.invoices import create_invoice, finalize_invoice
            invoice = create_invoice(
                customer,
                [{
                    "description": f"Proration: {subscription.plan.name} -> {new_plan.name}",
                    "quantity": 1,
                    "unit_amount": preview["net"],
                    "period_start": at,
                    "period_end": subscription.current_period_end,
                }],
                subscription=subscription,
                period=(at, subscription.current_period_end),
                now=at,
            )
            finalize_invoice(invoice, now=at)
        elif preview["net"] < 0:
            from services.credits import add_credit
            add_credit(customer, -preview["net"], description="Plan change proration",
                       reason="downgrade", actor_id=actor_id)

    if _stripe_linked(subscription) and new_plan.stripe_price_id:
        stripe = ensure_stripe()
        remote = _stripe_call("subscription retrieve", stripe.Subscription.retrieve,
                              subscription.stripe_subscription_id)
        item_id = remote["items"]["data"][0]["id"]
        _stripe_call(
            "subscription update", stripe.Subscription.modify,
            subscription.stripe_subscription_id,
            items=[{"id": item_id, "price": new_plan.stripe_price_id, "quantity": qty}],
            proration_behavior="none",  # prorated locally
        )

    subscription.plan = new_plan
    subscription.plan_id = new_plan.id
    subscription.quantity = qty
    _event(subscription, "SUBSCRIPTION_UPDATED", previous_plan_id=old_plan_id, net=preview["net"])
    return {"subscription": subscription, "proration": preview, "invoice": invoice}


# ------------------------- cancel / pause / resume -------------------------

def cancel_subscription(subscription: Subscription, at_period_end: bool = True,
                        now: Optional[datetime] = None, reason: Optional[str] = None) -> Subscription:
    now = now or utcnow()
    if subscription.status == "canceled":
        raise Conflict("Subscription is already canceled.")

    if _stripe_linked(subscription):
        stripe = ensure_stripe()
        if at_period_end:
            _stripe_call("subscription cancel", stripe.Subscription.modify,
                         subscription.stripe_subscription_id, cancel_at_period_end=True)
        else:
            _stripe_call("subscription cancel", stripe.Subscription.cancel,
                         subscription.stripe_subscription_id)

    if at_period_end and subscription.status != "incomplete":
        subscription.cancel_at_period_end = True
    else:
        subscription.status = "canceled"
        subscription.canceled_at = now
        subscription.cancel_at_period_end = False
    _event(subscription, "SUBSCRIPTION_CANCELLED", at_period_end=bool(at_period_end), reason=reason)
    return subscription


def pause_subscription(subscription: Subscription, resume_at: Optional[datetime] = None,
                       now: Optional[datetime] = None) -> Subscription:
    now = now or utcnow()
    if subscription.status != "active":
        raise Conflict("Only active subscriptions can be paused.")
    if resume_at is not None and resume_at <= now:
        raise ValidationFailed("resume_at must be in the future.")

    if _stripe_linked(subscription):
        stripe = ensure_stripe()
        pause: Dict[str, Any] = {"behavior": "void"}
        if resume_at is not None:
            pause["resumes_at"] = int(resume_at.timestamp())
        _stripe_call("subscription pause", stripe.Subscription.modify,
                     subscription.stripe_subscription_id, pause_collection=pause)

    subscription.status = "paused"
    subscription.paused_at = now
    subscription.resume_at = resume_at
    _event(subscription, "SUBSCRIPTION_PAUSED", resume_at=resume_at.isoformat() if resume_at else None)
    return subscription


def resume_subscription(subscription: Subscription, now: Optional[datetime] = None) -> Subscription:
    now = now or utcnow()
    if subscription.status != "paused":
        raise Conflict("Only paused subscriptions can be resumed.")

    if _stripe_linked(subscription):
        stripe = ensure_stripe()
        _stripe_call("subscription resume", stripe.Subscription.modify,
                     subscription.stripe_subscription_id, pause_collection="")

    subscription.status = "active"
    subscription.paused_at = None
    subscription.resume_at = None
    if subscription.current_period_end <= now:
        subscription.current_period_start = now
        subscription.current_period_end = add_interval(now, subscription.plan.interval)
    _event(subscription, "SUBSCRIPTION_RESUMED")
    return subscription


# ------------------------- details -------------------------

def subscription_details(subscription: Subscription) -> Dict[str, Any]:
    from services.usage_store import usage_summary

    recent = (
        Invoice.query.filter_by(subscription_id=subscription.id)
        .order_by(Invoice.id.desc())
        .limit(5)
        .all()
    )
    out = subscription.to_dict()
    out["plan"] = subscription.plan.to_dict()
    out["usage"] = usage_summary(subscription)
    out["recent_invoices"] = [i.to_dict(with_items=False) for i in recent]
    return out
