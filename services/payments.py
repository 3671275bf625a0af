# services/payments.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import urljoin

from flask import current_app

from app import db
from models import Customer, Invoice, Organization, Payment, Plan
from services.dates import from_timestamp, utcnow
from services.errors import Conflict, NotFound, PaymentRequired, ProviderError, ValidationFailed
from services.events import record_event
from services.invoices import register_payment
from services.settings import ensure_stripe, get_cfg


def _payment_event(p: Payment, event_type: str, severity: str = "INFO", **meta: Any) -> None:
    record_event(
        event_type,
        "payment",
        p.id,
        organization_id=p.organization_id,
        severity=severity,
        metadata={
            "customer_id": p.customer_id,
            "invoice_id": p.invoice_id,
            "amount": p.amount,
            "currency": p.currency,
            "provider": p.provider,
            **meta,
        },
    )


# ------------------------- Stripe customers -------------------------

def ensure_stripe_customer(customer: Customer) -> str:
    if customer.stripe_customer_id:
        return customer.stripe_customer_id
    stripe = ensure_stripe()
    try:
        sc = stripe.Customer.create(
            email=customer.email or None,
            name=customer.name,
            metadata={"customer_id": str(customer.id), "organization_id": str(customer.organization_id)},
        )
    except stripe.StripeError as e:
        current_app.logger.error("[Stripe] customer create failed customer=%s: %s", customer.id, e)
        raise ProviderError(getattr(e, "user_message", None) or "Unable to create Stripe customer")
    customer.stripe_customer_id = sc["id"]
    current_app.logger.info("[Stripe] customer created customer=%s", customer.id)
    return customer.stripe_customer_id


# ------------------------- charging -------------------------

def pay_invoice(invoice: Invoice, now: Optional[datetime] = None, schedule_retry: bool = True) -> Payment:
    """
    Charge the amount due off-session with the customer's default payment method.
    A declined charge is not raised: it returns a failed Payment, records
    PAYMENT_FAILED and (optionally) schedules dunning.
    """
    now = now or utcnow()
    if invoice.status != "open":
        raise Conflict(f"Cannot pay a {invoice.status} invoice.")
    amount = invoice.amount_due
    if amount <= 0:
        raise ValidationFailed("Invoice has nothing due.")
    customer = invoice.customer
    if not customer.default_payment_method:
        raise PaymentRequired("Customer has no default payment method.")

    stripe = ensure_stripe()
    stripe_customer = ensure_stripe_customer(customer)

    p = Payment(
        organization_id=invoice.organization_id,
        customer_id=customer.id,
        invoice_id=invoice.id,
        amount=amount,
        currency=invoice.currency,
        provider="stripe",
        status="pending",
        created_at=now,
    )
    db.session.add(p)

    failure: Optional[str] = None
    try:
        intent = stripe.PaymentIntent.create(
            amount=amount,
            currency=invoice.currency,
            customer=stripe_customer,
            payment_method=customer.default_payment_method,
            confirm=True,
            off_session=True,
            description=f"Invoice {invoice.number}",
            metadata={"invoice_id": str(invoice.id), "invoice_number": invoice.number},
        )
        p.external_id = intent["id"]
        status = intent["status"]
        if status == "succeeded":
            p.status = "succeeded"
        elif status == "processing":
            p.status = "pending"
        else:
            failure = f"payment intent {status}"
    except stripe.StripeError as e:
        # CardError (decline) and API errors both leave the invoice open
        failure = getattr(e, "user_message", None) or str(e)

    db.session.flush()
    if failure:
        p.status = "failed"
        p.failure_reason = failure[:255]
        current_app.logger.warning("[Stripe] charge failed invoice=%s: %s", invoice.number, failure)
        _payment_event(p, "PAYMENT_FAILED", severity="WARNING",
                       message=f"Payment for invoice {invoice.number} failed: {failure}")
        if schedule_retry:
            from services.dunning import schedule_dunning
            schedule_dunning(invoice, now)
        return p

    if p.status == "succeeded":
        register_payment(invoice, amount, now)
        _payment_event(p, "PAYMENT_SUCCEEDED")
    current_app.logger.info("[Stripe] charge %s invoice=%s amount=%s", p.status, invoice.number, amount)
    return p


def record_manual_payment(invoice: Invoice, amount: int, reference: Optional[str] = None,
                          now: Optional[datetime] = None) -> Payment:
    amount = int(amount)
    if amount <= 0:
        raise ValidationFailed("Amount must be greater than zero.")
    if amount > invoice.amount_due:
        raise ValidationFailed("Amount exceeds the amount due.", amount_due=invoice.amount_due)
    p = Payment(
        organization_id=invoice.organization_id,
        customer_id=invoice.customer_id,
        invoice_id=invoice.id,
        amount=amount,
        currency=invoice.currency,
        provider="manual",
        status="succeeded",
        external_id=reference,
        created_at=now or utcnow(),
    )
    db.session.add(p)
    register_payment(invoice, amount, now)
    db.session.flush()
    _payment_event(p, "PAYMENT_SUCCEEDED", reference=reference)
    return p


def record_provider_payment(
    provider: str,
    external_id: str,
    status: str,
    amount: Optional[int] = None,
    currency: Optional[str] = None,
    invoice: Optional[Invoice] = None,
    customer: Optional[Customer] = None,
    failure_reason: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[Payment]:
    """
    Upsert a payment reported by a provider webhook, keyed by (provider, external_id).
    Succeeded payments settle their invoice once.
    """
    p = Payment.query.filter_by(provider=provider, external_id=external_id).first()
    if p is None:
        if invoice is None and customer is None:
            current_app.logger.info("[%s] payment %s has no local invoice/customer; skipping",
                                    provider.title(), external_id)
            return None
        customer = customer or invoice.customer
        p = Payment(
            organization_id=customer.organization_id,
            customer_id=customer.id,
            invoice_id=invoice.id if invoice else None,
            amount=int(amount if amount is not None else (invoice.amount_due if invoice else 0)),
            currency=(currency or (invoice.currency if invoice else customer.currency) or "usd").lower(),
            provider=provider,
            status="pending",
            external_id=external_id,
            meta=metadata or {},
        )
        db.session.add(p)
        db.session.flush()

    previous = p.status
    if status == previous:
        return p

    if status == "succeeded":
        p.status = "succeeded"
        p.failure_reason = None
        inv = p.invoice
        if inv is not None and inv.status in ("open", "uncollectible") and inv.amount_due > 0 and p.amount > 0:
            register_payment(inv, min(p.amount, inv.amount_due))
        _payment_event(p, "PAYMENT_SUCCEEDED")
    elif status == "failed":
        p.status = "failed"
        p.failure_reason = (failure_reason or "declined")[:255]
        _payment_event(p, "PAYMENT_FAILED", severity="WARNING",
                       message=f"{provider} payment {external_id} failed")
    elif status == "refunded":
        p.status = "refunded"
        p.refunded_amount = int(amount if amount is not None else p.amount)
        _payment_event(p, "PAYMENT_REFUNDED", refunded_amount=p.refunded_amount)
    else:
        p.status = status
    return p


# ------------------------- payment methods -------------------------

def _method_dict(pm: Dict[str, Any], default_id: Optional[str]) -> Dict[str, Any]:
    card = pm.get("card") or {}
    created = from_timestamp(pm.get("created"))
    return {
        "id": pm["id"],
        "type": pm.get("type"),
        "brand": card.get("brand"),
        "last4": card.get("last4"),
        "exp_month": card.get("exp_month"),
        "exp_year": card.get("exp_year"),
        "is_default": pm["id"] == default_id,
        "created_at": created.isoformat() if created else None,
    }


def _stripe_error(label: str, e: Exception) -> ProviderError:
    current_app.logger.error("[Stripe] %s failed: %s", label, e)
    return ProviderError(getattr(e, "user_message", None) or f"Stripe {label} failed")


def _owned_method(stripe, customer: Customer, payment_method_id: str) -> Dict[str, Any]:
    """Retrieve a payment method and check it is attached to this customer."""
    try:
        pm = stripe.PaymentMethod.retrieve(payment_method_id)
    except stripe.StripeError as e:
        if getattr(e, "code", None) == "resource_missing":
            raise NotFound("Payment method not found")
        raise _stripe_error("payment method lookup", e)
    if not customer.stripe_customer_id or pm.get("customer") != customer.stripe_customer_id:
        raise NotFound("Payment method not found")
    return pm


def _set_default(stripe, customer: Customer, payment_method_id: Optional[str]) -> None:
    try:
        stripe.Customer.modify(
            customer.stripe_customer_id,
            invoice_settings={"default_payment_method": payment_method_id or ""},
        )
    except stripe.StripeError as e:
        raise _stripe_error("default payment method update", e)
    customer.default_payment_method = payment_method_id


def list_payment_methods(customer: Customer, limit: int = 10,
                         starting_after: Optional[str] = None) -> Dict[str, Any]:
    out: Dict[str, Any] = {"data": [], "has_more": False,
                           "default_payment_method": customer.default_payment_method}
    if not customer.stripe_customer_id:
        return out
    stripe = ensure_stripe()
    params: Dict[str, Any] = {"customer": customer.stripe_customer_id, "type": "card", "limit": limit}
    if starting_after:
        params["starting_after"] = starting_after
    try:
        result = stripe.PaymentMethod.list(**params)
    except stripe.StripeError as e:
        raise _stripe_error("payment method list", e)
    out["data"] = [_method_dict(pm, customer.default_payment_method) for pm in result.get("data") or []]
    out["has_more"] = bool(result.get("has_more"))
    return out


def attach_payment_method(customer: Customer, payment_method_id: str, make_default: bool = False) -> Dict[str, Any]:
    """Attach to the Stripe customer; the first method on file becomes the default."""
    stripe = ensure_stripe()
    stripe_customer = ensure_stripe_customer(customer)
    try:
        pm = stripe.PaymentMethod.attach(payment_method_id, customer=stripe_customer)
    except stripe.StripeError as e:
        raise _stripe_error("payment method attach", e)
    if make_default or not customer.default_payment_method:
        _set_default(stripe, customer, pm["id"])
    record_event(
        "PAYMENT_METHOD_ATTACHED", "payment_method", pm["id"],
        organization_id=customer.organization_id,
        metadata={"customer_id": customer.id, "is_default": customer.default_payment_method == pm["id"]},
    )
    return _method_dict(pm, customer.default_payment_method)


def set_default_payment_method(customer: Customer, payment_method_id: str) -> Dict[str, Any]:
    stripe = ensure_stripe()
    pm = _owned_method(stripe, customer, payment_method_id)
    _set_default(stripe, customer, pm["id"])
    return _method_dict(pm, customer.default_payment_method)


def detach_payment_method(customer: Customer, payment_method_id: str) -> Dict[str, Any]:
    """Detach from Stripe. Removing the default promotes the next card, if any."""
    stripe = ensure_stripe()
    pm = _owned_method(stripe, customer, payment_method_id)
    was_default = customer.default_payment_method == pm["id"]
    try:
        stripe.PaymentMethod.detach(pm["id"])
    except stripe.StripeError as e:
        raise _stripe_error("payment method detach", e)

    if was_default:
        remaining = list_payment_methods(customer, limit=1)["data"]
        _set_default(stripe, customer, remaining[0]["id"] if remaining else None)
    record_event(
        "PAYMENT_METHOD_REMOVED", "payment_method", pm["id"],
        organization_id=customer.organization_id,
        severity="WARNING",
        metadata={"customer_id": customer.id, "was_default": was_default,
                  "message": f"Payment method removed for customer {customer.name}"},
    )
    return {"id": pm["id"], "detached": True, "default_payment_method": customer.default_payment_method}


# ------------------------- refunds -------------------------

def refund_payment(payment: Payment, amount: Optional[int] = None, reason: Optional[str] = None) -> Payment:
    if payment.status not in ("succeeded",):
        raise Conflict(f"Cannot refund a {payment.status} payment.")
    remaining = int(payment.amount) - int(payment.refunded_amount or 0)
    amount = remaining if amount is None else int(amount)
    if amount <= 0:
        raise ValidationFailed("Refund amount must be greater than zero.")
    if amount > remaining:
        raise ValidationFailed("Refund exceeds the refundable amount.", refundable=remaining)

    if payment.provider == "stripe":
        if not payment.external_id:
            raise ValidationFailed("Payment has no Stripe reference.")
        stripe = ensure_stripe()
        try:
            stripe.Refund.create(
                payment_intent=payment.external_id,
                amount=amount,
                metadata={"payment_id": str(payment.id), "reason": reason or ""},
            )
        except stripe.StripeError as e:
            current_app.logger.error("[Stripe] refund failed payment=%s: %s", payment.id, e)
            raise ProviderError(getattr(e, "user_message", None) or "Refund failed at Stripe")

    payment.refunded_amount = int(payment.refunded_amount or 0) + amount
    if payment.refunded_amount >= payment.amount:
        payment.status = "refunded"
    _payment_event(payment, "PAYMENT_REFUNDED", refunded_amount=amount, reason=reason)
    current_app.logger.info("[Payment] refund payment=%s amount=%s", payment.id, amount)
    return payment


# ------------------------- history -------------------------

def get_payment(organization: Organization, payment_id: int) -> Payment:
    p = Payment.query.filter_by(id=payment_id, organization_id=organization.id).first()
    if not p:
        raise NotFound("Payment not found")
    return p


def payment_history(organization: Organization, customer_id: Optional[int] = None,
                    status: Optional[str] = None, page: int = 1, per_page: int = 20) -> Dict[str, Any]:
    q = Payment.query.filter_by(organization_id=organization.id)
    if customer_id:
        q = q.filter(Payment.customer_id == customer_id)
    if status:
        q = q.filter(Payment.status == status)
    pg = q.order_by(Payment.created_at.desc(), Payment.id.desc()).paginate(
        page=max(1, page), per_page=min(max(1, per_page), 100), error_out=False
    )
    return {
        "items": [p.to_dict() for p in pg.items],
        "page": pg.page,
        "per_page": pg.per_page,
        "total": pg.total,
        "pages": pg.pages,
    }


# ------------------------- hosted flows -------------------------

def _base_url(fallback: Optional[str] = None) -> str:
    explicit = get_cfg("APP_BASE_URL") or fallback or ""
    return explicit if explicit.endswith("/") else explicit + "/"


def create_checkout_session(customer: Customer, plan: Plan, base_url: Optional[str] = None) -> Dict[str, Any]:
    if not plan.stripe_price_id:
        raise ValidationFailed("Plan is not linked to a Stripe price.")
    stripe = ensure_stripe()
    stripe_customer = ensure_stripe_customer(customer)
    base = _base_url(base_url)
    params: Dict[str, Any] = {
        "mode": "subscription",
        "customer": stripe_customer,
        "line_items": [{"price": plan.stripe_price_id, "quantity": 1}],
        "success_url": urljoin(base, "billing?checkout=success"),
        "cancel_url": urljoin(base, "billing?checkout=cancel"),
        "allow_promotion_codes": True,
        "client_reference_id": str(customer.id),
        "metadata": {
            "customer_id": str(customer.id),
            "plan_id": str(plan.id),
            "price_id": plan.stripe_price_id,  # for webhook without extra fetch
        },
    }
    if plan.trial_days:
        params["subscription_data"] = {"trial_period_days": int(plan.trial_days)}
    try:
        session = stripe.checkout.Session.create(**params)
    except stripe.StripeError as e:
        raise ProviderError(getattr(e, "user_message", None) or str(e), status=400)
    return {"id": session["id"], "url": session["url"]}


def create_portal_session(customer: Customer, base_url: Optional[str] = None) -> Dict[str, Any]:
    if not customer.stripe_customer_id:
        raise ValidationFailed("Customer has no Stripe account yet.")
    stripe = ensure_stripe()
    try:
        session = stripe.billing_portal.Session.create(
            customer=customer.stripe_customer_id,
            return_url=urljoin(_base_url(base_url), "billing"),
        )
    except stripe.StripeError as e:
        raise ProviderError(getattr(e, "user_message", None) or str(e), status=400)
    return {"url": session["url"]}
