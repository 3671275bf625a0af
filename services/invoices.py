# services/invoices.py
"""
Invoice lifecycle: draft -> open -> paid | void | uncollectible.

Totals:
  subtotal = sum(item.amount)
  discount = coupon discount, capped at subtotal
  tax      = tax on (subtotal - discount) for the customer's jurisdiction
  total    = subtotal - discount + tax
  amount_due = total - credit_applied - amount_paid  (never negative)
"""
from __future__ import annotations

import csv
import io
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from flask import current_app

from app import db
from models import Coupon, Customer, Invoice, InvoiceItem, Organization, Subscription
from services.coupons import compute_discount
from services.dates import utcnow
from services.errors import Conflict, NotFound, ValidationFailed
from services.events import notify, record_event
from services.money import cents_to_str, half_up, to_decimal
from services.settings import cfg_bool, cfg_int, get_cfg
from services.tax import calculate_tax_for_customer

ItemLike = Union[InvoiceItem, Dict[str, Any]]


# ------------------------- helpers -------------------------

def invoice_number(invoice: Invoice, now: Optional[datetime] = None) -> str:
    """INV-202501-000042 (prefix, issue month, zero-padded id)."""
    prefix = get_cfg("INVOICE_NUMBER_PREFIX") or "INV"
    stamp = (invoice.created_at or now or utcnow()).strftime("%Y%m")
    return f"{prefix}-{stamp}-{invoice.id:06d}"


def _to_item(item: ItemLike) -> InvoiceItem:
    if isinstance(item, InvoiceItem):
        if item.amount is None:
            item.amount = half_up(to_decimal(item.quantity or 0) * to_decimal(item.unit_amount or 0))
        return item

    description = str(item.get("description") or "").strip()
    if not description:
        raise ValidationFailed("Each invoice item needs a description.")
    quantity = float(item.get("quantity", 1))
    unit_amount = float(item.get("unit_amount", 0))
    if quantity < 0:
        raise ValidationFailed("Item quantity must be >= 0.")
    amount = item.get("amount")
    if amount is None:
        amount = half_up(to_decimal(quantity) * to_decimal(unit_amount))
    return InvoiceItem(
        description=description,
        quantity=quantity,
        unit_amount=unit_amount,
        amount=int(amount),
        metric=item.get("metric"),
        period_start=item.get("period_start"),
        period_end=item.get("period_end"),
    )


def _require_status(invoice: Invoice, allowed: Tuple[str, ...], action: str) -> None:
    if invoice.status not in allowed:
        raise Conflict(f"Cannot {action} a {invoice.status} invoice.")


def _event(invoice: Invoice, event_type: str, severity: str = "INFO", **meta: Any) -> None:
    record_event(
        event_type,
        "invoice",
        invoice.id,
        organization_id=invoice.organization_id,
        severity=severity,
        metadata={
            "customer_id": invoice.customer_id,
            "invoice_number": invoice.number,
            "total": invoice.total,
            "amount_due": invoice.amount_due,
            **meta,
        },
    )


# ------------------------- create / edit -------------------------

def create_invoice(
    customer: Customer,
    items: Iterable[ItemLike],
    subscription: Optional[Subscription] = None,
    currency: Optional[str] = None,
    period: Optional[Tuple[datetime, datetime]] = None,
    due_days: Optional[int] = None,
    notes: Optional[str] = None,
    coupon: Optional[Coupon] = None,
    now: Optional[datetime] = None,
) -> Invoice:
    now = now or utcnow()
    currency = (currency or (subscription.plan.currency if subscription else None)
                or customer.currency or "usd").lower()

    inv = Invoice(
        number=f"DRAFT-{uuid.uuid4().hex[:12]}",
        organization_id=customer.organization_id,
        customer_id=customer.id,
        subscription_id=subscription.id if subscription else None,
        status="draft",
        currency=currency,
        period_start=period[0] if period else None,
        period_end=period[1] if period else None,
        notes=notes,
        coupon_id=coupon.id if coupon else None,
        created_at=now,
    )
    if due_days is not None:
        inv.due_date = now + timedelta(days=int(due_days))
    inv.customer = customer
    inv.coupon = coupon
    for it in items:
        inv.items.append(_to_item(it))

    db.session.add(inv)
    db.session.flush()
    inv.number = invoice_number(inv, now)

    recalculate(inv, now=now)
    _event(inv, "INVOICE_CREATED")
    current_app.logger.info("[Invoice] created %s customer=%s total=%s", inv.number, customer.id, inv.total)
    return inv


def add_invoice_item(invoice: Invoice, item: ItemLike) -> InvoiceItem:
    _require_status(invoice, ("draft",), "add items to")
    row = _to_item(item)
    invoice.items.append(row)
    recalculate(invoice)
    return row


def recalculate(invoice: Invoice, now: Optional[datetime] = None) -> Invoice:
    _require_status(invoice, ("draft",), "recalculate")

    subtotal = sum(int(i.amount or 0) for i in invoice.items)
    discount = compute_discount(subtotal, invoice.coupon)
    taxable = subtotal - discount

    tax = calculate_tax_for_customer(taxable, invoice.currency, invoice.customer, now=now)

    invoice.subtotal = subtotal
    invoice.discount = discount
    invoice.tax_rate = tax.tax_rate
    invoice.tax_amount = tax.tax_amount
    invoice.tax_jurisdiction = tax.jurisdiction
    invoice.total = taxable + tax.tax_amount
    return invoice


# ------------------------- transitions -------------------------

def finalize_invoice(invoice: Invoice, now: Optional[datetime] = None) -> Invoice:
    _require_status(invoice, ("draft",), "finalize")
    now = now or utcnow()
    recalculate(invoice, now=now)

    invoice.status = "open"
    invoice.issued_at = now
    if invoice.due_date is None:
        invoice.due_date = now + timedelta(days=cfg_int("INVOICE_DUE_DAYS", 30))
    _event(invoice, "INVOICE_FINALIZED")

    if cfg_bool("AUTO_APPLY_CREDIT", True) and int(invoice.customer.credit_balance or 0) > 0 \
            and invoice.amount_due > 0:
        from services.credits import apply_credit_to_invoice
        apply_credit_to_invoice(invoice.customer, invoice)

    if invoice.status == "open" and invoice.amount_due == 0:
        mark_paid(invoice, now)
    return invoice


def mark_paid(invoice: Invoice, now: Optional[datetime] = None) -> Invoice:
    if invoice.status == "paid":
        return invoice
    _require_status(invoice, ("open", "uncollectible"), "mark paid")
    invoice.status = "paid"
    invoice.paid_at = now or utcnow()
    _event(invoice, "INVOICE_PAID")
    return invoice


def register_payment(invoice: Invoice, amount: int, now: Optional[datetime] = None) -> Invoice:
    amount = int(amount)
    if amount <= 0:
        raise ValidationFailed("Payment amount must be greater than zero.")
    _require_status(invoice, ("open", "uncollectible"), "pay")
    invoice.amount_paid = int(invoice.amount_paid or 0) + amount
    if invoice.amount_due == 0:
        mark_paid(invoice, now)
    return invoice


def void_invoice(invoice: Invoice, now: Optional[datetime] = None) -> Invoice:
    if invoice.status == "paid":
        raise Conflict("Paid invoices cannot be voided; refund the payment instead.")
    _require_status(invoice, ("draft", "open"), "void")
    invoice.status = "void"
    invoice.voided_at = now or utcnow()
    _event(invoice, "INVOICE_VOIDED")
    return invoice


def mark_uncollectible(invoice: Invoice) -> Invoice:
    _require_status(invoice, ("open",), "mark uncollectible")
    invoice.status = "uncollectible"
    _event(invoice, "INVOICE_UNCOLLECTIBLE", severity="WARNING",
           message=f"Invoice {invoice.number} marked uncollectible")
    return invoice


def send_invoice(invoice: Invoice) -> Invoice:
    _require_status(invoice, ("open", "paid"), "send")
    customer = invoice.customer
    notify(
        invoice.organization_id,
        type="INVOICE_SENT",
        title=f"Invoice {invoice.number}",
        message=f"Invoice {invoice.number} for {cents_to_str(invoice.total)} {invoice.currency.upper()} "
                f"sent to {customer.email or customer.name}",
        customer_id=customer.id,
        data={"invoice_id": invoice.id, "email": customer.email},
    )
    _event(invoice, "INVOICE_SENT", email=customer.email)
    return invoice


# ------------------------- subscription cycles -------------------------

def create_invoice_from_subscription(
    subscription: Subscription,
    period_start: datetime,
    period_end: datetime,
    include_usage: bool = True,
    now: Optional[datetime] = None,
    usage_period: Optional[Tuple[datetime, datetime]] = None,
) -> Optional[Invoice]:
    """
    Base line for the period plus usage overage, finalized. None for a
    zero-total cycle. Usage is read from `usage_period` when given (renewals
    bill the base in advance and usage for the period that just ended).
    """
    from services.usage_store import usage_line_items

    plan = subscription.plan
    qty = int(subscription.quantity or 1)
    items: List[ItemLike] = []
    if int(plan.price or 0) > 0:
        items.append({
            "description": f"{plan.name} - {period_start:%Y-%m-%d} to {period_end:%Y-%m-%d}",
            "quantity": qty,
            "unit_amount": int(plan.price),
            "period_start": period_start,
            "period_end": period_end,
        })
    if include_usage:
        u_start, u_end = usage_period or (period_start, period_end)
        items.extend(usage_line_items(subscription, u_start, u_end))

    items = [_to_item(i) for i in items]
    if sum(i.amount for i in items) <= 0:
        current_app.logger.info("[Invoice] skip zero-total cycle subscription=%s", subscription.id)
        return None

    coupon = subscription.coupon if subscription.coupon and subscription.coupon.active else None
    inv = create_invoice(
        subscription.customer,
        items,
        subscription=subscription,
        period=(period_start, period_end),
        coupon=coupon,
        now=now,
    )
    return finalize_invoice(inv, now=now)


# ------------------------- read / export -------------------------

def get_invoice(organization: Organization, invoice_id: int) -> Invoice:
    inv = Invoice.query.filter_by(id=invoice_id, organization_id=organization.id).first()
    if not inv:
        raise NotFound("Invoice not found")
    return inv


def invoice_to_dict(invoice: Invoice) -> Dict[str, Any]:
    out = invoice.to_dict()
    c = invoice.customer
    out["customer"] = {"id": c.id, "name": c.name, "email": c.email} if c else None
    out["payments"] = [p.to_dict() for p in invoice.payments]
    return out


def export_invoice_csv(invoice: Invoice) -> str:
    buf = io.StringIO()
    w = csv.writer(buf)
    w.writerow(["invoice", invoice.number])
    w.writerow(["customer", invoice.customer.name if invoice.customer else ""])
    w.writerow(["status", invoice.status])
    w.writerow(["issued_at", invoice.issued_at.isoformat() if invoice.issued_at else ""])
    w.writerow(["due_date", invoice.due_date.isoformat() if invoice.due_date else ""])
    w.writerow([])
    w.writerow(["description", "quantity", "unit_amount", "amount"])
    for it in invoice.items:
        w.writerow([it.description, f"{it.quantity:g}", cents_to_str(half_up(it.unit_amount)),
                    cents_to_str(it.amount)])
    w.writerow([])
    w.writerow(["subtotal", cents_to_str(invoice.subtotal)])
    w.writerow(["discount", cents_to_str(invoice.discount)])
    w.writerow(["tax", cents_to_str(invoice.tax_amount)])
    w.writerow(["total", cents_to_str(invoice.total)])
    w.writerow(["credit_applied", cents_to_str(invoice.credit_applied)])
    w.writerow(["amount_paid", cents_to_str(invoice.amount_paid)])
    w.writerow(["amount_due", cents_to_str(invoice.amount_due)])
    w.writerow(["currency", invoice.currency.upper()])
    return buf.getvalue()


def list_invoices(
    organization: Organization,
    customer_id: Optional[int] = None,
    status: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    page: int = 1,
    per_page: int = 20,
) -> Dict[str, Any]:
    q = Invoice.query.filter_by(organization_id=organization.id)
    if customer_id:
        q = q.filter(Invoice.customer_id == customer_id)
    if status:
        q = q.filter(Invoice.status == status)
    if start:
        q = q.filter(Invoice.created_at >= start)
    if end:
        q = q.filter(Invoice.created_at < end)
    pg = q.order_by(Invoice.created_at.desc(), Invoice.id.desc()).paginate(
        page=max(1, page), per_page=min(max(1, per_page), 100), error_out=False
    )
    return {
        "items": [i.to_dict(with_items=False) for i in pg.items],
        "page": pg.page,
        "per_page": pg.per_page,
        "total": pg.total,
        "pages": pg.pages,
    }
