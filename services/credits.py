# services/credits.py
from __future__ import annotations

from typing import List, Optional

from flask import current_app

from app import db
from models import CreditAdjustment, Customer, Invoice
from services.dates import utcnow
from services.errors import Conflict, ValidationFailed
from services.events import record_event


def _positive(amount) -> int:
    try:
        amount = int(amount)
    except (TypeError, ValueError):
        raise ValidationFailed("Amount must be a whole number of cents.")
    if amount <= 0:
        raise ValidationFailed("Amount must be greater than zero.")
    return amount


def _ledger(customer: Customer, amount: int, kind: str, description: Optional[str],
            reason: Optional[str], invoice_id: Optional[int], actor_id: Optional[int]) -> CreditAdjustment:
    row = CreditAdjustment(
        customer_id=customer.id,
        amount=amount,
        kind=kind,
        description=description,
        reason=reason,
        invoice_id=invoice_id,
        balance_after=int(customer.credit_balance or 0),
        actor_id=actor_id,
        created_at=utcnow(),
    )
    db.session.add(row)
    return row


def add_credit(customer: Customer, amount, description: Optional[str] = None,
               reason: Optional[str] = None, actor_id: Optional[int] = None) -> CreditAdjustment:
    amount = _positive(amount)
    customer.credit_balance = int(customer.credit_balance or 0) + amount
    row = _ledger(customer, amount, "CREDIT", description, reason, None, actor_id)
    record_event(
        "CREDIT_ADDED", "customer", customer.id,
        organization_id=customer.organization_id,
        metadata={"customer_id": customer.id, "amount": amount, "balance": customer.credit_balance, "reason": reason},
        actor_id=actor_id,
    )
    current_app.logger.info("[Credit] +%s customer=%s balance=%s", amount, customer.id, customer.credit_balance)
    return row


def deduct_credit(customer: Customer, amount, description: Optional[str] = None,
                  reason: Optional[str] = None, actor_id: Optional[int] = None) -> CreditAdjustment:
    amount = _positive(amount)
    balance = int(customer.credit_balance or 0)
    if amount > balance:
        raise ValidationFailed("Insufficient credit balance.", balance=balance)
    customer.credit_balance = balance - amount
    row = _ledger(customer, -amount, "DEBIT", description, reason, None, actor_id)
    record_event(
        "CREDIT_DEDUCTED", "customer", customer.id,
        organization_id=customer.organization_id,
        metadata={"customer_id": customer.id, "amount": amount, "balance": customer.credit_balance, "reason": reason},
        actor_id=actor_id,
    )
    return row


def apply_credit_to_invoice(customer: Customer, invoice: Invoice, amount=None,
                            actor_id: Optional[int] = None) -> int:
    """Apply min(amount, balance, amount due). Returns the cents applied (0 if nothing to do)."""
    if invoice.customer_id != customer.id:
        raise ValidationFailed("Invoice does not belong to this customer.")
    if invoice.status not in ("draft", "open"):
        raise Conflict(f"Cannot apply credit to a {invoice.status} invoice.")

    balance = int(customer.credit_balance or 0)
    wanted = invoice.amount_due if amount is None else _positive(amount)
    applied = min(wanted, balance, invoice.amount_due)
    if applied <= 0:
        return 0

    customer.credit_balance = balance - applied
    invoice.credit_applied = int(invoice.credit_applied or 0) + applied
    _ledger(customer, -applied, "APPLIED", f"Applied to invoice {invoice.number}", None, invoice.id, actor_id)

    record_event(
        "CREDIT_APPLIED", "invoice", invoice.id,
        organization_id=customer.organization_id,
        metadata={"customer_id": customer.id, "amount": applied, "invoice_number": invoice.number},
        actor_id=actor_id,
    )

    if invoice.status == "open" and invoice.amount_due == 0:
        from services.invoices import mark_paid
        mark_paid(invoice)
    return applied


def credit_history(customer: Customer, limit: int = 100) -> List[CreditAdjustment]:
    return (
        CreditAdjustment.query.filter_by(customer_id=customer.id)
        .order_by(CreditAdjustment.id.desc())
        .limit(limit)
        .all()
    )
