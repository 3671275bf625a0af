# services/dunning.py
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from flask import current_app

from app import db
from models import DunningAttempt, Invoice, Subscription
from services.dates import utcnow
from services.errors import BillingError
from services.events import record_event
from services.settings import cfg_int_list

DEFAULT_INTERVAL_HOURS = [1, 6, 24, 72]


def retry_intervals() -> List[int]:
    return cfg_int_list("DUNNING_INTERVAL_HOURS", DEFAULT_INTERVAL_HOURS)


def _set_subscription_status(invoice: Invoice, status: str, only_from: tuple) -> None:
    sub: Optional[Subscription] = invoice.subscription
    if sub is not None and sub.status in only_from:
        sub.status = status


def stripe_managed(invoice: Invoice) -> bool:
    """Stripe runs its own retries for invoices it issued or subscriptions it bills."""
    sub: Optional[Subscription] = invoice.subscription
    return bool(invoice.stripe_invoice_id or (sub is not None and sub.stripe_subscription_id))


def schedule_dunning(invoice: Invoice, now: Optional[datetime] = None) -> Optional[DunningAttempt]:
    """One pending attempt per invoice; the subscription goes past_due.

    Stripe-managed invoices only get the status change: Stripe retries them.
    """
    now = now or utcnow()
    if stripe_managed(invoice):
        _set_subscription_status(invoice, "past_due", ("active", "trialing"))
        current_app.logger.info("[Dunning] invoice=%s is retried by Stripe; not scheduled", invoice.number)
        return None
    intervals = retry_intervals()
    row = DunningAttempt.query.filter_by(invoice_id=invoice.id).first()
    if row is None:
        row = DunningAttempt(
            invoice_id=invoice.id,
            attempts_made=0,
            max_attempts=len(intervals),
            next_retry_at=now + timedelta(hours=intervals[0]),
            status="pending",
            created_at=now,
        )
        db.session.add(row)
        record_event(
            "DUNNING_SCHEDULED", "invoice", invoice.id,
            organization_id=invoice.organization_id,
            metadata={"customer_id": invoice.customer_id, "next_retry_at": row.next_retry_at.isoformat()},
        )
    _set_subscription_status(invoice, "past_due", ("active", "trialing"))
    return row


def _exhaust(row: DunningAttempt, now: datetime) -> None:
    from services.invoices import mark_uncollectible

    row.status = "failed"
    row.next_retry_at = None
    inv = row.invoice
    if inv.status == "open":
        mark_uncollectible(inv)
    record_event(
        "DUNNING_EXHAUSTED", "invoice", inv.id,
        organization_id=inv.organization_id,
        severity="ERROR",
        metadata={
            "customer_id": inv.customer_id,
            "attempts": row.attempts_made,
            "message": f"All {row.attempts_made} payment retries failed for invoice {inv.number}",
        },
    )


def _advance(row: DunningAttempt, now: datetime) -> None:
    """After a failed attempt: next slot in the schedule, or give up."""
    intervals = retry_intervals()
    if row.attempts_made >= int(row.max_attempts or len(intervals)):
        _exhaust(row, now)
    else:
        row.next_retry_at = now + timedelta(hours=intervals[min(row.attempts_made, len(intervals) - 1)])
    current_app.logger.info("[Dunning] invoice=%s attempt %s failed", row.invoice.number, row.attempts_made)


def retry_one(row: DunningAttempt, now: Optional[datetime] = None) -> bool:
    """Run one retry for a pending attempt. True when the invoice got paid."""
    from services.payments import pay_invoice

    now = now or utcnow()
    inv = row.invoice
    if inv.status == "paid":
        row.status = "succeeded"
        row.next_retry_at = None
        _set_subscription_status(inv, "active", ("past_due",))
        return True
    if inv.status != "open":
        row.status = "failed"
        row.next_retry_at = None
        return False
    if stripe_managed(inv):
        # linked after scheduling; Stripe owns the retries from here
        row.status = "failed"
        row.next_retry_at = None
        row.last_error = "retried by Stripe"
        return False

    row.attempts_made = int(row.attempts_made or 0) + 1
    try:
        payment = pay_invoice(inv, now, schedule_retry=False)
        ok = payment.status == "succeeded"
        if not ok:
            row.last_error = payment.failure_reason
    except BillingError as e:
        ok = False
        row.last_error = e.message

    if ok:
        row.status = "succeeded"
        row.next_retry_at = None
        _set_subscription_status(inv, "active", ("past_due",))
        current_app.logger.info("[Dunning] invoice=%s recovered on attempt %s", inv.number, row.attempts_made)
        return True

    _advance(row, now)
    return False


def _record_crash(row_id: int, now: datetime, error: Exception) -> None:
    """A crashed retry still uses up its slot so the row cannot stall."""
    row = db.session.get(DunningAttempt, row_id)
    if row is None or row.status != "pending":
        return
    row.attempts_made = int(row.attempts_made or 0) + 1
    row.last_error = str(error)[:1000]
    _advance(row, now)
    db.session.commit()


def process_due_retries(now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    due = (
        DunningAttempt.query.filter(
            DunningAttempt.status == "pending",
            DunningAttempt.next_retry_at <= now,
        )
        .order_by(DunningAttempt.next_retry_at.asc())
        .all()
    )
    stats: Dict[str, Any] = {"processed": 0, "recovered": 0, "failed": 0, "errors": []}
    for row_id in [r.id for r in due]:
        try:
            ok = retry_one(db.session.get(DunningAttempt, row_id), now)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            current_app.logger.exception("[Dunning] retry %s crashed: %s", row_id, e)
            stats["errors"].append({"dunning_attempt_id": row_id, "error": str(e)})
            try:
                _record_crash(row_id, now, e)
            except Exception as inner:
                db.session.rollback()
                current_app.logger.error("[Dunning] could not record crash for %s: %s", row_id, inner)
                continue
            stats["processed"] += 1
            stats["failed"] += 1
            continue
        stats["processed"] += 1
        stats["recovered" if ok else "failed"] += 1
    return stats
