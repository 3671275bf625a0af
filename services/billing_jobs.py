# services/billing_jobs.py
"""
Scheduled jobs (triggered by POST /cron/<job> or run_jobs.py).

Each job walks its items sequentially; one item failing is recorded and
rolled back without stopping the batch. run_job() wraps a job with a
CronJobLog row.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from flask import current_app

from app import db
from models import BillingAttempt, CronJobLog, Subscription
from services.dates import add_interval, utcnow
from services.errors import BillingError, Conflict
from services.events import notify, record_event
from services.monitoring import monitored
from services.settings import cfg_int, cfg_int_list

DEFAULT_REMINDER_DAYS = [1, 3, 7]


def _error(errors: List[Dict[str, Any]], sub_id: int, e: Exception) -> None:
    errors.append({"subscription_id": sub_id, "error": getattr(e, "message", None) or str(e)})


# ------------------------- billing cycle -------------------------

def bill_subscription(sub: Subscription, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Advance the period and invoice it: base price for the new period plus
    usage from the one that ended. Charges when a payment method is on file.
    """
    from services.invoices import create_invoice_from_subscription
    from services.payments import pay_invoice

    now = now or utcnow()
    ended = (sub.current_period_start, sub.current_period_end)
    sub.current_period_start = ended[1]
    sub.current_period_end = add_interval(ended[1], sub.plan.interval)
    inv = create_invoice_from_subscription(
        sub, sub.current_period_start, sub.current_period_end,
        include_usage=True, now=now, usage_period=ended,
    )
    db.session.add(BillingAttempt(
        subscription_id=sub.id,
        invoice_id=inv.id if inv else None,
        status="succeeded",
        attempted_at=now,
    ))

    payment_status = None
    # Stripe-linked subscriptions are charged by Stripe itself
    if inv is not None and inv.status == "open" and sub.customer.has_payment_method \
            and not sub.stripe_subscription_id:
        payment_status = pay_invoice(inv, now).status

    return {
        "subscription_id": sub.id,
        "invoice_id": inv.id if inv else None,
        "total": inv.total if inv else 0,
        "payment": payment_status,
    }


def _record_billing_failure(sub_id: int, e: Exception, now: datetime) -> None:
    sub = db.session.get(Subscription, sub_id)
    if sub is None:
        return
    message = getattr(e, "message", None) or str(e)
    db.session.add(BillingAttempt(
        subscription_id=sub.id, status="failed", error_message=message[:2000], attempted_at=now,
    ))
    record_event(
        "BILLING_FAILED", "subscription", sub.id,
        organization_id=sub.customer.organization_id,
        severity="ERROR",
        metadata={"customer_id": sub.customer_id, "message": message},
    )
    db.session.commit()


@monitored("billing_cycle")
def run_billing_cycle(now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    processed, errors, invoices = 0, [], []

    # paused subscriptions whose resume date has passed come back first
    paused = Subscription.query.filter(
        Subscription.status == "paused",
        Subscription.resume_at.isnot(None),
        Subscription.resume_at <= now,
    ).all()
    for sub_id in [s.id for s in paused]:
        try:
            from services.subscriptions import resume_subscription
            resume_subscription(db.session.get(Subscription, sub_id), now)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            current_app.logger.exception("[Billing] resume failed subscription=%s", sub_id)
            _error(errors, sub_id, e)

    due = (
        Subscription.query.filter(
            Subscription.status == "active",
            Subscription.current_period_end <= now,
        )
        .order_by(Subscription.current_period_end.asc())
        .all()
    )
    for sub_id in [s.id for s in due]:
        try:
            sub = db.session.get(Subscription, sub_id)
            if sub.cancel_at_period_end:
                sub.status = "canceled"
                sub.canceled_at = sub.current_period_end
                sub.cancel_at_period_end = False
                record_event(
                    "SUBSCRIPTION_CANCELLED", "subscription", sub.id,
                    organization_id=sub.customer.organization_id,
                    metadata={"customer_id": sub.customer_id, "at_period_end": True},
                )
            else:
                result = bill_subscription(sub, now)
                if result["invoice_id"]:
                    invoices.append(result["invoice_id"])
            db.session.commit()
            processed += 1
        except Exception as e:
            db.session.rollback()
            current_app.logger.exception("[Billing] cycle failed subscription=%s", sub_id)
            _error(errors, sub_id, e)
            _record_billing_failure(sub_id, e, now)

    current_app.logger.info("[Billing] cycle processed=%s invoices=%s errors=%s",
                            processed, len(invoices), len(errors))
    return {"processed": processed, "invoices": invoices, "errors": errors}


def retry_failed_billing(subscription: Subscription, now: Optional[datetime] = None) -> Dict[str, Any]:
    last = (
        BillingAttempt.query.filter_by(subscription_id=subscription.id)
        .order_by(BillingAttempt.attempted_at.desc(), BillingAttempt.id.desc())
        .first()
    )
    if last is None or last.status != "failed":
        raise Conflict("Last billing attempt did not fail.")
    now = now or utcnow()
    try:
        result = bill_subscription(subscription, now)
        db.session.commit()
        return result
    except Exception as e:
        db.session.rollback()
        _record_billing_failure(subscription.id, e, now)
        if isinstance(e, BillingError):
            raise
        raise BillingError(f"Billing retry failed: {e}", status=500)


# ------------------------- trials -------------------------

def _convert_trial(sub: Subscription, now: datetime) -> str:
    from services.invoices import create_invoice_from_subscription
    from services.payments import pay_invoice

    org_id = sub.customer.organization_id
    if not sub.customer.has_payment_method:
        sub.status = "incomplete"
        record_event(
            "TRIAL_EXPIRED", "subscription", sub.id, organization_id=org_id, severity="WARNING",
            metadata={"customer_id": sub.customer_id,
                      "message": "Trial ended without a payment method on file"},
        )
        return "incomplete"

    start = sub.trial_end
    sub.status = "active"
    sub.trial_converted_at = now
    sub.current_period_start = start
    sub.current_period_end = add_interval(start, sub.plan.interval)
    inv = create_invoice_from_subscription(sub, sub.current_period_start, sub.current_period_end,
                                           include_usage=False, now=now)
    if inv is not None and inv.status == "open" and not sub.stripe_subscription_id:
        pay_invoice(inv, now)
    record_event(
        "TRIAL_CONVERTED", "subscription", sub.id, organization_id=org_id,
        metadata={"customer_id": sub.customer_id, "invoice_id": inv.id if inv else None},
    )
    return sub.status


@monitored("expire_trials")
def expire_trials(now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    rows = Subscription.query.filter(
        Subscription.status == "trialing",
        Subscription.trial_end < now,
        Subscription.trial_converted_at.is_(None),
    ).all()

    processed, errors, outcomes = 0, [], {}
    for sub_id in [s.id for s in rows]:
        try:
            outcome = _convert_trial(db.session.get(Subscription, sub_id), now)
            db.session.commit()
            outcomes[outcome] = outcomes.get(outcome, 0) + 1
            processed += 1
        except Exception as e:
            db.session.rollback()
            current_app.logger.exception("[Trials] conversion failed subscription=%s", sub_id)
            _error(errors, sub_id, e)
            sub = db.session.get(Subscription, sub_id)
            if sub is not None:
                sub.status = "past_due"
                sub.meta = {**(sub.meta or {}), "trial_conversion_error": str(e), "failed_at": now.isoformat()}
                db.session.commit()
    return {"processed": processed, "outcomes": outcomes, "errors": errors}


@monitored("trial_reminders")
def send_trial_reminders(now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    reminder_days = set(cfg_int_list("TRIAL_REMINDER_DAYS", DEFAULT_REMINDER_DAYS))
    rows = Subscription.query.filter(
        Subscription.status == "trialing",
        Subscription.trial_end > now,
    ).all()

    sent, errors = 0, []
    for sub in rows:
        days_left = (sub.trial_end.date() - now.date()).days
        if days_left not in reminder_days:
            continue
        sent_for = list((sub.meta or {}).get("trial_reminders_sent", []))
        if days_left in sent_for:
            continue
        try:
            notify(
                sub.customer.organization_id,
                type="TRIAL_ENDING",
                title=f"Trial ends in {days_left} day{'s' if days_left != 1 else ''}",
                message=f"{sub.customer.name}'s trial of {sub.plan.name} ends on {sub.trial_end:%Y-%m-%d}",
                customer_id=sub.customer_id,
                data={"subscription_id": sub.id, "days_left": days_left},
            )
            record_event(
                "TRIAL_ENDING", "subscription", sub.id,
                organization_id=sub.customer.organization_id,
                metadata={"customer_id": sub.customer_id, "days_left": days_left},
            )
            sub.meta = {**(sub.meta or {}), "trial_reminders_sent": sent_for + [days_left]}
            db.session.commit()
            sent += 1
        except Exception as e:
            db.session.rollback()
            _error(errors, sub.id, e)
    return {"sent": sent, "errors": errors}


# ------------------------- delivery / dunning -------------------------

@monitored("webhook_deliveries")
def process_webhook_deliveries(now: Optional[datetime] = None) -> Dict[str, Any]:
    from services.webhook_service import process_pending_deliveries
    return process_pending_deliveries(now or utcnow())


@monitored("dunning")
def process_dunning(now: Optional[datetime] = None) -> Dict[str, Any]:
    from services.dunning import process_due_retries
    return process_due_retries(now or utcnow())


@monitored("prune_webhook_events")
def prune_webhook_events(now: Optional[datetime] = None) -> Dict[str, Any]:
    from services.store import prune_processed
    removed = prune_processed(cfg_int("WEBHOOK_EVENT_RETENTION_DAYS", 90), now or utcnow())
    return {"processed": removed, "errors": []}


JOBS: Dict[str, Callable[..., Dict[str, Any]]] = {
    "billing": run_billing_cycle,
    "expire-trials": expire_trials,
    "trial-reminders": send_trial_reminders,
    "webhook-deliveries": process_webhook_deliveries,
    "dunning": process_dunning,
    "prune-webhook-events": prune_webhook_events,
}


def run_job(job_name: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Run a named job and persist a CronJobLog row for it."""
    fn = JOBS.get(job_name)
    if fn is None:
        raise KeyError(job_name)

    log = CronJobLog(job_name=job_name, started_at=utcnow())
    db.session.add(log)
    db.session.commit()
    log_id = log.id

    try:
        result = fn(now)
    except Exception as e:
        db.session.rollback()
        log = db.session.get(CronJobLog, log_id)
        log.finished_at = utcnow()
        log.error_count = 1
        log.errors = [{"error": str(e)}]
        db.session.commit()
        raise

    errors = result.get("errors") or []
    log = db.session.get(CronJobLog, log_id)
    log.finished_at = utcnow()
    log.processed_count = int(result.get("processed", result.get("sent", 0)) or 0)
    log.error_count = len(errors)
    log.errors = errors[:50]
    db.session.commit()
    return {"job": job_name, "log_id": log_id, **result}
