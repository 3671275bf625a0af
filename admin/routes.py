"""
Admin routes (JSON only)

Access control:
- ONLY users with users.is_admin truthy can access anything in this blueprint.

    GET /admin/health               DB, Redis tax cache, provider config
    GET /admin/events               audit events across organizations
    GET /admin/usage                usage totals per metric
    GET /admin/cron-logs            CronJobLog rows
    GET /admin/webhook-deliveries   outbound deliveries + processed inbound events
"""

from __future__ import annotations

from datetime import timedelta

from flask import current_app, jsonify, request
from flask_login import login_required
from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError

from app import db
from models import (
    CronJobLog,
    Customer,
    Invoice,
    Organization,
    Subscription,
    UsageRecord,
    WebhookDelivery,
    WebhookEndpoint,
)
from services.dates import utcnow
from services.events import recent_events
from services.guards import require_admin
from services.params import date_range, int_arg, limit_arg
from services.settings import get_cfg
from services.tax_cache import get_tax_cache
from . import bp  # blueprint defined in admin/__init__.py (url_prefix="/admin")


# --------------------------------------------------------------------
# Health
# --------------------------------------------------------------------

@bp.route("/health", methods=["GET"])
@login_required
@require_admin
def health():
    checks = {}
    try:
        db.session.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except SQLAlchemyError as e:
        current_app.logger.error("[Admin] database check failed: %s", e)
        checks["database"] = "error"

    checks["tax_cache"] = get_tax_cache().stats()
    checks["providers"] = {
        "stripe": bool(get_cfg("STRIPE_SECRET_KEY")),
        "stripe_webhooks": bool(get_cfg("STRIPE_WEBHOOK_SECRET")),
        "paypal": bool(get_cfg("PAYPAL_CLIENT_ID") and get_cfg("PAYPAL_WEBHOOK_ID")),
        "bitpay": bool(get_cfg("BITPAY_TOKEN")),
        "wyre": bool(get_cfg("WYRE_WEBHOOK_SECRET")),
    }
    checks["cron_secret"] = bool(get_cfg("CRON_SECRET"))

    counts = {
        "organizations": Organization.query.count(),
        "customers": Customer.query.count(),
        "subscriptions": Subscription.query.count(),
        "open_invoices": Invoice.query.filter_by(status="open").count(),
        "pending_deliveries": WebhookDelivery.query.filter_by(status="pending").count(),
    }
    ok = checks["database"] == "ok"
    return jsonify({
        "ok": ok,
        "version": current_app.config.get("APP_VERSION", "dev"),
        "checks": checks,
        "counts": counts,
    }), (200 if ok else 503)


# --------------------------------------------------------------------
# Log viewers
# --------------------------------------------------------------------

@bp.route("/events", methods=["GET"])
@login_required
@require_admin
def events():
    rows = recent_events(
        organization_id=int_arg("organization_id"),
        event_type=request.args.get("event_type") or None,
        severity=request.args.get("severity") or None,
        limit=limit_arg(),
    )
    return jsonify({"items": [e.to_dict() for e in rows]})


@bp.route("/usage", methods=["GET"])
@login_required
@require_admin
def usage():
    start, end = date_range(default_days=30)
    q = (
        db.session.query(
            UsageRecord.metric,
            func.count(UsageRecord.id),
            func.sum(UsageRecord.quantity),
        )
        .join(Subscription, Subscription.id == UsageRecord.subscription_id)
        .join(Customer, Customer.id == Subscription.customer_id)
        .filter(UsageRecord.recorded_at >= start, UsageRecord.recorded_at < end)
    )
    org_id = int_arg("organization_id")
    if org_id:
        q = q.filter(Customer.organization_id == org_id)
    rows = q.group_by(UsageRecord.metric).order_by(UsageRecord.metric.asc()).all()
    return jsonify({
        "start": start.isoformat(),
        "end": end.isoformat(),
        "organization_id": org_id,
        "metrics": [
            {"metric": metric, "records": int(n), "quantity": float(total or 0)}
            for metric, n, total in rows
        ],
    })


@bp.route("/cron-logs", methods=["GET"])
@login_required
@require_admin
def cron_logs():
    q = CronJobLog.query
    if request.args.get("job"):
        q = q.filter_by(job_name=request.args["job"])
    rows = q.order_by(CronJobLog.id.desc()).limit(limit_arg()).all()
    return jsonify({"items": [r.to_dict() for r in rows]})


@bp.route("/webhook-deliveries", methods=["GET"])
@login_required
@require_admin
def webhook_deliveries():
    limit = limit_arg()
    q = WebhookDelivery.query.join(WebhookEndpoint)
    if request.args.get("status"):
        q = q.filter(WebhookDelivery.status == request.args["status"])
    org_id = int_arg("organization_id")
    if org_id:
        q = q.filter(WebhookEndpoint.organization_id == org_id)
    outbound = q.order_by(WebhookDelivery.id.desc()).limit(limit).all()

    since = utcnow() - timedelta(days=int_arg("days", 7, hi=90))
    inbound = db.session.execute(
        text("""
            SELECT provider, event_id, event_type, processed_at
              FROM processed_webhook_events
             WHERE processed_at >= :since
          ORDER BY id DESC
             LIMIT :limit
        """),
        {"since": since.strftime("%Y-%m-%d %H:%M:%S.%f"), "limit": limit},
    ).mappings().all()

    return jsonify({
        "outbound": [d.to_dict() for d in outbound],
        "inbound": [
            {**dict(r), "processed_at": str(r["processed_at"]) if r["processed_at"] is not None else None}
            for r in inbound
        ],
        "limit": limit,
    })
