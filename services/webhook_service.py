# services/webhook_service.py
"""
Outbound webhooks: endpoint registry, signed delivery with retry/backoff,
and auto-deactivation of endpoints that keep failing.

Delivery is sequential and driven by cron (`process_pending_deliveries`);
nothing here spawns threads.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import secrets
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

import requests
from flask import current_app
from sqlalchemy import func

from app import db
from models import Organization, WebhookDelivery, WebhookEndpoint
from services.dates import utcnow
from services.errors import NotFound, ValidationFailed
from services.settings import cfg_int

USER_AGENT = "BillingManager-Webhooks/1.0"
RESPONSE_BODY_CHARS = 1000

# endpoint gets switched off when more than this share of recent deliveries failed
FAILURE_RATE_THRESHOLD = 0.8
FAILURE_MIN_DELIVERIES = 5
FAILURE_WINDOW = timedelta(hours=24)


# ------------------------- signing -------------------------

def sign_payload(body: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(payload: str, signature: str, secret: str) -> bool:
    if not signature or not secret:
        return False
    expected = sign_payload(payload, secret)
    return hmac.compare_digest(expected, signature)


def _new_secret() -> str:
    return secrets.token_hex(32)


# ------------------------- endpoint registry -------------------------

def _validate_url(url: str) -> str:
    url = (url or "").strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationFailed("Webhook URL must be an absolute http(s) URL.")
    return url


def _validate_events(events: Iterable[str]) -> List[str]:
    from services.events import EVENT_TYPES

    cleaned = [str(e).strip() for e in (events or []) if str(e).strip()]
    if not cleaned:
        raise ValidationFailed("At least one event type is required.")
    unknown = [e for e in cleaned if e != "*" and e not in EVENT_TYPES]
    if unknown:
        raise ValidationFailed(f"Unknown event types: {', '.join(sorted(unknown))}")
    # keep order, drop duplicates
    return list(dict.fromkeys(cleaned))


def register_endpoint(
    organization: Organization,
    url: str,
    events: Iterable[str],
    description: Optional[str] = None,
    max_attempts: Optional[int] = None,
) -> WebhookEndpoint:
    ep = WebhookEndpoint(
        organization_id=organization.id,
        url=_validate_url(url),
        events=_validate_events(events),
        description=description,
        secret=_new_secret(),
        max_attempts=int(max_attempts or cfg_int("WEBHOOK_MAX_ATTEMPTS", 3)),
        active=True,
    )
    if ep.max_attempts < 1:
        raise ValidationFailed("max_attempts must be at least 1.")
    db.session.add(ep)
    db.session.flush()
    current_app.logger.info("[Webhooks] endpoint registered id=%s org=%s", ep.id, organization.id)
    return ep


def get_endpoint(organization: Organization, endpoint_id: int) -> WebhookEndpoint:
    ep = WebhookEndpoint.query.filter_by(id=endpoint_id, organization_id=organization.id).first()
    if not ep:
        raise NotFound("Webhook endpoint not found")
    return ep


def list_endpoints(organization: Organization) -> List[WebhookEndpoint]:
    return (
        WebhookEndpoint.query.filter_by(organization_id=organization.id)
        .order_by(WebhookEndpoint.id.asc())
        .all()
    )


def update_endpoint(endpoint: WebhookEndpoint, **changes: Any) -> WebhookEndpoint:
    if changes.get("url") is not None:
        endpoint.url = _validate_url(changes["url"])
    if changes.get("events") is not None:
        endpoint.events = _validate_events(changes["events"])
    if changes.get("description") is not None:
        endpoint.description = changes["description"]
    if changes.get("max_attempts") is not None:
        if int(changes["max_attempts"]) < 1:
            raise ValidationFailed("max_attempts must be at least 1.")
        endpoint.max_attempts = int(changes["max_attempts"])
    if changes.get("active") is not None:
        endpoint.active = bool(changes["active"])
        if endpoint.active:
            endpoint.deactivated_at = None
            endpoint.deactivation_reason = None
    return endpoint


def delete_endpoint(endpoint: WebhookEndpoint) -> None:
    db.session.delete(endpoint)


def rotate_secret(endpoint: WebhookEndpoint) -> str:
    endpoint.secret = _new_secret()
    endpoint.secret_rotated_at = utcnow()
    current_app.logger.info("[Webhooks] secret rotated endpoint=%s", endpoint.id)
    return endpoint.secret


# ------------------------- enqueue -------------------------

def build_payload(event_type: str, data: Dict[str, Any], event_id: Optional[str] = None,
                  created_at: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex}",
        "type": event_type,
        "created_at": (created_at or utcnow()).isoformat(),
        "data": data,
    }


def enqueue_event(organization_id: int, event_type: str, data: Dict[str, Any]) -> List[WebhookDelivery]:
    """One pending delivery per active endpoint subscribed to event_type. Does not commit."""
    endpoints = WebhookEndpoint.query.filter_by(organization_id=organization_id, active=True).all()
    targets = [ep for ep in endpoints if ep.subscribes_to(event_type)]
    if not targets:
        return []

    payload = build_payload(event_type, data)
    now = utcnow()
    out = []
    for ep in targets:
        d = WebhookDelivery(
            endpoint=ep,
            event_id=payload["id"],
            event_type=event_type,
            payload=payload,
            status="pending",
            attempts=0,
            next_attempt_at=now,
        )
        db.session.add(d)
        out.append(d)
    return out


# ------------------------- delivery -------------------------

def backoff_seconds(attempts: int) -> int:
    base = cfg_int("WEBHOOK_BACKOFF_SECONDS", 60)
    cap = cfg_int("WEBHOOK_BACKOFF_MAX_SECONDS", 3600)
    return min(cap, base * (2 ** max(0, attempts - 1)))


def _post(endpoint: WebhookEndpoint, delivery: WebhookDelivery, body: str) -> requests.Response:
    headers = {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        "X-Webhook-Signature": sign_payload(body, endpoint.secret),
        "X-Webhook-ID": delivery.event_id,
        "X-Delivery-ID": str(delivery.id),
    }
    return requests.post(
        endpoint.url,
        data=body.encode("utf-8"),
        headers=headers,
        timeout=cfg_int("WEBHOOK_TIMEOUT_SECONDS", 10),
    )


def deliver(delivery: WebhookDelivery, now: Optional[datetime] = None) -> bool:
    """
    POST one delivery. Returns True on 2xx.
    Failure bumps attempts and either reschedules with exponential backoff
    or marks the delivery failed once the endpoint's max_attempts is used up.
    """
    now = now or utcnow()
    endpoint = delivery.endpoint
    if delivery.id is None:
        db.session.flush()

    body = json.dumps(delivery.payload, separators=(",", ":"), sort_keys=True)
    delivery.attempts = int(delivery.attempts or 0) + 1

    t0 = time.perf_counter()
    status_code: Optional[int] = None
    error: Optional[str] = None
    try:
        resp = _post(endpoint, delivery, body)
        status_code = resp.status_code
        delivery.response_body = (resp.text or "")[:RESPONSE_BODY_CHARS]
        if not (200 <= resp.status_code < 300):
            error = f"HTTP {resp.status_code}"
    except requests.RequestException as e:
        error = f"{type(e).__name__}: {e}"
    elapsed_ms = int((time.perf_counter() - t0) * 1000)

    delivery.status_code = status_code
    current_app.logger.info(
        "[Webhooks] delivery=%s endpoint=%s type=%s attempt=%s status=%s ms=%s",
        delivery.id, endpoint.id, delivery.event_type, delivery.attempts, status_code, elapsed_ms,
    )

    if error is None:
        delivery.status = "succeeded"
        delivery.error = None
        delivery.completed_at = now
        delivery.next_attempt_at = None
        endpoint.last_success_at = now
        return True

    delivery.error = error
    endpoint.last_failure_at = now
    if delivery.attempts >= int(endpoint.max_attempts or 1):
        delivery.status = "failed"
        delivery.completed_at = now
        delivery.next_attempt_at = None
    else:
        delivery.status = "pending"
        delivery.next_attempt_at = now + timedelta(seconds=backoff_seconds(delivery.attempts))

    db.session.flush()
    check_endpoint_health(endpoint, now)
    return False


def check_endpoint_health(endpoint: WebhookEndpoint, now: Optional[datetime] = None) -> bool:
    """Deactivate the endpoint when >80% of the last 24h deliveries failed (min 5). Returns True if disabled."""
    now = now or utcnow()
    since = now - FAILURE_WINDOW
    rows = (
        db.session.query(WebhookDelivery.status, func.count(WebhookDelivery.id))
        .filter(
            WebhookDelivery.endpoint_id == endpoint.id,
            WebhookDelivery.created_at >= since,
            WebhookDelivery.status.in_(("succeeded", "failed")),
        )
        .group_by(WebhookDelivery.status)
        .all()
    )
    counts = {status: n for status, n in rows}
    total = sum(counts.values())
    failed = counts.get("failed", 0)
    if total < FAILURE_MIN_DELIVERIES or failed / total <= FAILURE_RATE_THRESHOLD:
        return False
    if not endpoint.active:
        return False

    endpoint.active = False
    endpoint.deactivated_at = now
    endpoint.deactivation_reason = f"{failed}/{total} deliveries failed in the last 24h"
    current_app.logger.warning("[Webhooks] endpoint=%s deactivated: %s", endpoint.id, endpoint.deactivation_reason)

    from services.events import record_event
    record_event(
        "WEBHOOK_ENDPOINT_DISABLED",
        "webhook_endpoint",
        endpoint.id,
        organization_id=endpoint.organization_id,
        severity="WARNING",
        metadata={"url": endpoint.url, "failed": failed, "total": total},
        deliver=False,
    )
    return True


def process_pending_deliveries(now: Optional[datetime] = None, limit: int = 100) -> Dict[str, Any]:
    now = now or utcnow()
    due = (
        WebhookDelivery.query.join(WebhookEndpoint)
        .filter(
            WebhookDelivery.status == "pending",
            WebhookDelivery.next_attempt_at <= now,
            WebhookEndpoint.active.is_(True),
        )
        .order_by(WebhookDelivery.next_attempt_at.asc(), WebhookDelivery.id.asc())
        .limit(limit)
        .all()
    )
    stats: Dict[str, Any] = {"processed": 0, "succeeded": 0, "failed": 0, "errors": []}
    for delivery_id in [d.id for d in due]:
        d = db.session.get(WebhookDelivery, delivery_id)
        # an earlier failure in this batch may have switched the endpoint off
        if not d.endpoint.active:
            continue
        try:
            ok = deliver(d, now)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            current_app.logger.exception("[Webhooks] delivery %s crashed: %s", delivery_id, e)
            stats["errors"].append({"delivery_id": delivery_id, "error": str(e)})
            continue
        stats["processed"] += 1
        stats["succeeded" if ok else "failed"] += 1
    return stats


def retry_delivery(delivery: WebhookDelivery, now: Optional[datetime] = None) -> bool:
    if delivery.status == "succeeded":
        raise ValidationFailed("Delivery already succeeded.")
    delivery.status = "pending"
    delivery.completed_at = None
    # one more try even if attempts are used up
    if int(delivery.attempts or 0) >= int(delivery.endpoint.max_attempts or 1):
        delivery.attempts = int(delivery.endpoint.max_attempts or 1) - 1
    return deliver(delivery, now)


# ------------------------- stats -------------------------

def list_deliveries(organization: Organization, endpoint_id: Optional[int] = None,
                    status: Optional[str] = None, limit: int = 100) -> List[WebhookDelivery]:
    q = WebhookDelivery.query.join(WebhookEndpoint).filter(WebhookEndpoint.organization_id == organization.id)
    if endpoint_id:
        q = q.filter(WebhookDelivery.endpoint_id == endpoint_id)
    if status:
        q = q.filter(WebhookDelivery.status == status)
    return q.order_by(WebhookDelivery.id.desc()).limit(limit).all()


def delivery_stats(endpoint: WebhookEndpoint, start: Optional[datetime] = None,
                   end: Optional[datetime] = None) -> Dict[str, Any]:
    end = end or utcnow()
    start = start or (end - timedelta(days=7))
    rows = (
        WebhookDelivery.query.filter(
            WebhookDelivery.endpoint_id == endpoint.id,
            WebhookDelivery.created_at >= start,
            WebhookDelivery.created_at < end,
        )
        .order_by(WebhookDelivery.created_at.asc())
        .all()
    )
    by_day: Dict[str, Dict[str, int]] = {}
    totals = {"total": 0, "succeeded": 0, "failed": 0, "pending": 0}
    for d in rows:
        day = d.created_at.date().isoformat()
        bucket = by_day.setdefault(day, {"total": 0, "succeeded": 0, "failed": 0, "pending": 0})
        bucket["total"] += 1
        totals["total"] += 1
        if d.status in bucket:
            bucket[d.status] += 1
            totals[d.status] += 1

    done = totals["succeeded"] + totals["failed"]
    return {
        "endpoint_id": endpoint.id,
        "start": start.isoformat(),
        "end": end.isoformat(),
        **totals,
        "success_rate": round(totals["succeeded"] / done * 100, 2) if done else None,
        "by_day": [{"date": k, **v} for k, v in sorted(by_day.items())],
    }
