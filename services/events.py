"""
Audit events and in-app notifications.

record_event() is the single place domain changes are announced:
  - adds an Event row (audit trail, /admin/events)
  - logs it through current_app.logger
  - WARNING and above also become a Notification for the organization
  - queues outbound webhook deliveries for subscribed endpoints

Nothing here commits; callers own the transaction.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from flask import current_app

from app import db
from models import Event, Notification, Organization
from services.dates import utcnow

# Event types outbound endpoints may subscribe to ("*" = all).
EVENT_TYPES = (
    "SUBSCRIPTION_CREATED",
    "SUBSCRIPTION_UPDATED",
    "SUBSCRIPTION_CANCELLED",
    "SUBSCRIPTION_PAUSED",
    "SUBSCRIPTION_RESUMED",
    "TRIAL_STARTED",
    "TRIAL_CONVERTED",
    "TRIAL_EXPIRED",
    "TRIAL_ENDING",
    "INVOICE_CREATED",
    "INVOICE_FINALIZED",
    "INVOICE_PAID",
    "INVOICE_VOIDED",
    "INVOICE_UNCOLLECTIBLE",
    "INVOICE_SENT",
    "PAYMENT_SUCCEEDED",
    "PAYMENT_FAILED",
    "PAYMENT_REFUNDED",
    "PAYMENT_METHOD_ATTACHED",
    "PAYMENT_METHOD_REMOVED",
    "DUNNING_SCHEDULED",
    "DUNNING_EXHAUSTED",
    "USAGE_RECORDED",
    "USAGE_WARNING",
    "USAGE_LIMIT_EXCEEDED",
    "CREDIT_ADDED",
    "CREDIT_DEDUCTED",
    "CREDIT_APPLIED",
    "CUSTOMER_CREATED",
    "CUSTOMER_UPDATED",
    "TAX_RATE_CREATED",
    "TAX_RATE_UPDATED",
    "TAX_RATE_DELETED",
    "TAX_ID_VALIDATION",
    "MISSING_TAX_RATE",
    "BILLING_FAILED",
    "SLOW_OPERATION",
    "OPERATION_FAILED",
    "WEBHOOK_ENDPOINT_DISABLED",
)

_SEVERITY_RANK = {"INFO": 0, "WARNING": 1, "ERROR": 2, "CRITICAL": 3}

_LOG_LEVEL = {"INFO": 20, "WARNING": 30, "ERROR": 40, "CRITICAL": 50}


def record_event(
    event_type: str,
    resource_type: str,
    resource_id: Any = None,
    organization_id: Optional[int] = None,
    severity: str = "INFO",
    metadata: Optional[Dict[str, Any]] = None,
    actor_id: Optional[int] = None,
    deliver: bool = True,
) -> Event:
    severity = (severity or "INFO").upper()
    if severity not in _SEVERITY_RANK:
        severity = "INFO"

    ev = Event(
        organization_id=organization_id,
        event_type=event_type,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        severity=severity,
        meta=metadata or {},
        actor_id=actor_id,
        created_at=utcnow(),
    )
    db.session.add(ev)

    current_app.logger.log(
        _LOG_LEVEL[severity],
        "[Event] %s %s:%s org=%s",
        event_type, resource_type, ev.resource_id, organization_id,
    )

    if organization_id and _SEVERITY_RANK[severity] >= _SEVERITY_RANK["WARNING"]:
        notify(
            organization_id,
            type=event_type,
            title=event_type.replace("_", " ").title(),
            message=(metadata or {}).get("message"),
            customer_id=(metadata or {}).get("customer_id"),
            data=metadata,
        )

    if deliver and organization_id:
        from services.webhook_service import enqueue_event
        enqueue_event(
            organization_id,
            event_type,
            {
                "resource_type": resource_type,
                "resource_id": ev.resource_id,
                "severity": severity,
                **(metadata or {}),
            },
        )
    return ev


def notify(
    organization_id: Optional[int],
    type: str,
    title: str,
    message: Optional[str] = None,
    customer_id: Optional[int] = None,
    data: Optional[Dict[str, Any]] = None,
) -> Notification:
    n = Notification(
        organization_id=organization_id,
        customer_id=customer_id,
        type=type,
        title=title,
        message=message,
        data=data or {},
        created_at=utcnow(),
    )
    db.session.add(n)
    return n


def list_notifications(organization: Organization, unread_only: bool = False, limit: int = 50) -> List[Notification]:
    q = Notification.query.filter_by(organization_id=organization.id)
    if unread_only:
        q = q.filter(Notification.read_at.is_(None))
    return q.order_by(Notification.id.desc()).limit(limit).all()


def mark_read(notification: Notification) -> Notification:
    if notification.read_at is None:
        notification.read_at = utcnow()
    return notification


def recent_events(
    organization_id: Optional[int] = None,
    event_type: Optional[str] = None,
    severity: Optional[str] = None,
    limit: int = 100,
) -> List[Event]:
    q = Event.query
    if organization_id:
        q = q.filter_by(organization_id=organization_id)
    if event_type:
        q = q.filter_by(event_type=event_type)
    if severity:
        q = q.filter_by(severity=severity.upper())
    return q.order_by(Event.id.desc()).limit(limit).all()
