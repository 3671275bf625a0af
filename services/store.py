# services/store.py
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy import text
from app import db
from services.dates import utcnow


def _ts(d: datetime) -> str:
    # same text layout SQLAlchemy uses for DateTime on SQLite; Postgres/MySQL cast it
    return d.strftime("%Y-%m-%d %H:%M:%S.%f")


# -----------------------------------------------------------------------------
# Inbound webhook idempotency
# Table: processed_webhook_events(provider, event_id, event_type, processed_at,
#                                 UNIQUE(provider, event_id))
# -----------------------------------------------------------------------------

def already_processed(provider: str, event_id: str) -> bool:
    if not event_id:
        return False
    row = db.session.execute(
        text("""
            SELECT 1
              FROM processed_webhook_events
             WHERE provider = :p AND event_id = :e
             LIMIT 1
        """),
        {"p": provider, "e": event_id},
    ).fetchone()
    return row is not None


def mark_processed(provider: str, event_id: str, event_type: Optional[str] = None,
                   now: Optional[datetime] = None) -> None:
    """Insert the marker; the caller commits it together with the event's side effects."""
    if not event_id:
        return
    db.session.execute(
        text("""
            INSERT INTO processed_webhook_events (provider, event_id, event_type, processed_at)
            VALUES (:p, :e, :t, :at)
        """),
        {"p": provider, "e": event_id, "t": event_type, "at": _ts(now or utcnow())},
    )


def prune_processed(older_than_days: int = 90, now: Optional[datetime] = None) -> int:
    cutoff = (now or utcnow()) - timedelta(days=older_than_days)
    res = db.session.execute(
        text("DELETE FROM processed_webhook_events WHERE processed_at < :cutoff"),
        {"cutoff": _ts(cutoff)},
    )
    db.session.commit()
    return int(res.rowcount or 0)
