# services/monitoring.py
"""
@monitored("billing_cycle") wraps a job/operation and logs:
    [Monitor] billing_cycle ms=123 peak_kb=456 ok=True

Over SLOW_OPERATION_MS a SLOW_OPERATION warning event is recorded; an
exception is logged, recorded as OPERATION_FAILED and re-raised.
A nested monitored call reports the peak of the enclosing trace.
"""
from __future__ import annotations

import time
import tracemalloc
from functools import wraps
from typing import Optional

from flask import current_app

from app import db
from services.settings import cfg_int


def _record(event_type: str, name: str, severity: str, **meta) -> None:
    from services.events import record_event

    try:
        record_event(event_type, "operation", name, severity=severity, metadata=meta, deliver=False)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        current_app.logger.error("[Monitor] could not record %s for %s: %s", event_type, name, e)


def monitored(name: str, slow_ms: Optional[int] = None):
    def deco(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            threshold = slow_ms if slow_ms is not None else cfg_int("SLOW_OPERATION_MS", 2000)
            # nested calls share the outer trace and leave its peak alone
            started_tracing = not tracemalloc.is_tracing()
            if started_tracing:
                tracemalloc.start()
            t0 = time.perf_counter()
            ok = False
            try:
                result = fn(*args, **kwargs)
                ok = True
                return result
            except Exception as e:
                elapsed = int((time.perf_counter() - t0) * 1000)
                current_app.logger.exception("[Monitor] %s failed after %sms: %s", name, elapsed, e)
                db.session.rollback()
                _record("OPERATION_FAILED", name, "ERROR", duration_ms=elapsed, error=str(e))
                raise
            finally:
                elapsed = int((time.perf_counter() - t0) * 1000)
                _, peak = tracemalloc.get_traced_memory()
                if started_tracing:
                    tracemalloc.stop()
                current_app.logger.info("[Monitor] %s ms=%s peak_kb=%s ok=%s", name, elapsed, peak // 1024, ok)
                if ok and elapsed > threshold:
                    _record("SLOW_OPERATION", name, "WARNING", duration_ms=elapsed,
                            threshold_ms=threshold, peak_kb=peak // 1024)
        return wrapper
    return deco
