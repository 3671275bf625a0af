import pytest

from models import Event, Notification
from services.monitoring import monitored


def _events(event_type):
    return Event.query.filter_by(event_type=event_type).all()


def test_fast_operation_records_nothing(ctx):
    @monitored("quick", slow_ms=60_000)
    def quick():
        return 42

    assert quick() == 42
    assert Event.query.count() == 0


def test_slow_operation_warning(app, ctx):
    app.config["SLOW_OPERATION_MS"] = -1

    @monitored("report")
    def report():
        return "done"

    assert report() == "done"
    (ev,) = _events("SLOW_OPERATION")
    assert ev.severity == "WARNING"
    assert ev.resource_id == "report"
    assert ev.meta["threshold_ms"] == -1
    # no organization, so nobody to notify
    assert Notification.query.count() == 0


def test_failure_is_recorded_and_reraised(ctx):
    @monitored("explode", slow_ms=-1)
    def explode():
        raise ValueError("boom")

    with pytest.raises(ValueError):
        explode()
    (ev,) = _events("OPERATION_FAILED")
    assert ev.severity == "ERROR"
    assert ev.meta["error"] == "boom"
    assert _events("SLOW_OPERATION") == []


def test_nested_call_keeps_outer_peak(ctx):
    @monitored("inner", slow_ms=60_000)
    def inner():
        return None

    @monitored("outer", slow_ms=-1)
    def outer():
        blob = bytearray(4 * 1024 * 1024)
        del blob
        inner()

    outer()
    (ev,) = _events("SLOW_OPERATION")
    assert ev.resource_id == "outer"
    assert ev.meta["peak_kb"] >= 4 * 1024
