from types import SimpleNamespace

from services.entitlements import describe_plan, get_entitlements, has_feature

API = SimpleNamespace(metric="api_calls", included=100, limit=1000, warning_pct=80)
SEATS = SimpleNamespace(metric="seats", included=5, limit=None, warning_pct=80)
PRO = SimpleNamespace(code="pro", features=[API, SEATS])


def _sub(status="active", plan=PRO):
    return SimpleNamespace(status=status, plan=plan)


def test_no_subscription():
    ent = get_entitlements(None)
    assert ent == {"plan_key": None, "status": None, "active": False, "features": {}}
    assert describe_plan(None) == "No plan"


def test_inactive_statuses_lose_features():
    for status in ("canceled", "paused", "incomplete"):
        ent = get_entitlements(_sub(status))
        assert ent["active"] is False
        assert ent["features"] == {}
        assert not has_feature(ent, "api_calls")


def test_feature_rows_follow_usage():
    ent = get_entitlements(_sub("past_due"), {"api_calls": 850})
    row = ent["features"]["api_calls"]
    assert row["remaining"] == 150
    assert row["overage"] == 750
    assert row["warning"] is True
    assert row["exceeded"] is False
    assert has_feature(ent, "api_calls")

    assert ent["features"]["seats"]["remaining"] is None
    assert not has_feature(ent, "storage_gb")


def test_exceeded_limit_blocks_feature():
    ent = get_entitlements(_sub(), {"api_calls": 1000})
    assert ent["features"]["api_calls"]["exceeded"] is True
    assert not has_feature(ent, "api_calls")


def test_describe_plan():
    assert describe_plan(_sub()) == "PRO · active · api_calls: 100 included / 1,000 max · seats: 5 included / unlimited"
