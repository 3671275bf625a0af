from app import db
from models import BillingAttempt

from .conftest import PASSWORD, register


def _create_customer(client, **overrides):
    body = {"name": "Globex", "email": "AP@globex.test", "country": "US", "state": "CA"}
    body.update(overrides)
    resp = client.post("/api/customers", json=body)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()


def _create_plan(client, code="basic", price=1000):
    resp = client.post("/api/plans", json={
        "code": code,
        "name": code.title(),
        "price": price,
        "features": [{"metric": "api_calls", "included": 100, "limit": 1000}],
    })
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()


# ------------------------- auth -------------------------

def test_register_me_logout(owner_client):
    me = owner_client.get("/auth/me").get_json()
    assert me["email"] == "owner@acme.test"
    assert me["role"] == "owner"
    assert me["organization"]["name"] == "Acme"

    assert owner_client.post("/auth/logout").get_json() == {"ok": True}
    resp = owner_client.get("/auth/me")
    assert resp.status_code == 401
    assert resp.get_json() == {"error": "Unauthorized"}


def test_duplicate_email(app, owner_client):
    resp = register(app.test_client())
    assert resp.status_code == 409


def test_login(app, owner_client):
    c = app.test_client()
    bad = c.post("/auth/login", json={"email": "owner@acme.test", "password": "wrong-password"})
    assert bad.status_code == 401

    ok = c.post("/auth/login", json={"email": "OWNER@acme.test", "password": PASSWORD})
    assert ok.status_code == 200
    assert c.get("/api/customers").status_code == 200


def test_api_token_auth(app, owner_client):
    resp = owner_client.post("/auth/token")
    assert resp.status_code == 201
    token = resp.get_json()["token"]

    c = app.test_client()
    assert c.get("/api/customers", headers={"Authorization": f"Bearer {token}"}).status_code == 200
    uid = token.split(".", 1)[0]
    assert c.get("/api/customers", headers={"Authorization": f"Bearer {uid}.nope"}).status_code == 401


def test_validation_error_shape(owner_client):
    resp = owner_client.post("/api/customers", json={"currency": "usd"})
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["error"] == "Invalid data"
    assert "name" in [d["field"] for d in body["details"]]


def test_patch_rejects_null_for_required_fields(owner_client):
    cust = _create_customer(owner_client)
    resp = owner_client.patch(f"/api/customers/{cust['id']}", json={"name": None})
    assert resp.status_code == 400
    assert [d["field"] for d in resp.get_json()["details"]] == ["name"]

    # nullable columns can still be cleared
    resp = owner_client.patch(f"/api/customers/{cust['id']}", json={"tax_id": None, "state": None})
    assert resp.status_code == 200
    assert resp.get_json()["name"] == "Globex"

    plan = _create_plan(owner_client)
    assert owner_client.patch(f"/api/plans/{plan['id']}", json={"price": None}).status_code == 400


def _login(app, email, password=PASSWORD):
    c = app.test_client()
    resp = c.post("/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.get_json()
    return c


def test_member_is_read_only(app, owner_client):
    resp = owner_client.post("/auth/members", json={"email": "member@acme.test", "password": PASSWORD})
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["role"] == "member"
    assert "temporary_password" not in body

    c = _login(app, "member@acme.test")
    assert c.get("/api/customers").status_code == 200
    assert c.get("/auth/members").status_code == 200
    assert c.post("/api/customers", json={"name": "Nope"}).status_code == 403
    assert c.post("/auth/members", json={"email": "friend@acme.test"}).status_code == 403


def test_invited_member_gets_a_temporary_password(app, owner_client):
    resp = owner_client.post("/auth/members", json={"email": "Admin@Acme.test", "role": "admin"})
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["email"] == "admin@acme.test"
    c = _login(app, "admin@acme.test", body["temporary_password"])
    assert c.get("/auth/me").get_json()["role"] == "admin"

    assert owner_client.post("/auth/members", json={"email": "admin@acme.test"}).status_code == 409
    listing = owner_client.get("/auth/members").get_json()["members"]
    assert [m["role"] for m in listing] == ["owner", "admin"]


def test_role_changes_respect_owner_rules(app, owner_client):
    owner_id = owner_client.get("/auth/me").get_json()["id"]
    admin = owner_client.post("/auth/members", json={"email": "admin@acme.test", "role": "admin",
                                                     "password": PASSWORD}).get_json()
    member = owner_client.post("/auth/members", json={"email": "member@acme.test",
                                                      "password": PASSWORD}).get_json()
    manager = _login(app, "admin@acme.test")

    # admins manage members but never owners
    assert manager.patch(f"/auth/members/{member['id']}/role", json={"role": "owner"}).status_code == 403
    assert manager.patch(f"/auth/members/{owner_id}/role", json={"role": "member"}).status_code == 403
    assert manager.post("/auth/members", json={"email": "boss@acme.test", "role": "owner"}).status_code == 403
    resp = manager.patch(f"/auth/members/{member['id']}/role", json={"role": "admin"})
    assert resp.status_code == 200
    assert resp.get_json()["role"] == "admin"

    # the last owner cannot step down
    resp = owner_client.patch(f"/auth/members/{owner_id}/role", json={"role": "admin"})
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "Cannot demote the only owner of the organization."}
    assert owner_client.delete(f"/auth/members/{owner_id}").status_code == 400

    assert owner_client.patch(f"/auth/members/{admin['id']}/role", json={"role": "owner"}).status_code == 200
    assert owner_client.patch(f"/auth/members/{owner_id}/role", json={"role": "admin"}).status_code == 200
    assert owner_client.patch(f"/auth/members/{owner_id}/role", json={"role": "boss"}).status_code == 400


def test_removed_member_loses_access(app, owner_client):
    member = owner_client.post("/auth/members", json={"email": "member@acme.test",
                                                      "password": PASSWORD}).get_json()
    c = _login(app, "member@acme.test")

    assert owner_client.delete(f"/auth/members/{member['id']}").get_json() == {"ok": True}
    assert c.get("/api/customers").status_code == 403
    assert owner_client.delete(f"/auth/members/{member['id']}").status_code == 404

    other = app.test_client()
    register(other, email="owner@initech.test", organization_name="Initech")
    owner_id = owner_client.get("/auth/me").get_json()["id"]
    assert other.patch(f"/auth/members/{owner_id}/role", json={"role": "member"}).status_code == 404


def test_organizations_are_isolated(app, owner_client):
    cust = _create_customer(owner_client)

    other = app.test_client()
    assert register(other, email="owner@initech.test", organization_name="Initech").status_code == 201
    assert other.get(f"/api/customers/{cust['id']}").status_code == 404
    assert other.get("/api/customers").get_json()["total"] == 0


# ------------------------- billing flow -------------------------

def test_subscription_to_paid_invoice(owner_client):
    cust = _create_customer(owner_client)
    assert cust["email"] == "ap@globex.test"
    plan = _create_plan(owner_client)

    resp = owner_client.post("/api/subscriptions", json={"customer_id": cust["id"], "plan_id": plan["id"]})
    assert resp.status_code == 201, resp.get_json()
    sub = resp.get_json()
    assert sub["status"] == "active"
    (inv,) = sub["recent_invoices"]
    assert inv["total"] == 1000

    listing = owner_client.get("/api/invoices").get_json()
    assert listing["total"] == 1

    csv_resp = owner_client.get(f"/api/invoices/{inv['id']}/download")
    assert csv_resp.mimetype == "text/csv"
    assert "total,10.00" in csv_resp.get_data(as_text=True)

    # no card on file
    assert owner_client.post(f"/api/invoices/{inv['id']}/pay").status_code == 402

    paid = owner_client.post("/api/payments/manual", json={"invoice_id": inv["id"], "amount": 1000})
    assert paid.status_code == 201
    assert paid.get_json()["invoice"]["status"] == "paid"
    again = owner_client.post("/api/payments/manual", json={"invoice_id": inv["id"], "amount": 1000})
    assert again.status_code == 409


def test_retry_billing_after_failed_attempt(app, owner_client):
    cust = _create_customer(owner_client)
    plan = _create_plan(owner_client)
    sub = owner_client.post("/api/subscriptions", json={"customer_id": cust["id"], "plan_id": plan["id"]}).get_json()

    assert owner_client.post(f"/api/subscriptions/{sub['id']}/retry-billing").status_code == 409

    with app.app_context():
        db.session.add(BillingAttempt(subscription_id=sub["id"], status="failed", error_message="card declined"))
        db.session.commit()

    resp = owner_client.post(f"/api/subscriptions/{sub['id']}/retry-billing")
    assert resp.status_code == 200, resp.get_json()
    body = resp.get_json()
    assert body["subscription_id"] == sub["id"]
    assert body["total"] == 1000
    assert body["payment"] is None

    with app.app_context():
        last = BillingAttempt.query.order_by(BillingAttempt.id.desc()).first()
        assert last.status == "succeeded"
        assert last.invoice_id == body["invoice_id"]
    assert owner_client.post(f"/api/subscriptions/{sub['id']}/retry-billing").status_code == 409


def test_usage_and_entitlements(owner_client):
    cust = _create_customer(owner_client)
    plan = _create_plan(owner_client)
    sub = owner_client.post("/api/subscriptions", json={"customer_id": cust["id"], "plan_id": plan["id"]}).get_json()

    resp = owner_client.post(f"/api/subscriptions/{sub['id']}/usage", json={"metric": "api_calls", "quantity": 250})
    assert resp.status_code == 201
    bad = owner_client.post(f"/api/subscriptions/{sub['id']}/usage", json={"metric": "api_calls", "quantity": -1})
    assert bad.status_code == 400

    ent = owner_client.get(f"/api/customers/{cust['id']}/entitlements").get_json()
    assert ent["active"] is True
    assert ent["plan_key"] == "basic"
    row = ent["features"]["api_calls"]
    assert row["used"] == 250
    assert row["overage"] == 150
    assert row["remaining"] == 750


def test_analytics_and_notifications(owner_client):
    cust = _create_customer(owner_client)
    plan = _create_plan(owner_client)
    owner_client.post("/api/subscriptions", json={"customer_id": cust["id"], "plan_id": plan["id"]})

    revenue = owner_client.get("/api/analytics/revenue").get_json()
    assert revenue["mrr"] == 1000
    assert revenue["arr"] == 12000
    assert revenue["subscriptions"] == {"active": 1}

    export = owner_client.get("/api/analytics/export")
    assert export.mimetype == "text/csv"
    assert export.get_data(as_text=True).splitlines()[0] == "date,gross,refunds,net"

    # no tax rate is configured for US-CA
    items = owner_client.get("/api/notifications").get_json()["items"]
    missing = [n for n in items if n["type"] == "MISSING_TAX_RATE"]
    assert missing
    read = owner_client.post(f"/api/notifications/{missing[0]['id']}/read").get_json()
    assert read["read_at"] is not None


# ------------------------- tax & admin -------------------------

def test_tax_rate_writes_need_platform_admin(admin_client, owner_client):
    rate = {"name": "California", "country": "us", "state": "ca", "percentage": 7.25}
    assert owner_client.post("/api/tax-rates", json=rate).status_code == 403
    created = admin_client.post("/api/tax-rates", json=rate)
    assert created.status_code == 201

    result = owner_client.post("/api/tax/calculate", json={"amount": 10000, "country": "US", "state": "CA"}).get_json()
    assert result["tax_amount"] == 725
    assert result["total_amount"] == 10725
    assert result["jurisdiction"] == "US-CA"


def test_admin_health(admin_client, owner_client):
    resp = admin_client.get("/admin/health")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["ok"] is True
    assert body["checks"]["database"] == "ok"
    assert body["checks"]["cron_secret"] is True
    assert body["counts"]["organizations"] == 2

    assert owner_client.get("/admin/health").status_code == 403


# ------------------------- outbound webhook endpoints -------------------------

def test_webhook_endpoint_crud(owner_client):
    resp = owner_client.post("/api/webhooks/endpoints", json={
        "url": "https://hooks.example.test/billing",
        "events": ["INVOICE_PAID"],
    })
    assert resp.status_code == 201
    ep = resp.get_json()
    assert ep["secret"]

    items = owner_client.get("/api/webhooks/endpoints").get_json()["items"]
    assert [i["id"] for i in items] == [ep["id"]]
    assert "secret" not in items[0]

    rotated = owner_client.post(f"/api/webhooks/endpoints/{ep['id']}/rotate-secret").get_json()
    assert rotated["secret"] != ep["secret"]

    patched = owner_client.patch(f"/api/webhooks/endpoints/{ep['id']}", json={"active": False}).get_json()
    assert patched["active"] is False

    bad = owner_client.post("/api/webhooks/endpoints", json={"url": "ftp://x.example.test", "events": ["*"]})
    assert bad.status_code == 400

    assert owner_client.delete(f"/api/webhooks/endpoints/{ep['id']}").get_json() == {"ok": True, "deleted": ep["id"]}
    assert owner_client.get("/api/webhooks/endpoints").get_json()["items"] == []
