"""
Shared fixtures.

Each test gets a fresh app bound to an in-memory SQLite database.
Service tests use `ctx` (an app context around the whole test); HTTP tests
use `client` / `owner_client` without an outer context so every request
loads its own user.
"""
import os

import pytest

# provider keys from a developer shell must not leak into tests
for _key in (
    "DATABASE_URL",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "PAYPAL_CLIENT_ID",
    "PAYPAL_CLIENT_SECRET",
    "PAYPAL_WEBHOOK_ID",
    "BITPAY_TOKEN",
    "WYRE_WEBHOOK_SECRET",
    "CRON_SECRET",
    "TAX_CACHE_REDIS_URL",
    "AUTO_APPLY_CREDIT",
    "DUNNING_INTERVAL_HOURS",
):
    os.environ.pop(_key, None)

from app import create_app, db  # noqa: E402
from models import Customer, Organization, Plan, PlanFeature, PricingTier, User  # noqa: E402
from services.tax_cache import reset_tax_cache  # noqa: E402

CRON_SECRET = "cron-test-secret"
STRIPE_WEBHOOK_SECRET = "whsec_test"
WYRE_WEBHOOK_SECRET = "wyre-test-secret"
PASSWORD = "correct-horse-battery"


@pytest.fixture
def app(tmp_path):
    reset_tax_cache()
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test",
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "LOG_DIR": str(tmp_path),
        "BCRYPT_LOG_ROUNDS": 4,
        "CRON_SECRET": CRON_SECRET,
        "STRIPE_WEBHOOK_SECRET": STRIPE_WEBHOOK_SECRET,
        "WYRE_WEBHOOK_SECRET": WYRE_WEBHOOK_SECRET,
        "APP_BASE_URL": "https://billing.test",
    })
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
    reset_tax_cache()


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield app
        db.session.rollback()


@pytest.fixture
def client(app):
    return app.test_client()


# ----- service-level data (needs ctx) -----

@pytest.fixture
def org(ctx):
    o = Organization(name="Acme", email="billing@acme.test", country="US")
    db.session.add(o)
    db.session.commit()
    return o


@pytest.fixture
def customer(org):
    c = Customer(organization_id=org.id, name="Globex", email="ap@globex.test",
                 country="US", state="CA", currency="usd")
    db.session.add(c)
    db.session.commit()
    return c


@pytest.fixture
def basic_plan(org):
    p = Plan(organization_id=org.id, code="basic", name="Basic", price=1000,
             currency="usd", interval="month")
    db.session.add(p)
    db.session.commit()
    return p


@pytest.fixture
def pro_plan(org):
    p = Plan(organization_id=org.id, code="pro", name="Pro", price=3000,
             currency="usd", interval="month")
    db.session.add(p)
    db.session.commit()
    return p


@pytest.fixture
def metered_plan(org):
    p = Plan(organization_id=org.id, code="metered", name="Metered", price=2000,
             currency="usd", interval="month")
    p.features = [PlanFeature(metric="api_calls", included=100, limit=1000, warning_pct=80)]
    p.tiers = [
        PricingTier(metric="api_calls", up_to=500, unit_amount=2),
        PricingTier(metric="api_calls", up_to=None, unit_amount=1, flat_amount=100),
    ]
    db.session.add(p)
    db.session.commit()
    return p


# ----- HTTP helpers -----

def register(client, email="owner@acme.test", organization_name="Acme", country="US"):
    return client.post("/auth/register", json={
        "email": email,
        "password": PASSWORD,
        "name": "Owner",
        "organization_name": organization_name,
        "country": country,
    })


@pytest.fixture
def owner_client(client):
    resp = register(client)
    assert resp.status_code == 201, resp.get_json()
    return client


@pytest.fixture
def admin_client(app):
    """Platform admin in its own organization."""
    c = app.test_client()
    resp = register(c, email="root@platform.test", organization_name="Platform")
    assert resp.status_code == 201
    with app.app_context():
        u = User.query.filter_by(email="root@platform.test").first()
        u.is_admin = True
        db.session.commit()
    return c
