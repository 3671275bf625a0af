# models.py
import secrets

from flask_login import UserMixin
from app import db, bcrypt  # created in app.py
from services.dates import utcnow  # naive UTC, like every DateTime column


# ----- Status vocabularies ---------------------------------------------------

SUBSCRIPTION_STATUSES = ("trialing", "active", "past_due", "paused", "canceled", "incomplete")
# A customer may hold at most one subscription in any of these.
LIVE_SUBSCRIPTION_STATUSES = ("trialing", "active", "past_due", "paused")

INVOICE_STATUSES = ("draft", "open", "paid", "void", "uncollectible")
PAYMENT_STATUSES = ("pending", "succeeded", "failed", "refunded")
PAYMENT_PROVIDERS = ("stripe", "paypal", "bitpay", "wyre", "manual")
TAX_TYPES = ("VAT", "GST", "HST", "PST", "SALES_TAX")
AGGREGATIONS = ("sum", "max", "min", "avg", "last")
SEVERITIES = ("INFO", "WARNING", "ERROR", "CRITICAL")


# ----- Organization / User ---------------------------------------------------

class Organization(db.Model):
    __tablename__ = "organizations"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), nullable=True)
    country = db.Column(db.String(2), nullable=True)
    state = db.Column(db.String(8), nullable=True)
    tax_id = db.Column(db.String(32), nullable=True)
    stripe_customer_id = db.Column(db.String(64), nullable=True)
    settings = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    users = db.relationship("User", back_populates="organization")
    customers = db.relationship(
        "Customer",
        back_populates="organization",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Organization {self.id} {self.name}>"


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    name = db.Column(db.String(120), nullable=True)
    password_hash = db.Column(db.String(255), nullable=True)
    role = db.Column(db.String(16), nullable=False, default="member")  # owner | admin | member
    is_admin = db.Column(db.Boolean, nullable=False, default=False)   # platform admin
    api_token_hash = db.Column(db.String(255), nullable=True)
    organization_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    organization = db.relationship("Organization", back_populates="users")

    # password helpers
    def set_password(self, password: str) -> None:
        self.password_hash = bcrypt.generate_password_hash(password).decode("utf-8")

    def check_password(self, password: str) -> bool:
        if not self.password_hash:
            return False
        return bcrypt.check_password_hash(self.password_hash, password)

    # API token helpers (token is shown once; only the hash is stored)
    def issue_api_token(self) -> str:
        token = secrets.token_urlsafe(32)
        self.api_token_hash = bcrypt.generate_password_hash(token).decode("utf-8")
        return token

    def check_api_token(self, token: str) -> bool:
        if not self.api_token_hash or not token:
            return False
        return bcrypt.check_password_hash(self.api_token_hash, token)

    @property
    def can_manage(self) -> bool:
        return bool(self.is_admin) or self.role in ("owner", "admin")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "is_admin": bool(self.is_admin),
            "organization_id": self.organization_id,
        }

    def __repr__(self) -> str:
        return f"<User {self.id} {self.email}>"


# ----- Customer ---------------------------------------------------------------

class Customer(db.Model):
    __tablename__ = "customers"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), nullable=True, index=True)

    # tax location / identity
    country = db.Column(db.String(2), nullable=True)
    state = db.Column(db.String(8), nullable=True)
    tax_id = db.Column(db.String(32), nullable=True)
    tax_id_validated = db.Column(db.Boolean, nullable=False, default=False)
    is_business = db.Column(db.Boolean, nullable=False, default=False)

    credit_balance = db.Column(db.Integer, nullable=False, default=0)  # cents
    currency = db.Column(db.String(3), nullable=False, default="usd")

    stripe_customer_id = db.Column(db.String(64), nullable=True, index=True)
    default_payment_method = db.Column(db.String(64), nullable=True)
    meta = db.Column("metadata", db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    organization = db.relationship("Organization", back_populates="customers")
    subscriptions = db.relationship(
        "Subscription",
        back_populates="customer",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    tax_exemptions = db.relationship(
        "TaxExemption",
        back_populates="customer",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def has_payment_method(self) -> bool:
        return bool(self.default_payment_method)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "email": self.email,
            "country": self.country,
            "state": self.state,
            "tax_id": self.tax_id,
            "tax_id_validated": bool(self.tax_id_validated),
            "is_business": bool(self.is_business),
            "credit_balance": int(self.credit_balance or 0),
            "currency": self.currency,
            "stripe_customer_id": self.stripe_customer_id,
            "has_payment_method": self.has_payment_method,
            "metadata": self.meta or {},
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<Customer {self.id} org:{self.organization_id} {self.name}>"


# ----- Plans -------------------------------------------------------------------

class Plan(db.Model):
    __tablename__ = "plans"
    __table_args__ = (db.UniqueConstraint("organization_id", "code", name="uq_plan_org_code"),)

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    code = db.Column(db.String(40), nullable=False)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, nullable=True)
    price = db.Column(db.Integer, nullable=False, default=0)  # cents per unit per interval
    currency = db.Column(db.String(3), nullable=False, default="usd")
    interval = db.Column(db.String(8), nullable=False, default="month")  # month | year
    trial_days = db.Column(db.Integer, nullable=False, default=0)
    stripe_price_id = db.Column(db.String(64), nullable=True)
    active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    features = db.relationship(
        "PlanFeature",
        back_populates="plan",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    tiers = db.relationship(
        "PricingTier",
        back_populates="plan",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def feature_for(self, metric: str):
        for f in self.features:
            if f.metric == metric:
                return f
        return None

    def tiers_for(self, metric: str) -> list:
        return [t for t in self.tiers if t.metric == metric]

    @property
    def monthly_amount(self) -> float:
        """Price normalized to one month (used for MRR)."""
        price = int(self.price or 0)
        return price / 12.0 if self.interval == "year" else float(price)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "price": int(self.price or 0),
            "currency": self.currency,
            "interval": self.interval,
            "trial_days": int(self.trial_days or 0),
            "stripe_price_id": self.stripe_price_id,
            "active": bool(self.active),
            "features": [f.to_dict() for f in self.features],
            "tiers": [t.to_dict() for t in self.tiers],
        }

    def __repr__(self) -> str:
        return f"<Plan {self.id} {self.code} {self.price}{self.currency}/{self.interval}>"


class PlanFeature(db.Model):
    __tablename__ = "plan_features"
    __table_args__ = (db.UniqueConstraint("plan_id", "metric", name="uq_plan_feature_metric"),)

    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(
        db.Integer,
        db.ForeignKey("plans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    metric = db.Column(db.String(64), nullable=False)
    included = db.Column(db.Float, nullable=False, default=0)
    limit = db.Column(db.Float, nullable=True)           # NULL = unlimited
    warning_pct = db.Column(db.Integer, nullable=False, default=80)
    aggregation = db.Column(db.String(8), nullable=False, default="sum")

    plan = db.relationship("Plan", back_populates="features")

    def to_dict(self) -> dict:
        return {
            "metric": self.metric,
            "included": self.included,
            "limit": self.limit,
            "warning_pct": self.warning_pct,
            "aggregation": self.aggregation,
        }


class PricingTier(db.Model):
    __tablename__ = "pricing_tiers"

    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(
        db.Integer,
        db.ForeignKey("plans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    metric = db.Column(db.String(64), nullable=False)
    up_to = db.Column(db.Float, nullable=True)           # NULL = unbounded
    unit_amount = db.Column(db.Float, nullable=False, default=0)  # cents per unit
    flat_amount = db.Column(db.Integer, nullable=False, default=0)

    plan = db.relationship("Plan", back_populates="tiers")

    def to_dict(self) -> dict:
        return {
            "metric": self.metric,
            "up_to": self.up_to,
            "unit_amount": self.unit_amount,
            "flat_amount": self.flat_amount,
        }


# ----- Subscriptions & usage ---------------------------------------------------

class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(
        db.Integer,
        db.ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    plan_id = db.Column(db.Integer, db.ForeignKey("plans.id"), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default="active", index=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)

    current_period_start = db.Column(db.DateTime, nullable=False)
    current_period_end = db.Column(db.DateTime, nullable=False, index=True)
    trial_start = db.Column(db.DateTime, nullable=True)
    trial_end = db.Column(db.DateTime, nullable=True)
    trial_converted_at = db.Column(db.DateTime, nullable=True)

    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False)
    canceled_at = db.Column(db.DateTime, nullable=True)
    paused_at = db.Column(db.DateTime, nullable=True)
    resume_at = db.Column(db.DateTime, nullable=True)

    coupon_id = db.Column(db.Integer, db.ForeignKey("coupons.id"), nullable=True)
    stripe_subscription_id = db.Column(db.String(64), nullable=True, index=True)
    meta = db.Column("metadata", db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    customer = db.relationship("Customer", back_populates="subscriptions")
    plan = db.relationship("Plan")
    coupon = db.relationship("Coupon")
    usage_records = db.relationship(
        "UsageRecord",
        back_populates="subscription",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_SUBSCRIPTION_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "plan_id": self.plan_id,
            "plan_code": self.plan.code if self.plan else None,
            "status": self.status,
            "quantity": self.quantity,
            "current_period_start": _iso(self.current_period_start),
            "current_period_end": _iso(self.current_period_end),
            "trial_start": _iso(self.trial_start),
            "trial_end": _iso(self.trial_end),
            "cancel_at_period_end": bool(self.cancel_at_period_end),
            "canceled_at": _iso(self.canceled_at),
            "paused_at": _iso(self.paused_at),
            "resume_at": _iso(self.resume_at),
            "stripe_subscription_id": self.stripe_subscription_id,
            "metadata": self.meta or {},
        }

    def __repr__(self) -> str:
        return f"<Subscription {self.id} cust:{self.customer_id} plan:{self.plan_id} {self.status}>"


class UsageRecord(db.Model):
    __tablename__ = "usage_records"
    __table_args__ = (
        db.UniqueConstraint("subscription_id", "idempotency_key", name="uq_usage_idempotency"),
        db.Index("ix_usage_sub_metric_time", "subscription_id", "metric", "recorded_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(
        db.Integer,
        db.ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
    )
    metric = db.Column(db.String(64), nullable=False)
    quantity = db.Column(db.Float, nullable=False)
    recorded_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    idempotency_key = db.Column(db.String(128), nullable=True)
    meta = db.Column("metadata", db.JSON, nullable=True)

    subscription = db.relationship("Subscription", back_populates="usage_records")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subscription_id": self.subscription_id,
            "metric": self.metric,
            "quantity": self.quantity,
            "recorded_at": _iso(self.recorded_at),
            "idempotency_key": self.idempotency_key,
            "metadata": self.meta or {},
        }


# ----- Invoices & payments -----------------------------------------------------

class Invoice(db.Model):
    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)
    number = db.Column(db.String(40), unique=True, nullable=False, index=True)
    organization_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    customer_id = db.Column(
        db.Integer,
        db.ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.id"), nullable=True, index=True)
    status = db.Column(db.String(16), nullable=False, default="draft", index=True)
    currency = db.Column(db.String(3), nullable=False, default="usd")

    subtotal = db.Column(db.Integer, nullable=False, default=0)
    discount = db.Column(db.Integer, nullable=False, default=0)
    tax_rate = db.Column(db.Float, nullable=True)
    tax_amount = db.Column(db.Integer, nullable=False, default=0)
    tax_jurisdiction = db.Column(db.String(16), nullable=True)
    credit_applied = db.Column(db.Integer, nullable=False, default=0)
    total = db.Column(db.Integer, nullable=False, default=0)
    amount_paid = db.Column(db.Integer, nullable=False, default=0)

    period_start = db.Column(db.DateTime, nullable=True)
    period_end = db.Column(db.DateTime, nullable=True)
    due_date = db.Column(db.DateTime, nullable=True)
    issued_at = db.Column(db.DateTime, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    voided_at = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    coupon_id = db.Column(db.Integer, db.ForeignKey("coupons.id"), nullable=True)
    stripe_invoice_id = db.Column(db.String(64), nullable=True, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    customer = db.relationship("Customer")
    subscription = db.relationship("Subscription")
    coupon = db.relationship("Coupon")
    items = db.relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="InvoiceItem.id",
    )
    payments = db.relationship("Payment", back_populates="invoice")

    @property
    def amount_due(self) -> int:
        due = int(self.total or 0) - int(self.credit_applied or 0) - int(self.amount_paid or 0)
        return max(0, due)

    def to_dict(self, with_items: bool = True) -> dict:
        out = {
            "id": self.id,
            "number": self.number,
            "customer_id": self.customer_id,
            "subscription_id": self.subscription_id,
            "status": self.status,
            "currency": self.currency,
            "subtotal": self.subtotal,
            "discount": self.discount,
            "tax_rate": self.tax_rate,
            "tax_amount": self.tax_amount,
            "tax_jurisdiction": self.tax_jurisdiction,
            "credit_applied": self.credit_applied,
            "total": self.total,
            "amount_paid": self.amount_paid,
            "amount_due": self.amount_due,
            "period_start": _iso(self.period_start),
            "period_end": _iso(self.period_end),
            "due_date": _iso(self.due_date),
            "issued_at": _iso(self.issued_at),
            "paid_at": _iso(self.paid_at),
            "voided_at": _iso(self.voided_at),
            "notes": self.notes,
            "created_at": _iso(self.created_at),
        }
        if with_items:
            out["items"] = [i.to_dict() for i in self.items]
        return out

    def __repr__(self) -> str:
        return f"<Invoice {self.id} {self.number} {self.status} total:{self.total}>"


class InvoiceItem(db.Model):
    __tablename__ = "invoice_items"

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(
        db.Integer,
        db.ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    description = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Float, nullable=False, default=1)
    unit_amount = db.Column(db.Float, nullable=False, default=0)  # cents, may be fractional for metered units
    amount = db.Column(db.Integer, nullable=False, default=0)
    metric = db.Column(db.String(64), nullable=True)
    period_start = db.Column(db.DateTime, nullable=True)
    period_end = db.Column(db.DateTime, nullable=True)

    invoice = db.relationship("Invoice", back_populates="items")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "description": self.description,
            "quantity": self.quantity,
            "unit_amount": self.unit_amount,
            "amount": self.amount,
            "metric": self.metric,
            "period_start": _iso(self.period_start),
            "period_end": _iso(self.period_end),
        }


class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=True, index=True)
    amount = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="usd")
    provider = db.Column(db.String(16), nullable=False, default="stripe")
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    external_id = db.Column(db.String(128), nullable=True, index=True)
    failure_reason = db.Column(db.String(255), nullable=True)
    refunded_amount = db.Column(db.Integer, nullable=False, default=0)
    meta = db.Column("metadata", db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    invoice = db.relationship("Invoice", back_populates="payments")
    customer = db.relationship("Customer")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "invoice_id": self.invoice_id,
            "amount": self.amount,
            "currency": self.currency,
            "provider": self.provider,
            "status": self.status,
            "external_id": self.external_id,
            "failure_reason": self.failure_reason,
            "refunded_amount": self.refunded_amount,
            "created_at": _iso(self.created_at),
        }


# ----- Tax ---------------------------------------------------------------------

class TaxRate(db.Model):
    __tablename__ = "tax_rates"
    __table_args__ = (db.UniqueConstraint("country", "state", name="uq_tax_rate_country_state"),)

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.String(255), nullable=True)
    country = db.Column(db.String(2), nullable=False, index=True)
    state = db.Column(db.String(8), nullable=True)
    percentage = db.Column(db.Float, nullable=False)
    tax_type = db.Column(db.String(16), nullable=False, default="SALES_TAX")
    active = db.Column(db.Boolean, nullable=False, default=True)
    stripe_tax_rate_id = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def jurisdiction(self) -> str:
        return f"{self.country}-{self.state}" if self.state else self.country

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "country": self.country,
            "state": self.state,
            "percentage": self.percentage,
            "tax_type": self.tax_type,
            "active": bool(self.active),
            "stripe_tax_rate_id": self.stripe_tax_rate_id,
        }


class TaxExemption(db.Model):
    __tablename__ = "tax_exemptions"
    __table_args__ = (db.UniqueConstraint("customer_id", "tax_type", name="uq_exemption_customer_type"),)

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(
        db.Integer,
        db.ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    tax_type = db.Column(db.String(16), nullable=False, default="ALL")
    certificate_url = db.Column(db.String(512), nullable=True)
    valid_until = db.Column(db.DateTime, nullable=True)
    active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    customer = db.relationship("Customer", back_populates="tax_exemptions")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "tax_type": self.tax_type,
            "certificate_url": self.certificate_url,
            "valid_until": _iso(self.valid_until),
            "active": bool(self.active),
        }


class TaxIdValidation(db.Model):
    __tablename__ = "tax_id_validations"

    id = db.Column(db.Integer, primary_key=True)
    tax_id = db.Column(db.String(32), nullable=False, index=True)
    country = db.Column(db.String(2), nullable=False)
    tax_type = db.Column(db.String(16), nullable=False, default="VAT")
    is_valid = db.Column(db.Boolean, nullable=False, default=False)
    business_name = db.Column(db.String(255), nullable=True)
    business_address = db.Column(db.String(512), nullable=True)
    validated_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    valid_until = db.Column(db.DateTime, nullable=False)

    def to_dict(self) -> dict:
        return {
            "tax_id": self.tax_id,
            "country": self.country,
            "tax_type": self.tax_type,
            "is_valid": bool(self.is_valid),
            "business_name": self.business_name,
            "business_address": self.business_address,
            "validated_at": _iso(self.validated_at),
            "valid_until": _iso(self.valid_until),
        }


# ----- Coupons & credits -------------------------------------------------------

class Coupon(db.Model):
    __tablename__ = "coupons"
    __table_args__ = (db.UniqueConstraint("organization_id", "code", name="uq_coupon_org_code"),)

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    code = db.Column(db.String(40), nullable=False)
    discount_type = db.Column(db.String(16), nullable=False, default="percentage")  # percentage | fixed
    amount = db.Column(db.Float, nullable=False)  # percent (0-100] or cents
    max_redemptions = db.Column(db.Integer, nullable=True)
    times_redeemed = db.Column(db.Integer, nullable=False, default=0)
    valid_until = db.Column(db.DateTime, nullable=True)
    plan_id = db.Column(db.Integer, db.ForeignKey("plans.id"), nullable=True)
    active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "discount_type": self.discount_type,
            "amount": self.amount,
            "max_redemptions": self.max_redemptions,
            "times_redeemed": self.times_redeemed,
            "valid_until": _iso(self.valid_until),
            "plan_id": self.plan_id,
            "active": bool(self.active),
        }


class CreditAdjustment(db.Model):
    __tablename__ = "credit_adjustments"

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(
        db.Integer,
        db.ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amount = db.Column(db.Integer, nullable=False)  # signed: + credit, - debit
    kind = db.Column(db.String(16), nullable=False)  # CREDIT | DEBIT | APPLIED
    description = db.Column(db.String(255), nullable=True)
    reason = db.Column(db.String(255), nullable=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=True)
    balance_after = db.Column(db.Integer, nullable=False, default=0)
    actor_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "amount": self.amount,
            "kind": self.kind,
            "description": self.description,
            "reason": self.reason,
            "invoice_id": self.invoice_id,
            "balance_after": self.balance_after,
            "created_at": _iso(self.created_at),
        }


# ----- Webhooks ----------------------------------------------------------------

class WebhookEndpoint(db.Model):
    __tablename__ = "webhook_endpoints"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    url = db.Column(db.String(512), nullable=False)
    secret = db.Column(db.String(128), nullable=False)
    events = db.Column(db.JSON, nullable=False, default=list)
    description = db.Column(db.String(255), nullable=True)
    active = db.Column(db.Boolean, nullable=False, default=True)
    max_attempts = db.Column(db.Integer, nullable=False, default=3)
    deactivated_at = db.Column(db.DateTime, nullable=True)
    deactivation_reason = db.Column(db.String(255), nullable=True)
    last_success_at = db.Column(db.DateTime, nullable=True)
    last_failure_at = db.Column(db.DateTime, nullable=True)
    secret_rotated_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    deliveries = db.relationship(
        "WebhookDelivery",
        back_populates="endpoint",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def subscribes_to(self, event_type: str) -> bool:
        events = self.events or []
        return "*" in events or event_type in events

    def to_dict(self, include_secret: bool = False) -> dict:
        out = {
            "id": self.id,
            "url": self.url,
            "events": list(self.events or []),
            "description": self.description,
            "active": bool(self.active),
            "max_attempts": self.max_attempts,
            "deactivated_at": _iso(self.deactivated_at),
            "deactivation_reason": self.deactivation_reason,
            "last_success_at": _iso(self.last_success_at),
            "last_failure_at": _iso(self.last_failure_at),
            "created_at": _iso(self.created_at),
        }
        if include_secret:
            out["secret"] = self.secret
        return out


class WebhookDelivery(db.Model):
    __tablename__ = "webhook_deliveries"

    id = db.Column(db.Integer, primary_key=True)
    endpoint_id = db.Column(
        db.Integer,
        db.ForeignKey("webhook_endpoints.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_id = db.Column(db.String(64), nullable=False, index=True)
    event_type = db.Column(db.String(64), nullable=False)
    payload = db.Column(db.JSON, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    next_attempt_at = db.Column(db.DateTime, nullable=True, index=True)
    status_code = db.Column(db.Integer, nullable=True)
    response_body = db.Column(db.Text, nullable=True)
    error = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)

    endpoint = db.relationship("WebhookEndpoint", back_populates="deliveries")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "endpoint_id": self.endpoint_id,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "status": self.status,
            "attempts": self.attempts,
            "next_attempt_at": _iso(self.next_attempt_at),
            "status_code": self.status_code,
            "error": self.error,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }


class ProcessedWebhookEvent(db.Model):
    __tablename__ = "processed_webhook_events"
    __table_args__ = (db.UniqueConstraint("provider", "event_id", name="uq_processed_provider_event"),)

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(16), nullable=False)
    event_id = db.Column(db.String(128), nullable=False)
    event_type = db.Column(db.String(64), nullable=True, index=True)
    processed_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)


# ----- Audit / notifications / jobs ----------------------------------------------

class Event(db.Model):
    __tablename__ = "events"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True, index=True)
    event_type = db.Column(db.String(64), nullable=False, index=True)
    resource_type = db.Column(db.String(32), nullable=False)
    resource_id = db.Column(db.String(64), nullable=True)
    severity = db.Column(db.String(16), nullable=False, default="INFO")
    meta = db.Column("metadata", db.JSON, nullable=True)
    actor_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "event_type": self.event_type,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "severity": self.severity,
            "metadata": self.meta or {},
            "actor_id": self.actor_id,
            "created_at": _iso(self.created_at),
        }


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id", ondelete="CASCADE"), nullable=True, index=True)
    type = db.Column(db.String(32), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=True)
    data = db.Column(db.JSON, nullable=True)
    read_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "data": self.data or {},
            "read_at": _iso(self.read_at),
            "created_at": _iso(self.created_at),
        }


class BillingAttempt(db.Model):
    __tablename__ = "billing_attempts"

    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(
        db.Integer,
        db.ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=True)
    status = db.Column(db.String(16), nullable=False)  # succeeded | failed
    error_message = db.Column(db.Text, nullable=True)
    attempted_at = db.Column(db.DateTime, nullable=False, default=utcnow)


class DunningAttempt(db.Model):
    __tablename__ = "dunning_attempts"

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(
        db.Integer,
        db.ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    attempts_made = db.Column(db.Integer, nullable=False, default=0)
    max_attempts = db.Column(db.Integer, nullable=False)
    next_retry_at = db.Column(db.DateTime, nullable=True, index=True)
    status = db.Column(db.String(16), nullable=False, default="pending")
    last_error = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    invoice = db.relationship("Invoice")


class CronJobLog(db.Model):
    __tablename__ = "cron_job_logs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(64), nullable=False, index=True)
    started_at = db.Column(db.DateTime, nullable=False)
    finished_at = db.Column(db.DateTime, nullable=True)
    processed_count = db.Column(db.Integer, nullable=False, default=0)
    error_count = db.Column(db.Integer, nullable=False, default=0)
    errors = db.Column(db.JSON, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "job_name": self.job_name,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "processed_count": self.processed_count,
            "error_count": self.error_count,
            "errors": self.errors or [],
        }


def _iso(value):
    return value.isoformat() if value else None
