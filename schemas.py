"""
Pydantic request models for the JSON API.

Handlers call `Model.model_validate(request.get_json(silent=True) or {})`;
a failure raises pydantic.ValidationError, which app.py answers with
{"error": "Invalid data", "details": [...]} / 400.

Money is integer cents. Datetimes are normalized to naive UTC to match the
database columns.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator

Interval = Literal["month", "year"]
Aggregation = Literal["sum", "max", "min", "avg", "last"]
DiscountType = Literal["percentage", "fixed"]
TaxType = Literal["VAT", "GST", "HST", "PST", "SALES_TAX"]
Role = Literal["owner", "admin", "member"]


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _upper(value: str) -> str:
    return value.strip().upper()


def _email_address(value: str) -> str:
    value = value.lower()
    if "@" not in value or "." not in value.split("@")[-1]:
        raise ValueError("Please enter a valid email address.")
    return value


# ISO country / state codes, upper-cased
Code = Annotated[str, AfterValidator(_upper)]
UtcDatetime = Annotated[datetime, AfterValidator(_naive_utc)]


class _Request(BaseModel):
    """Base for request bodies: strip strings, reject unknown keys."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")


def _not_null(value: Any) -> Any:
    # PATCH bodies: a key may be omitted, but not nulled on a NOT NULL column
    if value is None:
        raise ValueError("Field cannot be null.")
    return value


# --- Auth ---

class RegisterRequest(_Request):
    email: str = Field(..., min_length=3, max_length=120)
    password: str = Field(..., min_length=8, max_length=128)
    name: Optional[str] = Field(None, max_length=120)
    organization_name: str = Field(..., min_length=1, max_length=120)
    country: Optional[Code] = Field(None, min_length=2, max_length=2)

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        return _email_address(v)


class LoginRequest(_Request):
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=1)
    remember: bool = True


class MemberCreate(_Request):
    email: str = Field(..., min_length=3, max_length=120)
    name: Optional[str] = Field(None, max_length=120)
    role: Role = "member"
    password: Optional[str] = Field(None, min_length=8, max_length=128)

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        return _email_address(v)


class RoleUpdate(_Request):
    role: Role


# --- Customers ---

class CustomerCreate(_Request):
    name: str = Field(..., min_length=1, max_length=120)
    email: Optional[str] = Field(None, max_length=120)
    country: Optional[Code] = Field(None, min_length=2, max_length=2)
    state: Optional[Code] = Field(None, max_length=8)
    tax_id: Optional[str] = Field(None, max_length=32)
    is_business: bool = False
    currency: str = Field("usd", min_length=3, max_length=3)
    default_payment_method: Optional[str] = Field(None, max_length=64)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def _currency(cls, v: str) -> str:
        return v.lower()


class CustomerUpdate(_Request):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    email: Optional[str] = Field(None, max_length=120)
    country: Optional[Code] = Field(None, min_length=2, max_length=2)
    state: Optional[Code] = Field(None, max_length=8)
    tax_id: Optional[str] = Field(None, max_length=32)
    is_business: Optional[bool] = None
    default_payment_method: Optional[str] = Field(None, max_length=64)

    _required = field_validator("name", "is_business")(_not_null)


class MetadataUpdate(_Request):
    metadata: Dict[str, Any]
    replace: bool = False


class CreditRequest(_Request):
    amount: int = Field(..., gt=0, description="Cents")
    action: Literal["add", "deduct"] = "add"
    description: Optional[str] = Field(None, max_length=255)
    reason: Optional[str] = Field(None, max_length=255)


class ApplyCreditRequest(_Request):
    invoice_id: int
    amount: Optional[int] = Field(None, gt=0)


class PaymentMethodAttach(_Request):
    payment_method_id: str = Field(..., min_length=3, max_length=64)
    set_default: bool = False


class TaxIdValidateRequest(_Request):
    tax_id: Optional[str] = Field(None, max_length=32)
    country: Optional[Code] = Field(None, min_length=2, max_length=2)
    tax_type: str = "VAT"


class TaxExemptionRequest(_Request):
    exempt: bool
    tax_type: str = "ALL"
    certificate_url: Optional[str] = Field(None, max_length=512)
    valid_until: Optional[UtcDatetime] = None


# --- Plans & coupons ---

class PlanFeatureIn(_Request):
    metric: str = Field(..., min_length=1, max_length=64)
    included: float = Field(0, ge=0)
    limit: Optional[float] = Field(None, ge=0)
    warning_pct: int = Field(80, ge=1, le=100)
    aggregation: Aggregation = "sum"


class PricingTierIn(_Request):
    metric: str = Field(..., min_length=1, max_length=64)
    up_to: Optional[float] = Field(None, gt=0)
    unit_amount: float = Field(0, ge=0)
    flat_amount: int = Field(0, ge=0)


class PlanCreate(_Request):
    code: str = Field(..., min_length=1, max_length=40)
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    price: int = Field(..., ge=0, description="Cents per unit per interval")
    currency: str = Field("usd", min_length=3, max_length=3)
    interval: Interval = "month"
    trial_days: int = Field(0, ge=0, le=365)
    stripe_price_id: Optional[str] = Field(None, max_length=64)
    features: List[PlanFeatureIn] = Field(default_factory=list)
    tiers: List[PricingTierIn] = Field(default_factory=list)

    @field_validator("currency")
    @classmethod
    def _currency(cls, v: str) -> str:
        return v.lower()


class PlanUpdate(_Request):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    description: Optional[str] = None
    price: Optional[int] = Field(None, ge=0)
    trial_days: Optional[int] = Field(None, ge=0, le=365)
    stripe_price_id: Optional[str] = Field(None, max_length=64)
    active: Optional[bool] = None
    features: Optional[List[PlanFeatureIn]] = None
    tiers: Optional[List[PricingTierIn]] = None

    _required = field_validator("name", "price", "trial_days", "active")(_not_null)


class CouponCreate(_Request):
    code: str = Field(..., min_length=1, max_length=40)
    discount_type: DiscountType
    amount: float = Field(..., gt=0)
    max_redemptions: Optional[int] = Field(None, ge=1)
    valid_until: Optional[UtcDatetime] = None
    plan_id: Optional[int] = None


class CouponValidateRequest(_Request):
    code: str = Field(..., min_length=1, max_length=40)
    plan_id: Optional[int] = None


# --- Subscriptions & usage ---

class SubscriptionCreate(_Request):
    customer_id: int
    plan_id: int
    quantity: int = Field(1, ge=1)
    trial_days: Optional[int] = Field(None, ge=0, le=365)
    coupon_code: Optional[str] = Field(None, max_length=40)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TrialRequest(_Request):
    customer_id: int
    plan_id: int
    trial_days: Optional[int] = Field(None, ge=1, le=365)


class ProrationPreviewRequest(_Request):
    subscription_id: int
    new_plan_id: int
    quantity: Optional[int] = Field(None, ge=1)


class ChangePlanRequest(_Request):
    plan_id: int
    quantity: Optional[int] = Field(None, ge=1)


class CancelRequest(_Request):
    at_period_end: bool = True
    reason: Optional[str] = Field(None, max_length=255)


class PauseRequest(_Request):
    resume_at: Optional[UtcDatetime] = None


class UsageRecordIn(_Request):
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid", allow_inf_nan=False)

    metric: str = Field(..., min_length=1, max_length=64)
    quantity: float = Field(..., ge=0)
    recorded_at: Optional[UtcDatetime] = None
    idempotency_key: Optional[str] = Field(None, max_length=128)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class UsageBulkRequest(_Request):
    records: List[UsageRecordIn] = Field(..., min_length=1, max_length=1000)


# --- Invoices & payments ---

class InvoiceItemIn(_Request):
    description: str = Field(..., min_length=1, max_length=255)
    quantity: float = Field(1, gt=0)
    unit_amount: float = Field(..., description="Cents; negative for adjustments")
    metric: Optional[str] = Field(None, max_length=64)
    period_start: Optional[UtcDatetime] = None
    period_end: Optional[UtcDatetime] = None


class InvoiceCreate(_Request):
    customer_id: int
    items: List[InvoiceItemIn] = Field(..., min_length=1)
    subscription_id: Optional[int] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    due_days: Optional[int] = Field(None, ge=0, le=365)
    notes: Optional[str] = None
    coupon_code: Optional[str] = Field(None, max_length=40)
    finalize: bool = False


class RefundRequest(_Request):
    amount: Optional[int] = Field(None, gt=0)
    reason: Optional[str] = Field(None, max_length=255)


class ManualPaymentRequest(_Request):
    invoice_id: int
    amount: int = Field(..., gt=0)
    reference: Optional[str] = Field(None, max_length=128)


class CheckoutRequest(_Request):
    customer_id: int
    plan_id: int


# --- Tax ---

class TaxRateCreate(_Request):
    name: str = Field(..., min_length=1, max_length=120)
    country: Code = Field(..., min_length=2, max_length=2)
    state: Optional[Code] = Field(None, max_length=8)
    percentage: float = Field(..., ge=0, le=100)
    tax_type: TaxType = "SALES_TAX"
    description: Optional[str] = Field(None, max_length=255)
    active: bool = True


class TaxRateUpdate(_Request):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    percentage: Optional[float] = Field(None, ge=0, le=100)
    tax_type: Optional[TaxType] = None
    description: Optional[str] = Field(None, max_length=255)
    active: Optional[bool] = None

    _required = field_validator("name", "percentage", "tax_type", "active")(_not_null)


class TaxCalculateRequest(_Request):
    amount: int = Field(..., ge=0, description="Cents")
    currency: str = Field("usd", min_length=3, max_length=3)
    country: Optional[Code] = Field(None, min_length=2, max_length=2)
    state: Optional[Code] = Field(None, max_length=8)
    customer_id: Optional[int] = None
    tax_exempt: bool = False


# --- Outbound webhooks ---

class WebhookEndpointCreate(_Request):
    url: str = Field(..., min_length=8, max_length=512)
    events: List[str] = Field(..., min_length=1)
    description: Optional[str] = Field(None, max_length=255)
    max_attempts: Optional[int] = Field(None, ge=1, le=20)


class WebhookEndpointUpdate(_Request):
    url: Optional[str] = Field(None, min_length=8, max_length=512)
    events: Optional[List[str]] = Field(None, min_length=1)
    description: Optional[str] = Field(None, max_length=255)
    max_attempts: Optional[int] = Field(None, ge=1, le=20)
    active: Optional[bool] = None

    _required = field_validator("url", "events", "max_attempts", "active")(_not_null)
