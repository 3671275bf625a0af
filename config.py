# config.py
"""
Flask config loaded by app.create_app() via app.config.from_object("config").
Every value can be overridden from the environment.
"""
import os

BASE_DIR = os.path.dirname(os.path.abspath(__file__))


def _bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")
APP_VERSION = os.getenv("APP_VERSION", "dev")
APP_BASE_URL = os.getenv("APP_BASE_URL", "")
LOG_DIR = os.getenv("LOG_DIR", os.path.join(BASE_DIR, "logs"))

# ----- Database -----
SQLALCHEMY_DATABASE_URI = os.getenv(
    "DATABASE_URL", "sqlite:///" + os.path.join(BASE_DIR, "billing.db")
)
SQLALCHEMY_TRACK_MODIFICATIONS = False
SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

# ----- Payment providers -----
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")

PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID", "")
PAYPAL_CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET", "")
PAYPAL_WEBHOOK_ID = os.getenv("PAYPAL_WEBHOOK_ID", "")
PAYPAL_API_BASE = os.getenv("PAYPAL_API_BASE", "https://api-m.sandbox.paypal.com")

BITPAY_API_BASE = os.getenv("BITPAY_API_BASE", "https://test.bitpay.com")
BITPAY_TOKEN = os.getenv("BITPAY_TOKEN", "")

WYRE_WEBHOOK_SECRET = os.getenv("WYRE_WEBHOOK_SECRET", "")

# ----- Cron -----
CRON_SECRET = os.getenv("CRON_SECRET", "")

# ----- Tax -----
TAX_CACHE_TTL_SECONDS = _int("TAX_CACHE_TTL_SECONDS", 24 * 60 * 60)
TAX_CACHE_REDIS_URL = os.getenv("TAX_CACHE_REDIS_URL", "")
TAX_ID_VALIDATION_DAYS = _int("TAX_ID_VALIDATION_DAYS", 30)
VIES_API_URL = os.getenv(
    "VIES_API_URL",
    "https://ec.europa.eu/taxation_customs/vies/rest-api/check-vat-number",
)

# ----- Invoicing -----
INVOICE_NUMBER_PREFIX = os.getenv("INVOICE_NUMBER_PREFIX", "INV")
INVOICE_DUE_DAYS = _int("INVOICE_DUE_DAYS", 30)
AUTO_APPLY_CREDIT = _bool("AUTO_APPLY_CREDIT", True)

# ----- Outbound webhooks -----
WEBHOOK_TIMEOUT_SECONDS = _int("WEBHOOK_TIMEOUT_SECONDS", 10)
WEBHOOK_MAX_ATTEMPTS = _int("WEBHOOK_MAX_ATTEMPTS", 3)
WEBHOOK_BACKOFF_SECONDS = _int("WEBHOOK_BACKOFF_SECONDS", 60)
WEBHOOK_BACKOFF_MAX_SECONDS = _int("WEBHOOK_BACKOFF_MAX_SECONDS", 3600)
WEBHOOK_EVENT_RETENTION_DAYS = _int("WEBHOOK_EVENT_RETENTION_DAYS", 90)

# ----- Dunning / trials -----
DUNNING_INTERVAL_HOURS = os.getenv("DUNNING_INTERVAL_HOURS", "1,6,24,72")
TRIAL_REMINDER_DAYS = os.getenv("TRIAL_REMINDER_DAYS", "1,3,7")

# ----- Monitoring -----
SLOW_OPERATION_MS = _int("SLOW_OPERATION_MS", 2000)
