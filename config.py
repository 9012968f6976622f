import os

from dotenv import load_dotenv

load_dotenv()


def _safe_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or str(raw).strip() == "":
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


def _safe_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or str(raw).strip() == "":
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def _env_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return val.strip().lower() in {"1", "true", "yes", "y", "on"}


CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:3000").strip().rstrip("/")
CURRENCY = os.getenv("CURRENCY", "BHD").strip() or "BHD"
CHECKOUT_SESSION_MINUTES = _safe_int_env("CHECKOUT_SESSION_MINUTES", 30)
ORDER_RESERVATION_MINUTES = _safe_int_env("ORDER_RESERVATION_MINUTES", 15)
# Allowed drift between the client-side cart total and the server-priced total.
TOTAL_TOLERANCE = _safe_float_env("TOTAL_TOLERANCE", 0.01)

CRON_SECRET = os.getenv("CRON_SECRET", "").strip()
ADMIN_USERS = {
    name.strip().lower()
    for name in os.getenv("ADMIN_USERS", "").split(",")
    if name.strip()
}

LOG_DIR = os.getenv("LOG_DIR", "logs")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DB_CONNECT_TIMEOUT = _safe_float_env("DB_CONNECT_TIMEOUT", 4.0)
DB_READ_TIMEOUT = _safe_float_env("DB_READ_TIMEOUT", 8.0)
DB_WRITE_TIMEOUT = _safe_float_env("DB_WRITE_TIMEOUT", 8.0)
DB_FAILURE_BACKOFF_SECONDS = _safe_float_env("DB_FAILURE_BACKOFF_SECONDS", 20.0)

GATEWAY_TIMEOUT = _safe_float_env("GATEWAY_TIMEOUT", 30.0)

EAZYPAY_CHECKOUT_BASE_URL = os.getenv(
    "EAZYPAY_CHECKOUT_BASE_URL", "https://api.eazy.net/merchant/checkout"
).rstrip("/")
EAZYPAY_CHECKOUT_APP_ID = os.getenv("EAZYPAY_CHECKOUT_APP_ID", "").strip()
EAZYPAY_CHECKOUT_SECRET_KEY = os.getenv("EAZYPAY_CHECKOUT_SECRET_KEY", "").strip()
EAZYPAY_SIGNATURE_FORMULA = os.getenv("EAZYPAY_SIGNATURE_FORMULA", "timestamp_only").strip()
EAZYPAY_PAYMENT_METHODS = os.getenv(
    "EAZYPAY_PAYMENT_METHODS", "BENEFITGATEWAY,CREDITCARD,APPLEPAY"
).strip()
EAZYPAY_WEBHOOKS_ENABLED = _env_bool("EAZYPAY_WEBHOOKS_ENABLED", False)

BENEFIT_TRANPORTAL_ID = os.getenv("BENEFIT_TRANPORTAL_ID", "").strip()
BENEFIT_TRANPORTAL_PASSWORD = os.getenv("BENEFIT_TRANPORTAL_PASSWORD", "").strip()
BENEFIT_RESOURCE_KEY = os.getenv("BENEFIT_RESOURCE_KEY", "").strip()
BENEFIT_ENDPOINT = os.getenv("BENEFIT_ENDPOINT", "").strip()
BENEFIT_FASTER_CHECKOUT_ENABLED = _env_bool("BENEFIT_FASTER_CHECKOUT_ENABLED", False)
# Saved card tokens are encrypted at rest; falls back to the resource key.
BENEFIT_TOKEN_ENCRYPTION_KEY = os.getenv("BENEFIT_TOKEN_ENCRYPTION_KEY", "").strip()

BENEFITPAY_WALLET_CHECK_STATUS_URL = os.getenv(
    "BENEFITPAY_WALLET_CHECK_STATUS_URL",
    "https://api.test-benefitpay.bh/web/v1/merchant/transaction/check-status",
).strip()

RATE_LIMITS = {
    "checkout_session": (
        _safe_int_env("RATE_LIMIT_CHECKOUT_SESSION", 10),
        60,
    ),
    "place_order": (_safe_int_env("RATE_LIMIT_PLACE_ORDER", 5), 60),
    "payment_status": (_safe_int_env("RATE_LIMIT_PAYMENT_STATUS", 30), 60),
}
