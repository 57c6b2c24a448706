import os

from ledger.rate_providers import EXCHANGERATE_HOST_URL, FRANKFURTER_URL, normalize_currency
from ledger.rate_refresh import REFRESH_INTERVAL_SECONDS


def env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def get_base_currency() -> str:
    raw = os.getenv("BASE_CURRENCY", "TRY")
    try:
        return normalize_currency(raw)
    except ValueError:
        return "TRY"


def get_refresh_interval() -> float:
    raw = os.getenv("RATE_REFRESH_INTERVAL_SECONDS")
    try:
        interval = float(raw) if raw else REFRESH_INTERVAL_SECONDS
    except ValueError:
        return REFRESH_INTERVAL_SECONDS
    return interval if interval > 0 else REFRESH_INTERVAL_SECONDS


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./ledger.db")
FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
BASE_CURRENCY = get_base_currency()
FRANKFURTER_BASE_URL = os.getenv("FRANKFURTER_URL", FRANKFURTER_URL)
EXCHANGERATE_HOST_BASE_URL = os.getenv("EXCHANGERATE_HOST_URL", EXCHANGERATE_HOST_URL)
EXCHANGERATE_HOST_KEY = os.getenv("EXCHANGERATE_HOST_KEY") or None
RATE_REFRESH_ON_STARTUP = env_flag("RATE_REFRESH_ON_STARTUP", True)
RATE_REFRESH_INTERVAL_SECONDS = get_refresh_interval()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_JSON = env_flag("LOG_JSON", True)
