import os
from pathlib import Path


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes"}


def env_csv(name: str, default: str = "") -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


_default_db = str(Path(__file__).resolve().parents[1] / "data" / "marketplace.sqlite3")
DB_PATH = os.getenv("MARKETPLACE_DB_PATH", _default_db)
DB_BUSY_TIMEOUT_SECONDS = env_int("DB_BUSY_TIMEOUT_SECONDS", 5)

LOCK_DURATION_HOURS = env_int("LOCK_DURATION_HOURS", 24)
MAX_LEADS_PER_REQUEST = env_int("MAX_LEADS_PER_REQUEST", 5)

CONFIRMATION_TIMER_MINUTES = {
    "immediate": env_int("CONFIRMATION_TIMER_MINUTES_IMMEDIATE", 15),
    "week": env_int("CONFIRMATION_TIMER_MINUTES_WEEK", 30),
    "month": env_int("CONFIRMATION_TIMER_MINUTES_MONTH", 60),
}
DEFAULT_URGENCY = "week"

ADMIN_USER_IDS = set(env_csv("ADMIN_USER_IDS", "admin_1"))
SWEEP_TOKEN = os.getenv("SWEEP_TOKEN", "").strip()

FIREBASE_CREDENTIALS_PATH = os.getenv("FIREBASE_CREDENTIALS_PATH", "").strip()

RESEND_API_KEY = os.getenv("RESEND_API_KEY", "").strip()
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "DoneEZ <notifications@resend.dev>")
APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:5173").rstrip("/")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
