import os

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except Exception:
        return int(default)


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./bookflow.db")
    DB_AUTO_CREATE_ALL = _get_bool("DB_AUTO_CREATE_ALL", False)
    DB_SCHEMA_CHECK_ON_STARTUP = _get_bool("DB_SCHEMA_CHECK_ON_STARTUP", True)
    REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379/0").strip()

    EVENT_BUS_ENABLED = _get_bool("EVENT_BUS_ENABLED", False)
    EVENT_BUS_STREAM = os.getenv("EVENT_BUS_STREAM", "bookflow.events").strip()
    OUTBOX_MAX_RETRIES = _get_int("OUTBOX_MAX_RETRIES", 8)

    BREVO_API_KEY = os.getenv("BREVO_API_KEY", "").strip()
    BREVO_API_URL = os.getenv("BREVO_API_URL", "https://api.brevo.com/v3/smtp/email").strip()
    EMAIL_SENDER_ADDRESS = os.getenv("EMAIL_SENDER_ADDRESS", "no-reply@bookflow.local").strip()
    EMAIL_SENDER_NAME = os.getenv("EMAIL_SENDER_NAME", "Bookflow").strip()
    EMAIL_TIMEOUT_SECONDS = _get_int("EMAIL_TIMEOUT_SECONDS", 10)

    DEFAULT_SLOT_GAP_MINUTES = _get_int("DEFAULT_SLOT_GAP_MINUTES", 30)
    DEFAULT_WORKING_HOURS_START = os.getenv("DEFAULT_WORKING_HOURS_START", "09:00").strip()
    DEFAULT_WORKING_HOURS_END = os.getenv("DEFAULT_WORKING_HOURS_END", "18:00").strip()
    DURATION_TOLERANCE_MINUTES = _get_int("DURATION_TOLERANCE_MINUTES", 5)

    TRIAL_DAYS = _get_int("TRIAL_DAYS", 14)

    SECURITY_HEADERS_ENABLED = _get_bool("SECURITY_HEADERS_ENABLED", True)
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()


settings = Settings()
