import os

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except Exception:
        return int(default)


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        return float(raw)
    except Exception:
        return float(default)


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./agenda.db")
    DB_AUTO_CREATE_ALL = _get_bool("DB_AUTO_CREATE_ALL", True)
    SQLITE_BUSY_TIMEOUT_SECONDS = _get_float("SQLITE_BUSY_TIMEOUT_SECONDS", 30.0)

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip() or "INFO"
    LOG_JSON = _get_bool("LOG_JSON", True)

    # Operating window in minutes from midnight (06:00-23:00).
    OPERATING_WINDOW_START_MIN = _get_int("OPERATING_WINDOW_START_MIN", 6 * 60)
    OPERATING_WINDOW_END_MIN = _get_int("OPERATING_WINDOW_END_MIN", 23 * 60)
    AVAILABILITY_WORKERS = _get_int("AVAILABILITY_WORKERS", 4)

    NOTIFY_WORKERS = _get_int("NOTIFY_WORKERS", 2)
    NOTIFY_HTTP_TIMEOUT_SECONDS = _get_float("NOTIFY_HTTP_TIMEOUT_SECONDS", 10.0)

    NOTIFY_EMAIL_ENABLED = _get_bool("NOTIFY_EMAIL_ENABLED", False)
    RESEND_API_URL = os.getenv("RESEND_API_URL", "https://api.resend.com").strip()
    RESEND_API_KEY = os.getenv("RESEND_API_KEY", "").strip()
    EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "citas@agenda.local").strip()

    NOTIFY_WHATSAPP_ENABLED = _get_bool("NOTIFY_WHATSAPP_ENABLED", False)
    WHATSAPP_API_URL = os.getenv("WHATSAPP_API_URL", "https://graph.facebook.com/v18.0").strip()
    WHATSAPP_PHONE_NUMBER_ID = os.getenv("WHATSAPP_PHONE_NUMBER_ID", "").strip()
    WHATSAPP_ACCESS_TOKEN = os.getenv("WHATSAPP_ACCESS_TOKEN", "").strip()

    REDIS_URL = os.getenv("REDIS_URL", "").strip()
    EVENT_BUS_ENABLED = _get_bool("EVENT_BUS_ENABLED", False)
    EVENT_BUS_STREAM = os.getenv("EVENT_BUS_STREAM", "agenda.events").strip()

    SECURITY_HEADERS_ENABLED = _get_bool("SECURITY_HEADERS_ENABLED", True)


settings = Settings()
