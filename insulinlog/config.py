"""
Runtime configuration for the InsulinLog reminder backend.
Values come from the environment (.env supported); everything inside the core is UTC.
"""

from __future__ import annotations

import os
from typing import Any
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

load_dotenv()


def _bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off", "")


def _int_list(name: str) -> list[int]:
    raw = os.getenv(name, "")
    return [int(x) for x in raw.replace(";", ",").split(",") if x.strip()]


# --------------------------------------------------------------------------------------
# Scheduling
# --------------------------------------------------------------------------------------
TIMEZONE = os.getenv("TIMEZONE", "Africa/Accra")
TZ = ZoneInfo(TIMEZONE)

REMINDER_INTERVAL_MIN = int(os.getenv("REMINDER_INTERVAL_MIN", "30"))
SUBSCRIPTION_CHECK_HOUR = int(os.getenv("SUBSCRIPTION_CHECK_HOUR", "9"))
REACTIVATION_WINDOW_H = float(os.getenv("REACTIVATION_WINDOW_H", "2"))

# Per-patient unit budget inside one tick; a stuck send/query is abandoned after this
PATIENT_TIMEOUT_S = float(os.getenv("PATIENT_TIMEOUT_S", "45"))
MAX_CONCURRENT_PATIENTS = int(os.getenv("MAX_CONCURRENT_PATIENTS", "10"))

# Re-derive the reminder baseline from the dose log when the cached copy is stale
RECONCILE_DOSE_BASELINE = _bool("RECONCILE_DOSE_BASELINE", True)

# --------------------------------------------------------------------------------------
# SMS provider (HTTP)
# --------------------------------------------------------------------------------------
SMS_ENABLED = _bool("SMS_ENABLED", True)
SMS_API_URL = os.getenv("SMS_API_URL", "https://api.letsfish.africa/v1/sms")
SMS_APP_ID = os.getenv("SMS_APP_ID")
SMS_APP_SECRET = os.getenv("SMS_APP_SECRET")
SMS_SENDER_ID = os.getenv("SMS_SENDER_ID", "CimonsTech")
SMS_TIMEOUT_S = float(os.getenv("SMS_TIMEOUT_S", "30"))
SMS_COUNTRY_CODE = os.getenv("SMS_COUNTRY_CODE", "233")

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")
SUPPORT_CONTACT = os.getenv("SUPPORT_CONTACT", "support@insulinlog.com")

# --------------------------------------------------------------------------------------
# Patient e-mail (SMTP); subscription notices also go here when a patient has an address
# --------------------------------------------------------------------------------------
EMAIL_ENABLED = _bool("EMAIL_ENABLED", False)
SMTP_HOST = os.getenv("SMTP_HOST", "localhost")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USERNAME = os.getenv("SMTP_USERNAME")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
SMTP_TIMEOUT_S = float(os.getenv("SMTP_TIMEOUT_S", "30"))
EMAIL_FROM = os.getenv("EMAIL_FROM", "InsulinLog <no-reply@insulinlog.com>")

# --------------------------------------------------------------------------------------
# Admin alerts (Telegram)
# --------------------------------------------------------------------------------------
BOT_TOKEN: str | None = os.getenv("BOT_TOKEN")
ADMIN_CHAT_IDS: list[int] = _int_list("ADMIN_CHAT_IDS")

# --------------------------------------------------------------------------------------
# Storage
# --------------------------------------------------------------------------------------
DB = {
    "host": os.getenv("DB_HOST", "127.0.0.1"),
    "port": int(os.getenv("DB_PORT", "3306")),
    "user": os.getenv("DB_USER", "insulinlog"),
    "password": os.getenv("DB_PASSWORD", ""),
    "db": os.getenv("DB_NAME", "insulinlog"),
}

# --------------------------------------------------------------------------------------
# Logging
# --------------------------------------------------------------------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
AUDIT_LOG_FILE = os.getenv("AUDIT_LOG_FILE", "logs/audit.log")
EVENTS_CSV = os.getenv("EVENTS_CSV", "logs/notifications.csv")


def get_bot_token(cfg: Any = None) -> str:
    token = getattr(cfg, "BOT_TOKEN", None) if cfg is not None else BOT_TOKEN
    token = token or os.getenv("BOT_TOKEN")
    if not token:
        raise RuntimeError(
            "Bot token is not set. Set env var BOT_TOKEN to enable admin alerts."
        )
    return token
