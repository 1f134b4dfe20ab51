# insulinlog/core/config_validation.py
from __future__ import annotations

from typing import Any, Dict


def _positive(cfg: Any, name: str) -> None:
    value = getattr(cfg, name, None)
    if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
        raise ValueError(f"{name} must be a positive number, got {value!r}")


def validate_config(cfg: Any) -> None:
    """Validate runtime configuration before starting the schedulers."""
    for name in (
        "REMINDER_INTERVAL_MIN",
        "REACTIVATION_WINDOW_H",
        "PATIENT_TIMEOUT_S",
        "MAX_CONCURRENT_PATIENTS",
        "SMS_TIMEOUT_S",
    ):
        _positive(cfg, name)

    hour = getattr(cfg, "SUBSCRIPTION_CHECK_HOUR", None)
    if not isinstance(hour, int) or not 0 <= hour <= 23:
        raise ValueError(f"SUBSCRIPTION_CHECK_HOUR must be 0..23, got {hour!r}")

    if getattr(cfg, "TZ", None) is None:
        raise ValueError("TZ must be a tzinfo (set TIMEZONE)")

    # SMS credentials are only required when delivery is live
    if getattr(cfg, "SMS_ENABLED", False):
        for name in ("SMS_API_URL", "SMS_APP_ID", "SMS_APP_SECRET", "SMS_SENDER_ID"):
            if not getattr(cfg, name, None):
                raise ValueError(f"{name} is required when SMS_ENABLED is on")

    if getattr(cfg, "EMAIL_ENABLED", False):
        for name in ("SMTP_HOST", "SMTP_PORT", "EMAIL_FROM"):
            if not getattr(cfg, name, None):
                raise ValueError(f"{name} is required when EMAIL_ENABLED is on")

    code = str(getattr(cfg, "SMS_COUNTRY_CODE", "") or "")
    if not code.isdigit():
        raise ValueError(f"SMS_COUNTRY_CODE must be digits, got {code!r}")

    admins = getattr(cfg, "ADMIN_CHAT_IDS", None)
    if not isinstance(admins, list) or not all(isinstance(x, int) for x in admins):
        raise ValueError("ADMIN_CHAT_IDS must be a list of integer chat ids")

    db: Dict[str, Any] = getattr(cfg, "DB", None)
    if not isinstance(db, dict):
        raise ValueError("DB must be a dict")
    for key in ("host", "port", "user", "password", "db"):
        if key not in db:
            raise ValueError(f"DB missing required field: {key}")
