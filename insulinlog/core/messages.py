import logging
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

MESSAGES_PATH = Path(__file__).resolve().parent.parent / "messages.yaml"

REQUIRED_SMS_KEYS = (
    "welcome",
    "new_user_reminder",
    "dose_reminder_1",
    "dose_reminder_2",
    "dose_reminder_final",
    "reactivation_active",
    "reactivation_expired",
    "subscription_warning",
    "subscription_urgent",
    "subscription_expired",
)

REQUIRED_EMAIL_KEYS = (
    "subscription_warning_subject",
    "subscription_urgent_subject",
    "subscription_expired_subject",
)


def load_messages(path: Path = MESSAGES_PATH) -> Dict[str, Dict[str, str]]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except FileNotFoundError:
        logger.error(f"Message templates not found at {path}")
        raise

    sms = raw.get("sms", {})
    for key in REQUIRED_SMS_KEYS:
        if key not in sms:
            logger.error(f"[MESSAGES LOADER] Missing sms template '{key}'")
            raise KeyError(f"Missing sms template '{key}'")

    email = raw.get("email", {})
    for key in REQUIRED_EMAIL_KEYS:
        if key not in email:
            logger.error(f"[MESSAGES LOADER] Missing email template '{key}'")
            raise KeyError(f"Missing email template '{key}'")
    return {"sms": sms, "email": email, "admin": raw.get("admin", {})}


MESSAGES = load_messages()


def render(section: str, key: str, **kwargs: Any) -> str:
    return MESSAGES[section][key].format(**kwargs)
