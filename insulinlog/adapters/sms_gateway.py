# insulinlog/adapters/sms_gateway.py
"""
SMS delivery over the provider's HTTP API.

send_sms() never raises: every outcome is a SendResult so the reminder engine can
leave patient state untouched on failure and retry on its next tick.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Optional

import httpx

from insulinlog.core.logging_utils import kv
from insulinlog.core.patient_state import SendResult

logger = logging.getLogger("insulinlog.sms")

_STRIP_RE = re.compile(r"[\s\-+]")
_OK_STATUSES = (200, 201, 202)


def normalize_phone(phone: str, country_code: str = "233") -> str:
    """'024 123-4567' -> '233241234567'; numbers already carrying the code are kept."""
    digits = _STRIP_RE.sub("", phone)
    if digits.startswith("0"):
        return country_code + digits[1:]
    if not digits.startswith(country_code):
        return country_code + digits
    return digits


class SmsGateway:
    def __init__(
        self,
        *,
        api_url: str,
        app_id: Optional[str],
        app_secret: Optional[str],
        sender_id: str,
        timeout_s: float = 30.0,
        country_code: str = "233",
        enabled: bool = True,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_url = api_url
        self.app_id = app_id
        self.app_secret = app_secret
        self.sender_id = sender_id
        self.country_code = country_code
        self.enabled = enabled
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    @classmethod
    def from_config(cls, cfg: Any) -> "SmsGateway":
        return cls(
            api_url=getattr(cfg, "SMS_API_URL"),
            app_id=getattr(cfg, "SMS_APP_ID", None),
            app_secret=getattr(cfg, "SMS_APP_SECRET", None),
            sender_id=getattr(cfg, "SMS_SENDER_ID", "CimonsTech"),
            timeout_s=float(getattr(cfg, "SMS_TIMEOUT_S", 30)),
            country_code=str(getattr(cfg, "SMS_COUNTRY_CODE", "233")),
            enabled=bool(getattr(cfg, "SMS_ENABLED", True)),
        )

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.app_id}.{self.app_secret}",
            "Content-Type": "application/json",
        }

    async def send_sms(self, phone: str, message: str) -> SendResult:
        if not self.enabled:
            logger.info("sms.disabled " + kv(phone=phone, length=len(message)))
            return SendResult(success=True, message_id="disabled")

        if not self.app_id or not self.app_secret:
            logger.error("sms.misconfigured " + kv(reason="missing credentials"))
            return SendResult(success=False, error="SMS API credentials not configured")

        recipient = normalize_phone(phone, self.country_code)
        payload = {
            "sender_id": self.sender_id,
            "message": message,
            "recipients": [recipient],
        }
        logger.debug("sms.request " + kv(to=recipient, length=len(message)))

        try:
            response = await self._client.post(self.api_url, json=payload, headers=self.headers)
        except httpx.TimeoutException as e:
            logger.warning("sms.timeout " + kv(to=recipient, err=str(e)))
            return SendResult(success=False, error=f"timeout: {e}")
        except httpx.HTTPError as e:
            logger.warning("sms.transport_error " + kv(to=recipient, err=str(e)))
            return SendResult(success=False, error=str(e))

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code in _OK_STATUSES:
            return SendResult(
                success=True,
                message_id=_message_id(data),
                extra={"status": response.status_code},
            )

        error = (data.get("message") or data.get("error")) if isinstance(data, dict) else None
        logger.warning(
            "sms.rejected " + kv(to=recipient, status=response.status_code, err=error)
        )
        return SendResult(
            success=False,
            error=error or f"HTTP {response.status_code}",
            extra={"status": response.status_code},
        )

    async def close(self) -> None:
        await self._client.aclose()


def _message_id(data: Any) -> str:
    if not isinstance(data, dict):
        return "unknown"
    items = data.get("data")
    if isinstance(items, list) and items and isinstance(items[0], dict):
        ref = items[0].get("reference")
        if ref:
            return str(ref)
    return str(data.get("message_id") or data.get("id") or "unknown")
