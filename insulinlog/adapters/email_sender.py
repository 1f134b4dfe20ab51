# insulinlog/adapters/email_sender.py
"""
Patient e-mail over SMTP (STARTTLS + login).

send_email() never raises; the blocking smtplib session runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Optional

from insulinlog.core.logging_utils import kv
from insulinlog.core.patient_state import SendResult

logger = logging.getLogger("insulinlog.email")


class EmailSender:
    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        sender: str,
        timeout_s: float = 30.0,
        enabled: bool = True,
        smtp_factory: Any = smtplib.SMTP,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.timeout_s = timeout_s
        self.enabled = enabled
        self._smtp_factory = smtp_factory

    @classmethod
    def from_config(cls, cfg: Any) -> "EmailSender":
        return cls(
            host=getattr(cfg, "SMTP_HOST", "localhost"),
            port=int(getattr(cfg, "SMTP_PORT", 587)),
            username=getattr(cfg, "SMTP_USERNAME", None),
            password=getattr(cfg, "SMTP_PASSWORD", None),
            sender=getattr(cfg, "EMAIL_FROM", "InsulinLog <no-reply@insulinlog.com>"),
            timeout_s=float(getattr(cfg, "SMTP_TIMEOUT_S", 30)),
            enabled=bool(getattr(cfg, "EMAIL_ENABLED", False)),
        )

    def build_message(self, to: str, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)
        return msg

    def _deliver(self, msg: EmailMessage) -> None:
        with self._smtp_factory(self.host, self.port, timeout=self.timeout_s) as server:
            server.starttls()
            if self.username:
                server.login(self.username, self.password or "")
            server.send_message(msg)

    async def send_email(self, to: str, subject: str, body: str) -> SendResult:
        if not self.enabled:
            logger.info("email.disabled " + kv(to=to, subject=subject))
            return SendResult(success=True, message_id="disabled")

        msg = self.build_message(to, subject, body)
        try:
            await asyncio.to_thread(self._deliver, msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("email.failed " + kv(to=to, err=str(e)))
            return SendResult(success=False, error=f"smtp: {e}")
        logger.debug("email.sent " + kv(to=to, subject=subject))
        return SendResult(success=True, message_id=msg.get("Message-ID") or "smtp")

    async def close(self) -> None:
        """Sessions are per message; nothing to release."""
