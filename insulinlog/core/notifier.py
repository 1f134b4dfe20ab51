# insulinlog/core/notifier.py
from __future__ import annotations

from datetime import datetime
from html import escape
from typing import Any, List, Optional, Sequence
from zoneinfo import ZoneInfo

from insulinlog.core.messages import render
from insulinlog.core.patient_state import DoseRecord, PatientState, SendResult
from insulinlog.core.reminder_state import (
    SMS_DECISIONS,
    Decision,
    SendActiveReminder,
    SendNewUserReminder,
)

SUBSCRIPTION_TEMPLATES = {
    "warning": "subscription_warning",
    "urgent": "subscription_urgent",
    "expired": "subscription_expired",
}


class Notifier:
    """
    Turns reminder decisions into message text and hands it to the delivery adapters.
    `sms` needs `send_sms(phone, text)`, `admin` needs `broadcast(text)` and the optional
    `email` needs `send_email(to, subject, body)`; all return SendResult.
    """

    def __init__(self, sms: Any, admin: Any, cfg: Any, email: Any = None) -> None:
        self.sms = sms
        self.admin = admin
        self.email = email
        self.tz: ZoneInfo = getattr(cfg, "TZ", None) or ZoneInfo("UTC")
        self.login_url = f"{getattr(cfg, 'FRONTEND_URL', 'http://localhost:5173')}/login"
        self.support = getattr(cfg, "SUPPORT_CONTACT", "support@insulinlog.com")

    # ------------------- formatting -------------------
    def _date(self, dt: Optional[datetime]) -> str:
        if dt is None:
            return "Unknown"
        return dt.astimezone(self.tz).strftime("%d/%m/%Y")

    def _datetime(self, dt: datetime) -> str:
        return dt.astimezone(self.tz).strftime("%d %b %Y %H:%M")

    def reminder_text(self, p: PatientState, decision: Decision) -> str:
        if not isinstance(decision, SMS_DECISIONS):
            raise ValueError(f"no SMS template for decision {decision!r}")
        if isinstance(decision, SendNewUserReminder):
            key = "new_user_reminder"
        elif isinstance(decision, SendActiveReminder):
            key = f"dose_reminder_{decision.attempt}"
        else:
            key = "dose_reminder_final"
        return render("sms", key, name=p.name, login_url=self.login_url)

    # ------------------- patient SMS -------------------
    async def send_sms(self, phone: str, message: str) -> SendResult:
        return await self.sms.send_sms(phone, message)

    async def send_reminder(self, p: PatientState, decision: Decision) -> SendResult:
        return await self.send_sms(p.phone or "", self.reminder_text(p, decision))

    async def send_reactivation(self, p: PatientState, now: datetime) -> SendResult:
        expired = p.subscription_expiry is not None and p.subscription_expiry <= now
        key = "reactivation_expired" if expired else "reactivation_active"
        text = render(
            "sms",
            key,
            name=p.name,
            expiry=self._date(p.subscription_expiry),
            login_url=self.login_url,
            support=self.support,
        )
        return await self.send_sms(p.phone or "", text)

    async def send_welcome(self, p: PatientState) -> SendResult:
        return await self.send_sms(p.phone or "", render("sms", "welcome", name=p.name))

    # ------------------- subscription notices -------------------
    def channels(self, p: PatientState) -> List[str]:
        """Channels a subscription notice can reach this patient on."""
        out = []
        if p.phone:
            out.append("sms")
        if p.email and self.email is not None:
            out.append("email")
        return out

    async def send_subscription_notice(self, p: PatientState, kind: str) -> SendResult:
        """Send on every available channel; delivered if any channel took it."""
        template = SUBSCRIPTION_TEMPLATES[kind]
        text = render(
            "sms",
            template,
            name=p.name,
            subscription_type=p.subscription_type.value if p.subscription_type else "current",
            expiry=self._date(p.subscription_expiry),
            support=self.support,
        )
        results = []
        for channel in self.channels(p):
            if channel == "sms":
                results.append(await self.send_sms(p.phone, text))
            else:
                subject = render("email", f"{template}_subject")
                results.append(await self.email.send_email(p.email, subject, text))

        if not results:
            return SendResult(success=False, error="no delivery channel")
        delivered = [r for r in results if r.success]
        if delivered:
            return SendResult(
                success=True,
                message_id=",".join(str(r.message_id) for r in delivered),
                extra={"channels": len(delivered)},
            )
        return SendResult(success=False, error="; ".join(r.error or "send failed" for r in results))

    # ------------------- admin -------------------
    def admin_alert_text(
        self,
        p: PatientState,
        last_doses: Sequence[DoseRecord],
        last_reminders: Sequence[datetime],
        now: datetime,
    ) -> str:
        empty = render("admin", "empty_list")
        doses = "\n".join(
            f"• {d.type.value} - {self._datetime(d.timestamp)}" for d in last_doses[:5]
        )
        reminders = "\n".join(f"• {self._datetime(r)}" for r in last_reminders)
        return render(
            "admin",
            "inactive_user_alert",
            name=escape(p.name),
            email=escape(p.email or "-"),
            phone=escape(p.phone or "-"),
            reported_at=self._datetime(now),
            doses=doses or empty,
            reminders=reminders or empty,
        )

    async def send_admin_alert(
        self,
        p: PatientState,
        last_doses: Sequence[DoseRecord],
        last_reminders: Sequence[datetime],
        now: datetime,
    ) -> SendResult:
        return await self.admin.broadcast(
            self.admin_alert_text(p, last_doses, last_reminders, now)
        )
