# insulinlog/core/subscription.py
"""
Daily subscription sweep: expiry warnings and deactivation of expired accounts.

  days_until_expiry == 7  -> warning SMS
  days_until_expiry == 1  -> urgent SMS
  days_until_expiry <= 0  -> expired SMS (only on day 0), then deactivate while still active
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from insulinlog.core.csvlog import csv_append
from insulinlog.core.logging_utils import kv
from insulinlog.core.patient_state import (
    SUBSCRIPTION_EXPIRED,
    Clock,
    PatientFilter,
    PatientState,
    SendResult,
)
from insulinlog.errors import SubscriptionCheckError

SECONDS_PER_DAY = 86400


def days_until_expiry(expiry: datetime, now: datetime) -> int:
    return math.ceil((expiry - now).total_seconds() / SECONDS_PER_DAY)


def deactivation_fields(now: datetime) -> Dict[str, Any]:
    return {
        "active": False,
        "deactivated_at": now,
        "previous_active_state": True,
        "deactivation_reason": SUBSCRIPTION_EXPIRED,
    }


@dataclass
class SubscriptionReport:
    total_checked: int = 0
    seven_day_warnings: int = 0
    one_day_warnings: int = 0
    expired: int = 0
    deactivated: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


class SubscriptionScheduler:
    def __init__(self, store: Any, notifier: Any, cfg: Any, clock: Optional[Clock] = None):
        self.store = store
        self.notifier = notifier
        self.clock = clock or Clock()
        self.log = logging.getLogger("insulinlog.subscriptions")
        self.events_csv: Optional[str] = getattr(cfg, "EVENTS_CSV", None)
        self._lock = asyncio.Lock()

    async def run(self, now: Optional[datetime] = None) -> SubscriptionReport:
        """One sweep. Sweeps are serialized; a second caller waits for the first."""
        async with self._lock:
            return await self._sweep(now or self.clock.now())

    async def drain(self) -> None:
        """Wait for an in-flight sweep to finish (used on shutdown)."""
        async with self._lock:
            pass

    async def _sweep(self, now: datetime) -> SubscriptionReport:
        flt = PatientFilter(has_subscription=True, exclude_manual_deactivation=True)
        try:
            patients = await self.store.scan(flt)
        except Exception as e:
            raise SubscriptionCheckError(f"subscription scan failed: {e}") from e

        report = SubscriptionReport(total_checked=len(patients))
        for p in patients:
            try:
                await self._check(p, now, report)
            except Exception as e:
                report.errors.append({"patient_id": p.id, "error": str(e)})
                self.log.error("subscription.error " + kv(patient_id=p.id, err=str(e)))

        self.log.info(
            "subscription.done "
            + kv(
                checked=report.total_checked,
                seven_day=report.seven_day_warnings,
                one_day=report.one_day_warnings,
                expired=report.expired,
                deactivated=report.deactivated,
                errors=len(report.errors),
            )
        )
        return report

    async def scheduled_run(self) -> None:
        """APScheduler entrypoint."""
        try:
            await self.run()
        except SubscriptionCheckError as e:
            self.log.error("subscription.failed " + kv(err=str(e)))

    async def _check(self, p: PatientState, now: datetime, report: SubscriptionReport) -> None:
        days = days_until_expiry(p.subscription_expiry, now)
        self.log.debug("subscription.check " + kv(patient_id=p.id, days=days))

        if days == 7:
            if await self._notify(p, "warning", now, report):
                report.seven_day_warnings += 1
        elif days == 1:
            if await self._notify(p, "urgent", now, report):
                report.one_day_warnings += 1
        elif days <= 0:
            if days == 0 and await self._notify(p, "expired", now, report):
                report.expired += 1
            # Deactivation does not depend on the notice going out
            if p.active:
                changed = await self.store.update_fields(
                    p.id, deactivation_fields(now), expect={"active": True}
                )
                if changed:
                    report.deactivated += 1
                    self.log.info(
                        "subscription.deactivated "
                        + kv(patient_id=p.id, expiry=p.subscription_expiry.isoformat())
                    )

    async def _notify(
        self, p: PatientState, kind: str, now: datetime, report: SubscriptionReport
    ) -> bool:
        if not self.notifier.channels(p):
            self.log.info(
                "subscription.skip " + kv(patient_id=p.id, kind=kind, reason="no phone or email")
            )
            return False
        result: SendResult = await self.notifier.send_subscription_notice(p, kind)
        self._audit(p, kind, result, now)
        if not result.success:
            report.errors.append({"patient_id": p.id, "error": result.error or "send failed"})
            self.log.warning(
                "subscription.send_failed " + kv(patient_id=p.id, kind=kind, err=result.error)
            )
            return False
        self.log.info("subscription.notice " + kv(patient_id=p.id, kind=kind))
        return True

    def _audit(self, p: PatientState, kind: str, result: SendResult, now: datetime) -> None:
        if not self.events_csv:
            return
        try:
            csv_append(
                self.events_csv,
                now=now,
                patient_id=p.id,
                job="subscriptions",
                tier=f"subscription_{kind}",
                success=result.success,
                message_id=result.message_id,
                error=result.error,
            )
        except OSError as e:
            self.log.error("audit.csv_failed " + kv(path=self.events_csv, err=str(e)))
