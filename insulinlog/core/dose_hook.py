# insulinlog/core/dose_hook.py
"""
Write-side hooks the reminder engine depends on: dose logging, email verification
and the activation toggle.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from insulinlog.core.logging_utils import kv
from insulinlog.core.patient_state import (
    DEACTIVATION_REASONS,
    MANUAL_DEACTIVATION_PREFIX,
    Clock,
    DoseRecord,
    DoseType,
    PatientState,
    SubscriptionType,
    as_utc,
)
from insulinlog.core.reminder_state import dose_reset_fields
from insulinlog.errors import ActivationError, DoseRestrictionError

BASAL_MIN_SPACING = timedelta(hours=20)
RENEWAL_DAYS = {SubscriptionType.MONTHLY: 30, SubscriptionType.YEARLY: 365}


def renewed_expiry(
    expiry: Optional[datetime], sub_type: Optional[SubscriptionType], now: datetime
) -> Optional[datetime]:
    """Extend from the later of now and the current expiry; Monthly unless Yearly."""
    if expiry is None:
        return None
    days = RENEWAL_DAYS.get(sub_type, RENEWAL_DAYS[SubscriptionType.MONTHLY])
    return max(now, expiry) + timedelta(days=days)


class DoseEventHook:
    def __init__(
        self, store: Any, clock: Optional[Clock] = None, notifier: Any = None
    ) -> None:
        self.store = store
        self.clock = clock or Clock()
        self.notifier = notifier
        self.log = logging.getLogger("insulinlog.doses")

    async def on_dose_logged(self, patient_id: int, dose_time: datetime) -> bool:
        """
        Reset the reminder baseline after a dose. Best-effort: a failure is logged
        and reported as False, never raised into the dose-logging path.
        The reminder tick re-derives the baseline from the dose log if this write is lost.
        """
        dose_time = as_utc(dose_time)
        try:
            changed = await self.store.update_fields(patient_id, dose_reset_fields(dose_time))
        except Exception as e:
            self.log.error(
                "dose.hook_failed " + kv(patient_id=patient_id, dose_time=dose_time.isoformat(), err=str(e))
            )
            return False
        if not changed:
            self.log.error("dose.hook_failed " + kv(patient_id=patient_id, err="patient not found"))
            return False
        self.log.info("dose.baseline_reset " + kv(patient_id=patient_id, dose_time=dose_time.isoformat()))
        return True

    async def record_dose(
        self,
        patient_id: int,
        dose_type: DoseType,
        timestamp: datetime,
        notes: Optional[str] = None,
    ) -> DoseRecord:
        """
        Persist a dose and reset the reminder baseline.
        No dose may be logged within 20 hours after the latest Basal dose.
        """
        dose_type = DoseType(dose_type)
        timestamp = as_utc(timestamp)

        last_basal = await self.store.latest_dose_time(patient_id, DoseType.BASAL)
        if last_basal is not None and timestamp - last_basal < BASAL_MIN_SPACING:
            raise DoseRestrictionError(last_basal, last_basal + BASAL_MIN_SPACING)

        dose = DoseRecord(patient_id=patient_id, type=dose_type, timestamp=timestamp, notes=notes)
        dose_id = await self.store.insert_dose(dose)
        self.log.info(
            "dose.logged " + kv(patient_id=patient_id, type=dose_type.value, ts=timestamp.isoformat())
        )
        await self.on_dose_logged(patient_id, timestamp)
        return DoseRecord(
            id=dose_id, patient_id=patient_id, type=dose_type, timestamp=timestamp, notes=notes
        )

    async def on_verified(self, patient_id: int, now: Optional[datetime] = None) -> PatientState:
        """
        Email verification completed: activate the account, start the new-user ladder
        (welcome_sms_sent_at is its anchor) and send the welcome SMS.
        The anchor is stamped whether or not the SMS goes out; a second call is a no-op.
        """
        now = now or self.clock.now()
        p = await self.store.get(patient_id)
        if p is None:
            raise ActivationError(f"patient {patient_id} not found")
        if p.verified and p.welcome_sms_sent_at is not None:
            return p

        fields = {
            "verified": True,
            "active": True,
            "welcome_sms_sent_at": now,
            "last_activation_date": now,
        }
        changed = await self.store.update_fields(
            patient_id, fields, expect={"welcome_sms_sent_at": None}
        )
        if not changed:
            raise ActivationError(f"patient {patient_id} changed concurrently; retry")
        p = p.with_fields(fields)
        self.log.info("patient.verified " + kv(patient_id=patient_id, at=now))

        if self.notifier is None or not p.phone:
            self.log.warning(
                "welcome.sms_skip "
                + kv(patient_id=patient_id, reason="no phone" if self.notifier else "no notifier")
            )
            return p
        result = await self.notifier.send_welcome(p)
        if result.success:
            self.log.info(
                "welcome.sms_sent " + kv(patient_id=patient_id, message_id=result.message_id)
            )
        else:
            self.log.warning("welcome.sms_failed " + kv(patient_id=patient_id, err=result.error))
        return p

    async def set_active(
        self,
        patient_id: int,
        active: bool,
        now: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> PatientState:
        now = now or self.clock.now()
        p = await self.store.get(patient_id)
        if p is None:
            raise ActivationError(f"patient {patient_id} not found")
        if p.active == active:
            return p

        fields: Dict[str, Any]
        if active:
            fields = {
                "active": True,
                "previous_active_state": False,
                "last_activation_date": now,
                "deactivated_at": None,
                "deactivation_reason": None,
            }
            expiry = renewed_expiry(p.subscription_expiry, p.subscription_type, now)
            if expiry is not None:
                fields["subscription_expiry"] = expiry
        else:
            if reason not in DEACTIVATION_REASONS or not reason.startswith(MANUAL_DEACTIVATION_PREFIX):
                raise ActivationError(f"invalid deactivation reason: {reason!r}")
            fields = {
                "active": False,
                "previous_active_state": True,
                "deactivated_at": now,
                "deactivation_reason": reason,
            }

        changed = await self.store.update_fields(patient_id, fields, expect={"active": p.active})
        if not changed:
            raise ActivationError(f"patient {patient_id} changed concurrently; retry")
        self.log.info(
            "patient.activation "
            + kv(
                patient_id=patient_id,
                active=active,
                reason=reason,
                expiry=fields.get("subscription_expiry").isoformat()
                if fields.get("subscription_expiry")
                else None,
            )
        )
        return p.with_fields(fields)
