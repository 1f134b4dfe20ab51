# insulinlog/core/patient_state.py
from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

UTC = timezone.utc


class Cycle(str, Enum):
    NEW_USER = "new_user"
    ACTIVE_USER = "active_user"
    INACTIVE_USER = "inactive_user"
    ADMIN_NOTIFIED = "admin_notified"


class SubscriptionType(str, Enum):
    MONTHLY = "Monthly"
    YEARLY = "Yearly"


class DoseType(str, Enum):
    BASAL = "Basal"
    BOLUS = "Bolus"


SUBSCRIPTION_EXPIRED = "Subscription expired"
MANUAL_DEACTIVATION_PREFIX = "Manual deactivation"
DEACTIVATION_REASONS = (
    SUBSCRIPTION_EXPIRED,
    "Manual deactivation - Medical reasons",
    "Manual deactivation - Cost",
    "Manual deactivation - Other",
    "Manual deactivation - Account violation",
    "Manual deactivation - User request",
    "Manual deactivation - Technical issue",
)


@dataclass(frozen=True)
class PatientState:
    """
    Snapshot of one patient row as the reminder core sees it.
    Immutable: transitions are expressed as field maps and written through the store.
    """

    id: int
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    role: str = "patient"
    active: bool = False
    verified: bool = False
    is_active: bool = True  # soft-delete flag
    created_at: Optional[datetime] = None

    last_dose_time: Optional[datetime] = None
    has_logged_first_dose: bool = False
    sms_reminder_cycle: Cycle = Cycle.NEW_USER
    reminder_attempts: int = 0
    last_reminder_sent: Optional[datetime] = None
    next_reminder_time: Optional[datetime] = None
    welcome_sms_sent_at: Optional[datetime] = None
    admin_notified_date: Optional[datetime] = None
    last_activation_date: Optional[datetime] = None
    previous_active_state: Optional[bool] = None

    subscription_expiry: Optional[datetime] = None
    subscription_type: Optional[SubscriptionType] = None
    deactivated_at: Optional[datetime] = None
    deactivation_reason: Optional[str] = None

    @property
    def cycle(self) -> Cycle:
        return Cycle(self.sms_reminder_cycle)

    @property
    def is_candidate(self) -> bool:
        """Base gate for every scan: a live, verified, non-deleted patient account."""
        return (
            self.role == "patient" and self.active and self.verified and self.is_active
        )

    def with_fields(self, updates: Dict[str, Any]) -> "PatientState":
        return replace(self, **updates)

    @classmethod
    def field_names(cls) -> frozenset[str]:
        return frozenset(f.name for f in fields(cls))


@dataclass(frozen=True)
class DoseRecord:
    patient_id: int
    type: DoseType
    timestamp: datetime
    notes: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class PatientFilter:
    """
    Scan filter on top of the base gate (role=patient, active, verified, not soft-deleted).
    None means "don't care". The SQL store translates it to WHERE clauses;
    `matches()` is the reference semantics.
    """

    cycle: Optional[Cycle] = None
    reminder_attempts: Optional[int] = None
    admin_notified: Optional[bool] = None
    has_logged_first_dose: Optional[bool] = None
    previous_active_state: Optional[bool] = None
    activated_since: Optional[datetime] = None
    has_subscription: Optional[bool] = None
    exclude_manual_deactivation: bool = False

    def matches(self, p: PatientState) -> bool:
        if not p.is_candidate:
            return False
        if self.cycle is not None and p.cycle != self.cycle:
            return False
        if self.reminder_attempts is not None and p.reminder_attempts != self.reminder_attempts:
            return False
        if self.admin_notified is not None and (
            (p.admin_notified_date is not None) != self.admin_notified
        ):
            return False
        if (
            self.has_logged_first_dose is not None
            and p.has_logged_first_dose != self.has_logged_first_dose
        ):
            return False
        if (
            self.previous_active_state is not None
            and p.previous_active_state is not self.previous_active_state
        ):
            return False
        if self.activated_since is not None and (
            p.last_activation_date is None or p.last_activation_date < self.activated_since
        ):
            return False
        if self.has_subscription is not None and (
            (p.subscription_expiry is not None) != self.has_subscription
        ):
            return False
        if self.exclude_manual_deactivation and (p.deactivation_reason or "").startswith(
            MANUAL_DEACTIVATION_PREFIX
        ):
            return False
        return True


class Clock:
    """Injectable, testable UTC clock."""

    def now(self) -> datetime:
        return datetime.now(UTC)


@dataclass(frozen=True)
class SendResult:
    """Outcome of a single outbound notification; never an exception."""

    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (the store keeps naive UTC) and normalise aware ones."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)
