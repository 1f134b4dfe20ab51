# insulinlog/core/reminder_state.py
"""
Reminder state machine: (cycle, attempts) + timestamps -> next transition.

Pure logic only. The caller supplies `has_dose_since(ts)` (was any dose logged at or
after ts?) so every transition can be exercised without a store.

Ladder (all comparisons are "at least", so a late tick fires late, never skips):

  new_user      a=0  welcome+6h            no dose since welcome      -> reminder 1
  new_user      a=1  welcome+24h           no dose since welcome+6h   -> reminder 2, inactive_user
  active_user   a=0  last_dose+23h30m      no dose since that mark    -> reminder 1
  active_user   a=1  last_dose+24h30m      no dose since that mark    -> reminder 2
  active_user   a=2  (last_dose+24h30m)+24h no dose since that mark   -> final, inactive_user a=3
  inactive_user a=3  admin not yet notified                            -> admin alert, admin_notified
  any cycle          recent false->true activation edge               -> reset to new_user
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from insulinlog.core.patient_state import Cycle, PatientState

NEW_USER_FIRST_AFTER = timedelta(hours=6)
NEW_USER_SECOND_AFTER = timedelta(hours=24)
ACTIVE_FIRST_AFTER = timedelta(hours=23, minutes=30)
ACTIVE_SECOND_AFTER = timedelta(hours=24, minutes=30)
FINAL_AFTER_SECOND = timedelta(hours=24)
DEFAULT_REACTIVATION_WINDOW = timedelta(hours=2)

MAX_ATTEMPTS = 3

DoseOracle = Callable[[datetime], bool]


# -------------------------------------------------------------------------------------------------
# Decisions
# -------------------------------------------------------------------------------------------------
@dataclass(frozen=True)
class NoAction:
    reason: str = ""

    @property
    def tier(self) -> Optional[str]:
        return None


@dataclass(frozen=True)
class SendNewUserReminder:
    attempt: int

    @property
    def tier(self) -> str:
        return f"new_user_{self.attempt}"


@dataclass(frozen=True)
class SendActiveReminder:
    attempt: int

    @property
    def tier(self) -> str:
        return f"active_{self.attempt}"


@dataclass(frozen=True)
class SendFinalReminder:
    @property
    def tier(self) -> str:
        return "active_final"


@dataclass(frozen=True)
class NotifyAdmin:
    @property
    def tier(self) -> str:
        return "admin_alert"


@dataclass(frozen=True)
class ResetForNewCycle:
    cause: str = "reactivation"  # 'reactivation' | 'dose'

    @property
    def tier(self) -> str:
        return f"reset_{self.cause}"


Decision = Union[
    NoAction,
    SendNewUserReminder,
    SendActiveReminder,
    SendFinalReminder,
    NotifyAdmin,
    ResetForNewCycle,
]

SMS_DECISIONS = (SendNewUserReminder, SendActiveReminder, SendFinalReminder)


# -------------------------------------------------------------------------------------------------
# Threshold helpers
# -------------------------------------------------------------------------------------------------
def first_reminder_time(last_dose_time: datetime) -> datetime:
    return last_dose_time + ACTIVE_FIRST_AFTER


def second_reminder_time(last_dose_time: datetime) -> datetime:
    return last_dose_time + ACTIVE_SECOND_AFTER


def final_reminder_time(last_dose_time: datetime) -> datetime:
    return second_reminder_time(last_dose_time) + FINAL_AFTER_SECOND


def is_reactivation_edge(
    p: PatientState,
    now: datetime,
    window: timedelta = DEFAULT_REACTIVATION_WINDOW,
) -> bool:
    """
    A recent false->true activation that has not been handled yet.
    Handling stamps welcome_sms_sent_at=now, which closes the edge for later ticks.
    """
    if not p.active or p.previous_active_state is not False:
        return False
    activated = p.last_activation_date
    if activated is None or activated < now - window:
        return False
    if p.created_at is not None and activated <= p.created_at:
        return False
    return p.welcome_sms_sent_at is None or activated > p.welcome_sms_sent_at


def _eligible(
    p: PatientState, now: datetime, window: timedelta
) -> Tuple[Decision, Optional[datetime]]:
    """Return (decision if no dose since mark, mark) for the single branch `p` is eligible for."""
    if is_reactivation_edge(p, now, window):
        return ResetForNewCycle("reactivation"), None

    attempts = p.reminder_attempts
    cycle = p.cycle

    if cycle == Cycle.NEW_USER:
        anchor = p.welcome_sms_sent_at
        if anchor is None:
            return NoAction("no_welcome_anchor"), None
        if attempts == 0:
            if now >= anchor + NEW_USER_FIRST_AFTER:
                return SendNewUserReminder(1), anchor
            return NoAction("not_due"), None
        if attempts == 1:
            if now >= anchor + NEW_USER_SECOND_AFTER:
                return SendNewUserReminder(2), anchor + NEW_USER_FIRST_AFTER
            return NoAction("not_due"), None
        return NoAction("ladder_exhausted"), None

    if cycle == Cycle.ACTIVE_USER:
        last = p.last_dose_time
        if last is None:
            return NoAction("no_baseline"), None
        if attempts == 0:
            mark = first_reminder_time(last)
            if now >= mark:
                return SendActiveReminder(1), mark
        elif attempts == 1:
            mark = second_reminder_time(last)
            if now >= mark:
                return SendActiveReminder(2), mark
        elif attempts == 2:
            mark = final_reminder_time(last)
            if now >= mark:
                return SendFinalReminder(), mark
        else:
            return NoAction("ladder_exhausted"), None
        return NoAction("not_due"), None

    if cycle == Cycle.INACTIVE_USER:
        if p.admin_notified_date is not None:
            return NoAction("already_notified"), None
        if attempts == MAX_ATTEMPTS:
            return NotifyAdmin(), None
        # new-user ladder ends here with attempts=2; it never escalates to admins
        return NoAction("awaiting_dose"), None

    return NoAction("already_notified"), None


# -------------------------------------------------------------------------------------------------
# Public API
# -------------------------------------------------------------------------------------------------
def collect_marks(
    p: PatientState,
    now: datetime,
    window: timedelta = DEFAULT_REACTIVATION_WINDOW,
) -> List[datetime]:
    """Timestamps `decide()` will ask the oracle about (zero or one)."""
    _, mark = _eligible(p, now, window)
    return [mark] if mark is not None else []


def decide(
    p: PatientState,
    now: datetime,
    has_dose_since: DoseOracle,
    *,
    reactivation_window: timedelta = DEFAULT_REACTIVATION_WINDOW,
) -> Decision:
    """
    Decide the one transition (if any) that fires for `p` at `now`.
    The oracle is consulted with the threshold time itself, never the last tick time,
    so a dose logged between two polls still cancels the reminder.
    """
    candidate, mark = _eligible(p, now, reactivation_window)
    if mark is not None and has_dose_since(mark):
        return NoAction("dose_logged")
    return candidate


def dose_reset_fields(dose_time: datetime) -> Dict[str, Any]:
    """Baseline written on every logged dose."""
    return {
        "last_dose_time": dose_time,
        "next_reminder_time": first_reminder_time(dose_time),
        "reminder_attempts": 0,
        "last_reminder_sent": None,
        "has_logged_first_dose": True,
        "sms_reminder_cycle": Cycle.ACTIVE_USER,
    }


def reactivation_reset_fields(now: datetime) -> Dict[str, Any]:
    return {
        "sms_reminder_cycle": Cycle.NEW_USER,
        "has_logged_first_dose": False,
        "reminder_attempts": 0,
        "last_reminder_sent": None,
        "next_reminder_time": None,
        "welcome_sms_sent_at": now,
        "admin_notified_date": None,
    }


def transition_fields(decision: Decision, p: PatientState, now: datetime) -> Dict[str, Any]:
    """Field map persisted after `decision` was carried out successfully."""
    if isinstance(decision, SendNewUserReminder):
        out: Dict[str, Any] = {
            "reminder_attempts": decision.attempt,
            "last_reminder_sent": now,
        }
        if decision.attempt >= 2:
            out["sms_reminder_cycle"] = Cycle.INACTIVE_USER
        return out
    if isinstance(decision, SendActiveReminder):
        return {"reminder_attempts": decision.attempt, "last_reminder_sent": now}
    if isinstance(decision, SendFinalReminder):
        return {
            "reminder_attempts": MAX_ATTEMPTS,
            "last_reminder_sent": now,
            "sms_reminder_cycle": Cycle.INACTIVE_USER,
        }
    if isinstance(decision, NotifyAdmin):
        return {"sms_reminder_cycle": Cycle.ADMIN_NOTIFIED, "admin_notified_date": now}
    if isinstance(decision, ResetForNewCycle):
        if decision.cause == "dose":
            base = p.last_dose_time or now
            return dose_reset_fields(base)
        return reactivation_reset_fields(now)
    return {}


def apply_decision(p: PatientState, decision: Decision, now: datetime) -> PatientState:
    """In-memory application of a decision; used by dry runs and tests."""
    return p.with_fields(transition_fields(decision, p, now))


def guard_of(p: PatientState) -> Dict[str, Any]:
    """Fields a conditional write must still find unchanged (compare-and-set)."""
    return {
        "sms_reminder_cycle": p.cycle,
        "reminder_attempts": p.reminder_attempts,
        "last_dose_time": p.last_dose_time,
    }


__all__ = [
    "Decision",
    "NoAction",
    "SendNewUserReminder",
    "SendActiveReminder",
    "SendFinalReminder",
    "NotifyAdmin",
    "ResetForNewCycle",
    "SMS_DECISIONS",
    "decide",
    "collect_marks",
    "is_reactivation_edge",
    "dose_reset_fields",
    "reactivation_reset_fields",
    "transition_fields",
    "apply_decision",
    "guard_of",
    "first_reminder_time",
    "second_reminder_time",
    "final_reminder_time",
]
