# insulinlog/core/reminder_engine.py
"""
Periodic reminder driver.

Policy per tick:
  1) Scan four candidate sets (reactivations, new users, active users, inactive users
     awaiting the admin alert). A patient found by several scans is processed once.
  2) Each patient is an independent unit: re-read, decide, notify, persist.
     Units run concurrently, bounded by MAX_CONCURRENT_PATIENTS. Reads and the
     decision share one PATIENT_TIMEOUT_S deadline, each send has its own, and the
     write after a delivered send runs without one. A timed-out send is a failed send.
  3) A failed send leaves the patient untouched, so the same transition is retried
     on the next tick. A failed write after a successful send is logged at ERROR
     (possible duplicate on retry) and not corrected.
  4) Scan failures abort the tick; per-patient failures never do.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Dict, List, Optional, Tuple

from insulinlog.core.csvlog import csv_append
from insulinlog.core.logging_utils import kv
from insulinlog.core.patient_state import (
    Clock,
    Cycle,
    PatientFilter,
    PatientState,
    SendResult,
)
from insulinlog.core.reminder_state import (
    MAX_ATTEMPTS,
    Decision,
    NoAction,
    NotifyAdmin,
    ResetForNewCycle,
    collect_marks,
    decide,
    dose_reset_fields,
    guard_of,
    is_reactivation_edge,
    transition_fields,
)

# Outcome labels returned by process_patient()
SENT = "sent"
SEND_FAILED = "send_failed"
NO_PHONE = "no_phone"
NOOP = "noop"
ADMIN_NOTIFIED = "admin_notified"
REACTIVATED = "reactivated"
RECONCILED = "reconciled"
PERSIST_FAILED = "persist_failed"
CONFLICT = "conflict"
GONE = "gone"


@dataclass
class TickReport:
    started_at: datetime
    skipped: bool = False
    scanned: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)
    errors: int = 0
    timeouts: int = 0

    def record(self, outcome: str) -> None:
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1

    def count(self, outcome: str) -> int:
        return self.outcomes.get(outcome, 0)


class ReminderScheduler:
    """
    Owns the reminder tick. `store` is the patient record store, `notifier` the
    message layer (see core.notifier.Notifier). Time is injected: tick(now=...).
    """

    def __init__(self, store: Any, notifier: Any, cfg: Any, clock: Optional[Clock] = None):
        self.store = store
        self.notifier = notifier
        self.cfg = cfg
        self.clock = clock or Clock()
        self.log = logging.getLogger("insulinlog.reminders")

        self.window = timedelta(hours=float(getattr(cfg, "REACTIVATION_WINDOW_H", 2)))
        self.patient_timeout_s = float(getattr(cfg, "PATIENT_TIMEOUT_S", 45))
        self.max_concurrency = max(1, int(getattr(cfg, "MAX_CONCURRENT_PATIENTS", 10)))
        self.reconcile = bool(getattr(cfg, "RECONCILE_DOSE_BASELINE", True))
        self.events_csv: Optional[str] = getattr(cfg, "EVENTS_CSV", None)

        self._lock = asyncio.Lock()

    # ---- scanning ---------------------------------------------------------------------
    def scan_filters(self, now: datetime) -> List[Tuple[str, PatientFilter]]:
        return [
            (
                "reactivation",
                PatientFilter(previous_active_state=False, activated_since=now - self.window),
            ),
            ("new_user", PatientFilter(cycle=Cycle.NEW_USER, has_logged_first_dose=False)),
            ("active_user", PatientFilter(cycle=Cycle.ACTIVE_USER, has_logged_first_dose=True)),
            (
                "inactive_user",
                PatientFilter(
                    cycle=Cycle.INACTIVE_USER,
                    reminder_attempts=MAX_ATTEMPTS,
                    admin_notified=False,
                ),
            ),
        ]

    async def collect_candidates(self, now: datetime) -> Dict[int, str]:
        """patient_id -> name of the first scan that found it. Store errors propagate."""
        found: Dict[int, str] = {}
        for name, flt in self.scan_filters(now):
            rows = await self.store.scan(flt)
            self.log.debug("tick.scan " + kv(set=name, count=len(rows)))
            for p in rows:
                found.setdefault(p.id, name)
        return found

    # ---- tick -------------------------------------------------------------------------
    async def tick(self, now: Optional[datetime] = None) -> TickReport:
        now = now or self.clock.now()
        if self._lock.locked():
            self.log.warning("tick.skip " + kv(reason="previous tick still running"))
            return TickReport(started_at=now, skipped=True)

        async with self._lock:
            report = TickReport(started_at=now)
            candidates = await self.collect_candidates(now)
            report.scanned = len(candidates)

            sem = asyncio.Semaphore(self.max_concurrency)

            async def _unit(pid: int) -> None:
                async with sem:
                    await self._run_unit(pid, now, report)

            await asyncio.gather(*(_unit(pid) for pid in candidates))

            self.log.info(
                "tick.done "
                + kv(
                    now=now.isoformat(),
                    scanned=report.scanned,
                    errors=report.errors,
                    timeouts=report.timeouts,
                    **report.outcomes,
                )
            )
            return report

    async def scheduled_tick(self) -> None:
        """APScheduler entrypoint: scheduler-level failures are logged, retried next interval."""
        try:
            await self.tick()
        except Exception as e:
            self.log.error("tick.failed " + kv(err=str(e)), exc_info=True)

    async def drain(self) -> None:
        """Wait for an in-flight tick to finish (used on shutdown)."""
        async with self._lock:
            pass

    async def _run_unit(self, pid: int, now: datetime, report: TickReport) -> None:
        try:
            report.record(await self.process_patient(pid, now))
        except asyncio.TimeoutError:
            # only the read/decide stage gets here; nothing was sent
            report.timeouts += 1
            self.log.warning(
                "reminder.timeout "
                + kv(patient_id=pid, stage="evaluate", timeout_s=self.patient_timeout_s)
            )
        except Exception as e:
            report.errors += 1
            self.log.error("reminder.error " + kv(patient_id=pid, err=str(e)), exc_info=True)

    # ---- one patient ------------------------------------------------------------------
    async def process_patient(self, patient_id: int, now: datetime) -> str:
        p, decision = await asyncio.wait_for(
            self._evaluate(patient_id, now), timeout=self.patient_timeout_s
        )

        if isinstance(decision, NoAction):
            if decision.reason in (GONE, RECONCILED):
                return decision.reason
            if decision.reason == "no_baseline":
                self.log.warning(
                    "reminder.skip " + kv(patient_id=p.id, reason="active_user without last_dose_time")
                )
            else:
                self.log.debug("reminder.noop " + kv(patient_id=p.id, reason=decision.reason))
            return NOOP
        if isinstance(decision, ResetForNewCycle):
            return await self._handle_reactivation(p, decision, now)
        if isinstance(decision, NotifyAdmin):
            return await self._handle_admin_alert(p, decision, now)
        return await self._handle_reminder(p, decision, now)

    async def _evaluate(
        self, patient_id: int, now: datetime
    ) -> Tuple[Optional[PatientState], Decision]:
        # Point re-read: decisions are made on live state, not on the scan snapshot
        p = await self.store.get(patient_id)
        if p is None or not p.is_candidate:
            return p, NoAction(GONE)

        if self.reconcile and not is_reactivation_edge(p, now, self.window):
            if await self._reconcile_baseline(p):
                return p, NoAction(RECONCILED)

        return p, await self.decide_live(p, now)

    async def decide_live(self, p: PatientState, now: datetime) -> Decision:
        """Resolve the dose oracle against the store, then run the pure decision."""
        seen: Dict[datetime, bool] = {}
        for mark in collect_marks(p, now, self.window):
            seen[mark] = await self.store.has_dose_since(p.id, mark)
        return decide(p, now, seen.__getitem__, reactivation_window=self.window)

    async def _reconcile_baseline(self, p: PatientState) -> bool:
        """
        The dose log is the source of truth. If it holds a dose newer than the cached
        last_dose_time (a lost dose-hook write), re-apply the dose baseline from it.
        """
        latest = await self.store.latest_dose_time(p.id)
        if latest is None:
            return False
        if p.last_dose_time is not None and latest <= p.last_dose_time:
            return False
        if (
            p.cycle == Cycle.NEW_USER
            and p.welcome_sms_sent_at is not None
            and latest < p.welcome_sms_sent_at
        ):
            return False

        changed = await self.store.update_fields(p.id, dose_reset_fields(latest), expect=guard_of(p))
        self.log.warning(
            "reminder.baseline.reconciled "
            + kv(
                patient_id=p.id,
                cached=p.last_dose_time.isoformat() if p.last_dose_time else None,
                latest=latest.isoformat(),
                changed=changed,
            )
        )
        return changed

    # ---- handlers ---------------------------------------------------------------------
    async def _handle_reminder(self, p: PatientState, decision: Decision, now: datetime) -> str:
        if not p.phone:
            self.log.info("reminder.skip " + kv(patient_id=p.id, tier=decision.tier, reason="no phone"))
            return NO_PHONE

        result = await self._deliver(p, decision.tier, self.notifier.send_reminder(p, decision))
        self._audit(p, decision.tier, result, now)
        if not result.success:
            self.log.warning(
                "reminder.send_failed " + kv(patient_id=p.id, tier=decision.tier, err=result.error)
            )
            return SEND_FAILED
        return await self._persist(p, decision, now, SENT)

    async def _handle_admin_alert(self, p: PatientState, decision: Decision, now: datetime) -> str:
        result = await self._deliver(p, decision.tier, self._send_admin_alert(p, now))
        self._audit(p, decision.tier, result, now)
        if not result.success:
            self.log.warning(
                "admin_alert.send_failed " + kv(patient_id=p.id, err=result.error)
            )
            return SEND_FAILED
        return await self._persist(p, decision, now, ADMIN_NOTIFIED)

    async def _handle_reactivation(
        self, p: PatientState, decision: ResetForNewCycle, now: datetime
    ) -> str:
        # Welcome-back SMS is best-effort; the reset is persisted either way
        if p.phone:
            result = await self._deliver(p, decision.tier, self.notifier.send_reactivation(p, now))
            self._audit(p, decision.tier, result, now)
            if not result.success:
                self.log.warning(
                    "reactivation.sms_failed " + kv(patient_id=p.id, err=result.error)
                )
        else:
            self.log.info("reactivation.sms_skip " + kv(patient_id=p.id, reason="no phone"))
        return await self._persist(
            p,
            decision,
            now,
            REACTIVATED,
            extra_guard={"welcome_sms_sent_at": p.welcome_sms_sent_at},
        )

    async def _send_admin_alert(self, p: PatientState, now: datetime) -> SendResult:
        last_doses = await self.store.last_doses(p.id, 5)
        last_reminders = [p.last_reminder_sent] if p.last_reminder_sent else []
        return await self.notifier.send_admin_alert(p, last_doses, last_reminders, now)

    async def _deliver(
        self, p: PatientState, tier: Optional[str], send: Awaitable[SendResult]
    ) -> SendResult:
        """Await one outbound send under PATIENT_TIMEOUT_S; a timeout is a failed send."""
        try:
            return await asyncio.wait_for(send, timeout=self.patient_timeout_s)
        except asyncio.TimeoutError:
            self.log.warning(
                "reminder.send_timeout "
                + kv(patient_id=p.id, tier=tier, timeout_s=self.patient_timeout_s)
            )
            return SendResult(success=False, error=f"timed out after {self.patient_timeout_s}s")

    async def _persist(
        self,
        p: PatientState,
        decision: Decision,
        now: datetime,
        outcome: str,
        extra_guard: Optional[Dict[str, Any]] = None,
    ) -> str:
        fields = transition_fields(decision, p, now)
        expect = {**guard_of(p), **(extra_guard or {})}
        try:
            changed = await self.store.update_fields(p.id, fields, expect=expect)
        except Exception as e:
            self.log.error(
                "reminder.persist_failed "
                + kv(patient_id=p.id, tier=decision.tier, err=str(e), note="duplicate send possible")
            )
            return PERSIST_FAILED
        if not changed:
            self.log.error(
                "reminder.persist_conflict "
                + kv(patient_id=p.id, tier=decision.tier, note="state changed after send")
            )
            return CONFLICT
        self.log.info(
            f"reminder.{outcome} "
            + kv(patient_id=p.id, tier=decision.tier, cycle=p.cycle.value, attempts=p.reminder_attempts)
        )
        return outcome

    def _audit(self, p: PatientState, tier: Optional[str], result: SendResult, now: datetime) -> None:
        if not self.events_csv:
            return
        try:
            csv_append(
                self.events_csv,
                now=now,
                patient_id=p.id,
                job="reminders",
                tier=tier,
                success=result.success,
                message_id=result.message_id,
                error=result.error,
                cycle=p.cycle.value,
                attempts=p.reminder_attempts,
            )
        except OSError as e:
            self.log.error("audit.csv_failed " + kv(path=self.events_csv, err=str(e)))
