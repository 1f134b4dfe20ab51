# insulinlog/db/store.py
"""
Patient record store on SQLAlchemy Core (async engine).

Every write is a single UPDATE scoped to one patient row, optionally guarded by the
values the caller read (compare-and-set), so a transition is applied whole or not at all.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import and_, desc, func, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from insulinlog.core.logging_utils import kv
from insulinlog.core.patient_state import (
    MANUAL_DEACTIVATION_PREFIX,
    UTC,
    Cycle,
    DoseRecord,
    DoseType,
    PatientFilter,
    PatientState,
    SubscriptionType,
    as_utc,
)
from insulinlog.db.models import doses, patients
from insulinlog.errors import StoreError

logger = logging.getLogger(__name__)

_DATETIME_COLUMNS = frozenset(
    c.name for c in patients.columns if c.type.python_type is datetime
)


def _to_db(value: Any) -> Any:
    """Enums -> their value; aware datetimes -> naive UTC (column convention)."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(UTC).replace(tzinfo=None)
    return value


def _row_to_patient(row: Mapping[str, Any]) -> PatientState:
    data = dict(row)
    for name in _DATETIME_COLUMNS:
        data[name] = as_utc(data.get(name))
    data["sms_reminder_cycle"] = Cycle(data.get("sms_reminder_cycle") or Cycle.NEW_USER.value)
    sub = data.get("subscription_type")
    data["subscription_type"] = SubscriptionType(sub) if sub else None
    data["reminder_attempts"] = int(data.get("reminder_attempts") or 0)
    for flag in ("active", "verified", "is_active", "has_logged_first_dose"):
        data[flag] = bool(data.get(flag))
    if data.get("previous_active_state") is not None:
        data["previous_active_state"] = bool(data["previous_active_state"])
    allowed = PatientState.field_names()
    return PatientState(**{k: v for k, v in data.items() if k in allowed})


def _where(flt: PatientFilter) -> list:
    c = patients.c
    clauses = [
        c.role == "patient",
        c.active.is_(True),
        c.verified.is_(True),
        c.is_active.is_not(False),
    ]
    if flt.cycle is not None:
        clauses.append(c.sms_reminder_cycle == flt.cycle.value)
    if flt.reminder_attempts is not None:
        clauses.append(c.reminder_attempts == flt.reminder_attempts)
    if flt.admin_notified is True:
        clauses.append(c.admin_notified_date.is_not(None))
    elif flt.admin_notified is False:
        clauses.append(c.admin_notified_date.is_(None))
    if flt.has_logged_first_dose is not None:
        clauses.append(c.has_logged_first_dose.is_(flt.has_logged_first_dose))
    if flt.previous_active_state is not None:
        clauses.append(c.previous_active_state.is_(flt.previous_active_state))
    if flt.activated_since is not None:
        clauses.append(c.last_activation_date >= _to_db(flt.activated_since))
    if flt.has_subscription is True:
        clauses.append(c.subscription_expiry.is_not(None))
    elif flt.has_subscription is False:
        clauses.append(c.subscription_expiry.is_(None))
    if flt.exclude_manual_deactivation:
        clauses.append(
            func.coalesce(c.deactivation_reason, "").not_like(f"{MANUAL_DEACTIVATION_PREFIX}%")
        )
    return clauses


class SqlPatientStore:
    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    # ---- patients -----------------------------------------------------------------
    async def scan(self, flt: PatientFilter) -> List[PatientState]:
        stmt = select(patients).where(and_(*_where(flt)))
        try:
            async with self._engine.connect() as conn:
                rows = (await conn.execute(stmt)).mappings().all()
        except SQLAlchemyError as e:
            raise StoreError(f"patient scan failed: {e}") from e
        return [_row_to_patient(r) for r in rows]

    async def get(self, patient_id: int) -> Optional[PatientState]:
        stmt = select(patients).where(patients.c.id == patient_id).limit(1)
        try:
            async with self._engine.connect() as conn:
                row = (await conn.execute(stmt)).mappings().first()
        except SQLAlchemyError as e:
            raise StoreError(f"patient lookup failed: {e}") from e
        return _row_to_patient(row) if row else None

    async def update_fields(
        self,
        patient_id: int,
        fields: Dict[str, Any],
        expect: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Atomic partial update. With `expect`, the row is only touched while those
        columns still hold the given values. Returns True if the row was updated.
        """
        if not fields:
            return True
        conds = [patients.c.id == patient_id]
        for name, value in (expect or {}).items():
            col = patients.c[name]
            conds.append(col.is_(None) if value is None else col == _to_db(value))
        stmt = (
            update(patients)
            .where(and_(*conds))
            .values({k: _to_db(v) for k, v in fields.items()})
        )
        try:
            async with self._engine.begin() as conn:
                res = await conn.execute(stmt)
        except SQLAlchemyError as e:
            raise StoreError(f"patient update failed: {e}") from e
        changed = res.rowcount > 0
        logger.debug(
            "db.patient.update " + kv(patient_id=patient_id, fields=sorted(fields), changed=changed)
        )
        return changed

    # ---- doses --------------------------------------------------------------------
    async def has_dose_since(self, patient_id: int, since: datetime) -> bool:
        stmt = (
            select(doses.c.id)
            .where(and_(doses.c.patient_id == patient_id, doses.c.timestamp >= _to_db(since)))
            .limit(1)
        )
        try:
            async with self._engine.connect() as conn:
                row = (await conn.execute(stmt)).first()
        except SQLAlchemyError as e:
            raise StoreError(f"dose lookup failed: {e}") from e
        return row is not None

    async def latest_dose_time(
        self, patient_id: int, dose_type: Optional[DoseType] = None
    ) -> Optional[datetime]:
        conds = [doses.c.patient_id == patient_id]
        if dose_type is not None:
            conds.append(doses.c.type == dose_type.value)
        stmt = select(func.max(doses.c.timestamp)).where(and_(*conds))
        try:
            async with self._engine.connect() as conn:
                value = (await conn.execute(stmt)).scalar()
        except SQLAlchemyError as e:
            raise StoreError(f"dose lookup failed: {e}") from e
        return as_utc(value)

    async def last_doses(self, patient_id: int, limit: int = 5) -> List[DoseRecord]:
        stmt = (
            select(doses.c.id, doses.c.type, doses.c.timestamp, doses.c.notes)
            .where(doses.c.patient_id == patient_id)
            .order_by(desc(doses.c.timestamp))
            .limit(limit)
        )
        try:
            async with self._engine.connect() as conn:
                rows = (await conn.execute(stmt)).all()
        except SQLAlchemyError as e:
            raise StoreError(f"dose lookup failed: {e}") from e
        return [
            DoseRecord(
                id=r.id,
                patient_id=patient_id,
                type=DoseType(r.type),
                timestamp=as_utc(r.timestamp),
                notes=r.notes,
            )
            for r in rows
        ]

    async def insert_dose(self, dose: DoseRecord) -> int:
        stmt = insert(doses).values(
            patient_id=dose.patient_id,
            type=dose.type.value,
            timestamp=_to_db(dose.timestamp),
            notes=dose.notes,
            created_at=_to_db(datetime.now(UTC)),
        )
        try:
            async with self._engine.begin() as conn:
                res = await conn.execute(stmt)
        except SQLAlchemyError as e:
            raise StoreError(f"dose insert failed: {e}") from e
        logger.debug(
            "db.dose.insert "
            + kv(patient_id=dose.patient_id, type=dose.type.value, ts=dose.timestamp.isoformat())
        )
        return int(res.inserted_primary_key[0])
