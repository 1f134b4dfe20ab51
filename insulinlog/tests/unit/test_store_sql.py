# insulinlog/tests/unit/test_store_sql.py
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import create_async_engine

from insulinlog.core.patient_state import (
    Cycle,
    DoseRecord,
    DoseType,
    PatientFilter,
    SubscriptionType,
)
from insulinlog.core.reminder_engine import ReminderScheduler
from insulinlog.core.reminder_state import guard_of
from insulinlog.db.models import doses, metadata, patients
from insulinlog.db.store import SqlPatientStore, _to_db
from insulinlog.errors import StoreError
from insulinlog.tests.fakes import T0, active_patient, make_cfg, make_patient


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(metadata.create_all)
    yield eng
    await eng.dispose()


async def seed(engine, *rows):
    async with engine.begin() as conn:
        for p in rows:
            await conn.execute(
                insert(patients).values({c.name: _to_db(getattr(p, c.name)) for c in patients.columns})
            )
    return SqlPatientStore(engine)


@pytest.mark.asyncio
async def test_get_reads_back_what_was_stored(engine):
    p = active_patient(
        reminder_attempts=2,
        last_reminder_sent=T0 + timedelta(hours=24, minutes=30),
        subscription_expiry=T0 + timedelta(days=20),
        subscription_type=SubscriptionType.YEARLY,
        previous_active_state=True,
    )
    store = await seed(engine, p)

    assert await store.get(1) == p
    assert await store.get(99) is None


@pytest.mark.asyncio
async def test_update_is_refused_when_guard_is_stale(engine):
    p = active_patient()
    store = await seed(engine, p)
    now = T0 + timedelta(hours=23, minutes=31)

    assert await store.update_fields(
        1, {"reminder_attempts": 1, "last_reminder_sent": now}, expect=guard_of(p)
    )
    # the guard still carries attempts=0
    assert not await store.update_fields(1, {"reminder_attempts": 2}, expect=guard_of(p))

    stored = await store.get(1)
    assert stored.reminder_attempts == 1
    assert stored.last_reminder_sent == now


@pytest.mark.asyncio
async def test_none_guard_matches_null_column(engine):
    store = await seed(engine, make_patient(admin_notified_date=None, welcome_sms_sent_at=T0))

    assert await store.update_fields(
        1, {"sms_reminder_cycle": Cycle.ADMIN_NOTIFIED}, expect={"admin_notified_date": None}
    )
    assert not await store.update_fields(
        1, {"welcome_sms_sent_at": T0 + timedelta(days=1)}, expect={"welcome_sms_sent_at": None}
    )

    stored = await store.get(1)
    assert stored.cycle == Cycle.ADMIN_NOTIFIED
    assert stored.welcome_sms_sent_at == T0


@pytest.mark.asyncio
async def test_enum_and_aware_datetime_are_stored_as_plain_values(engine):
    store = await seed(engine, make_patient())
    await store.update_fields(
        1,
        {"sms_reminder_cycle": Cycle.ACTIVE_USER, "last_dose_time": T0 + timedelta(hours=2)},
    )

    async with engine.connect() as conn:
        row = (await conn.execute(select(patients).where(patients.c.id == 1))).mappings().one()
    assert row["sms_reminder_cycle"] == "active_user"
    assert row["last_dose_time"].tzinfo is None
    assert row["last_dose_time"] == (T0 + timedelta(hours=2)).replace(tzinfo=None)


@pytest.mark.asyncio
async def test_scan_filters_agree_with_reference_semantics(engine):
    now = T0 + timedelta(days=10)
    seeded = [
        make_patient(id=1, welcome_sms_sent_at=T0),
        active_patient(id=2),
        active_patient(id=3, sms_reminder_cycle=Cycle.INACTIVE_USER, reminder_attempts=3),
        active_patient(
            id=4, sms_reminder_cycle=Cycle.INACTIVE_USER, reminder_attempts=3, admin_notified_date=T0
        ),
        make_patient(id=5, previous_active_state=False, last_activation_date=now - timedelta(minutes=30)),
        make_patient(id=6, previous_active_state=False, last_activation_date=now - timedelta(hours=3)),
        make_patient(id=7, previous_active_state=True, last_activation_date=now),
        active_patient(id=8, active=False),
        active_patient(id=9, is_active=False),
        active_patient(id=10, role="admin"),
        make_patient(
            id=11,
            subscription_expiry=now + timedelta(days=7),
            deactivation_reason="Manual deactivation - Cost",
        ),
        make_patient(
            id=12,
            subscription_expiry=now + timedelta(days=7),
            deactivation_reason="Subscription expired",
        ),
        make_patient(id=13, subscription_expiry=now - timedelta(days=1)),
    ]
    seeded = [p.with_fields({"email": f"p{p.id}@example.com"}) for p in seeded]
    store = await seed(engine, *seeded)

    filters = [flt for _, flt in ReminderScheduler(store, None, make_cfg()).scan_filters(now)]
    filters += [
        PatientFilter(has_subscription=True, exclude_manual_deactivation=True),
        PatientFilter(has_subscription=False),
        PatientFilter(),
    ]
    for flt in filters:
        expected = {p.id for p in seeded if flt.matches(p)}
        found = {p.id for p in await store.scan(flt)}
        assert found == expected, flt

    reactivation = filters[0]
    assert {p.id for p in await store.scan(reactivation)} == {5}


@pytest.mark.asyncio
async def test_dose_queries(engine):
    store = await seed(engine, make_patient())
    first = await store.insert_dose(DoseRecord(patient_id=1, type=DoseType.BASAL, timestamp=T0))
    second = await store.insert_dose(
        DoseRecord(patient_id=1, type=DoseType.BOLUS, timestamp=T0 + timedelta(hours=5), notes="lunch")
    )
    assert second == first + 1

    assert await store.has_dose_since(1, T0 + timedelta(hours=5))
    assert not await store.has_dose_since(1, T0 + timedelta(hours=5, seconds=1))
    assert await store.latest_dose_time(1) == T0 + timedelta(hours=5)
    assert await store.latest_dose_time(1, DoseType.BASAL) == T0
    assert await store.latest_dose_time(2) is None

    last = await store.last_doses(1, 5)
    assert [d.type for d in last] == [DoseType.BOLUS, DoseType.BASAL]
    assert last[0].notes == "lunch"
    assert last[0].timestamp == T0 + timedelta(hours=5)

    async with engine.connect() as conn:
        created = (await conn.execute(select(doses.c.created_at))).scalars().all()
    assert all(c is not None for c in created)


@pytest.mark.asyncio
async def test_sql_errors_are_wrapped(tmp_path):
    bare = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    store = SqlPatientStore(bare)
    try:
        with pytest.raises(StoreError):
            await store.scan(PatientFilter())
        with pytest.raises(StoreError):
            await store.update_fields(1, {"reminder_attempts": 1})
    finally:
        await bare.dispose()
