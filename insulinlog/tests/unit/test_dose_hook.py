# insulinlog/tests/unit/test_dose_hook.py
from datetime import timedelta

import pytest

from insulinlog.core.dose_hook import DoseEventHook, renewed_expiry
from insulinlog.core.patient_state import Cycle, DoseType, SubscriptionType
from insulinlog.errors import ActivationError, DoseRestrictionError
from insulinlog.tests.fakes import T0, FakeStore, active_patient, make_patient


@pytest.mark.asyncio
async def test_on_dose_logged_resets_baseline():
    store = FakeStore(
        active_patient(
            sms_reminder_cycle=Cycle.INACTIVE_USER,
            reminder_attempts=3,
            last_reminder_sent=T0 + timedelta(hours=48),
        )
    )
    dose_at = T0 + timedelta(hours=50)
    assert await DoseEventHook(store).on_dose_logged(1, dose_at) is True

    p = store.patients[1]
    assert p.cycle == Cycle.ACTIVE_USER
    assert p.reminder_attempts == 0
    assert p.last_dose_time == dose_at
    assert p.last_reminder_sent is None
    assert p.has_logged_first_dose is True
    assert p.next_reminder_time == dose_at + timedelta(hours=23, minutes=30)


@pytest.mark.asyncio
async def test_on_dose_logged_never_raises(caplog):
    store = FakeStore(make_patient())
    store.fail_update = True
    assert await DoseEventHook(store).on_dose_logged(1, T0) is False
    assert any(r.levelname == "ERROR" and "dose.hook_failed" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_on_dose_logged_unknown_patient():
    assert await DoseEventHook(FakeStore()).on_dose_logged(99, T0) is False


@pytest.mark.asyncio
async def test_record_dose_persists_and_resets():
    store = FakeStore(make_patient(welcome_sms_sent_at=T0))
    dose = await DoseEventHook(store).record_dose(1, DoseType.BOLUS, T0 + timedelta(hours=2), "after lunch")

    assert dose.id == 1
    assert store.doses[0].notes == "after lunch"
    assert store.patients[1].cycle == Cycle.ACTIVE_USER
    assert store.patients[1].last_dose_time == T0 + timedelta(hours=2)


@pytest.mark.asyncio
async def test_dose_within_twenty_hours_of_basal_is_refused():
    store = FakeStore(active_patient())
    store.add_dose(1, T0, DoseType.BASAL)
    hook = DoseEventHook(store)

    with pytest.raises(DoseRestrictionError) as exc:
        await hook.record_dose(1, DoseType.BASAL, T0 + timedelta(hours=19, minutes=59))
    assert exc.value.can_log_next_at == T0 + timedelta(hours=20)

    with pytest.raises(DoseRestrictionError):
        await hook.record_dose(1, DoseType.BOLUS, T0 + timedelta(hours=3))

    dose = await hook.record_dose(1, DoseType.BASAL, T0 + timedelta(hours=20))
    assert dose.timestamp == T0 + timedelta(hours=20)
    assert len(store.doses) == 2


def test_renewed_expiry():
    assert renewed_expiry(None, SubscriptionType.MONTHLY, T0) is None
    # expired: renew from now
    assert renewed_expiry(T0 - timedelta(days=3), SubscriptionType.MONTHLY, T0) == T0 + timedelta(days=30)
    # still running: extend from current expiry
    assert renewed_expiry(T0 + timedelta(days=5), SubscriptionType.YEARLY, T0) == T0 + timedelta(days=370)
    assert renewed_expiry(T0, None, T0) == T0 + timedelta(days=30)


@pytest.mark.asyncio
async def test_set_active_records_reactivation_edge_and_renews():
    store = FakeStore(
        make_patient(
            active=False,
            previous_active_state=True,
            deactivated_at=T0 - timedelta(days=4),
            deactivation_reason="Subscription expired",
            subscription_expiry=T0 - timedelta(days=4),
            subscription_type=SubscriptionType.MONTHLY,
        )
    )
    p = await DoseEventHook(store).set_active(1, True, now=T0)

    stored = store.patients[1]
    assert p == stored
    assert stored.active is True
    assert stored.previous_active_state is False
    assert stored.last_activation_date == T0
    assert stored.subscription_expiry == T0 + timedelta(days=30)
    assert stored.deactivation_reason is None


@pytest.mark.asyncio
async def test_set_active_deactivation_requires_manual_reason():
    store = FakeStore(make_patient())
    hook = DoseEventHook(store)

    with pytest.raises(ActivationError):
        await hook.set_active(1, False, now=T0)
    with pytest.raises(ActivationError):
        await hook.set_active(1, False, now=T0, reason="Subscription expired")

    await hook.set_active(1, False, now=T0, reason="Manual deactivation - User request")
    p = store.patients[1]
    assert p.active is False
    assert p.deactivated_at == T0
    assert p.deactivation_reason == "Manual deactivation - User request"


@pytest.mark.asyncio
async def test_set_active_is_noop_when_unchanged():
    store = FakeStore(make_patient())
    await DoseEventHook(store).set_active(1, True, now=T0)
    assert store.updates == []


@pytest.mark.asyncio
async def test_set_active_unknown_patient():
    with pytest.raises(ActivationError):
        await DoseEventHook(FakeStore()).set_active(7, True, now=T0)


@pytest.mark.asyncio
async def test_on_verified_sends_welcome_and_anchors_new_user_ladder(notifier, sms):
    store = FakeStore(make_patient(verified=False, active=False))
    p = await DoseEventHook(store, notifier=notifier).on_verified(1, now=T0)

    stored = store.patients[1]
    assert p == stored
    assert stored.verified is True
    assert stored.active is True
    assert stored.welcome_sms_sent_at == T0
    assert stored.last_activation_date == T0
    assert stored.cycle == Cycle.NEW_USER
    assert len(sms.sent) == 1
    assert "Welcome to InsulinLog, Ama Mensah" in sms.sent[0][1]


@pytest.mark.asyncio
async def test_on_verified_twice_sends_one_welcome(notifier, sms):
    store = FakeStore(make_patient(verified=False, active=False))
    hook = DoseEventHook(store, notifier=notifier)

    await hook.on_verified(1, now=T0)
    await hook.on_verified(1, now=T0 + timedelta(minutes=5))

    assert len(sms.sent) == 1
    assert len(store.updates) == 1
    assert store.patients[1].welcome_sms_sent_at == T0


@pytest.mark.asyncio
async def test_on_verified_anchors_even_when_welcome_sms_fails(notifier, sms, caplog):
    sms.fail = True
    store = FakeStore(make_patient(verified=False, active=False))
    await DoseEventHook(store, notifier=notifier).on_verified(1, now=T0)

    assert store.patients[1].welcome_sms_sent_at == T0
    assert any("welcome.sms_failed" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_on_verified_unknown_patient(notifier):
    with pytest.raises(ActivationError):
        await DoseEventHook(FakeStore(), notifier=notifier).on_verified(5, now=T0)
