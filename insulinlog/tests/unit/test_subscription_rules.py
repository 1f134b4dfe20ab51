# insulinlog/tests/unit/test_subscription_rules.py
import asyncio
from datetime import timedelta

import pytest

from insulinlog.core.notifier import Notifier
from insulinlog.core.patient_state import SUBSCRIPTION_EXPIRED, SubscriptionType
from insulinlog.core.subscription import SubscriptionScheduler, days_until_expiry
from insulinlog.errors import SubscriptionCheckError
from insulinlog.tests.fakes import T0, FakeEmail, FakeStore, make_patient


@pytest.mark.parametrize(
    "delta, expected",
    [
        (timedelta(days=7), 7),
        (timedelta(days=6, seconds=1), 7),
        (timedelta(days=6), 6),
        (timedelta(days=7, seconds=1), 8),
        (timedelta(hours=3), 1),
        (timedelta(0), 0),
        (-timedelta(hours=5), 0),
        (-timedelta(days=2), -2),
    ],
)
def test_days_until_expiry_rounds_up(delta, expected):
    assert days_until_expiry(T0 + delta, T0) == expected


def subscriber(pid, expiry_in, **kw):
    return make_patient(
        id=pid,
        subscription_expiry=T0 + expiry_in,
        subscription_type=SubscriptionType.MONTHLY,
        **kw,
    )


@pytest.mark.asyncio
async def test_seven_and_one_day_warnings(notifier, sms, cfg):
    store = FakeStore(
        subscriber(1, timedelta(days=7)),
        subscriber(2, timedelta(days=6, hours=12)),
        subscriber(3, timedelta(hours=20)),
        subscriber(4, timedelta(days=30)),
    )
    report = await SubscriptionScheduler(store, notifier, cfg).run(now=T0)

    assert report.total_checked == 4
    assert report.seven_day_warnings == 2
    assert report.one_day_warnings == 1
    assert report.deactivated == 0
    assert len(sms.sent) == 3
    assert "expires in 7 days" in sms.sent[0][1]
    assert "TOMORROW" in sms.sent[2][1]
    assert store.updates == []


@pytest.mark.asyncio
async def test_expired_today_gets_notice_and_is_deactivated(notifier, sms, cfg):
    store = FakeStore(subscriber(1, -timedelta(hours=2)))
    report = await SubscriptionScheduler(store, notifier, cfg).run(now=T0)

    assert report.expired == 1
    assert report.deactivated == 1
    assert "account has been deactivated" in sms.sent[0][1]
    p = store.patients[1]
    assert p.active is False
    assert p.deactivated_at == T0
    assert p.previous_active_state is True
    assert p.deactivation_reason == SUBSCRIPTION_EXPIRED


@pytest.mark.asyncio
async def test_long_expired_is_deactivated_without_notice(notifier, sms, cfg):
    store = FakeStore(subscriber(1, -timedelta(days=3)))
    report = await SubscriptionScheduler(store, notifier, cfg).run(now=T0)

    assert report.expired == 0
    assert report.deactivated == 1
    assert sms.sent == []


@pytest.mark.asyncio
async def test_deactivation_happens_even_if_notice_fails(notifier, sms, cfg):
    sms.fail = True
    store = FakeStore(subscriber(1, -timedelta(minutes=5)))
    report = await SubscriptionScheduler(store, notifier, cfg).run(now=T0)

    assert report.expired == 0
    assert report.deactivated == 1
    assert report.errors == [{"patient_id": 1, "error": "HTTP 503"}]
    assert store.patients[1].active is False


@pytest.mark.asyncio
async def test_manual_deactivation_reason_is_excluded(notifier, sms, cfg):
    store = FakeStore(
        subscriber(1, timedelta(days=7), deactivation_reason="Manual deactivation - Cost"),
        subscriber(2, timedelta(days=7), deactivation_reason=SUBSCRIPTION_EXPIRED),
    )
    report = await SubscriptionScheduler(store, notifier, cfg).run(now=T0)

    assert report.total_checked == 1
    assert report.seven_day_warnings == 1


@pytest.mark.asyncio
async def test_inactive_and_unsubscribed_patients_are_not_checked(notifier, cfg):
    store = FakeStore(
        subscriber(1, timedelta(days=7), active=False),
        make_patient(id=2),
        subscriber(3, timedelta(days=7), is_active=False),
    )
    report = await SubscriptionScheduler(store, notifier, cfg).run(now=T0)
    assert report.total_checked == 0


@pytest.mark.asyncio
async def test_scan_failure_raises(notifier, cfg):
    store = FakeStore()
    store.fail_scan = True
    with pytest.raises(SubscriptionCheckError):
        await SubscriptionScheduler(store, notifier, cfg).run(now=T0)


@pytest.mark.asyncio
async def test_notice_skipped_without_any_channel(sms, admin, cfg):
    email = FakeEmail()
    notifier = Notifier(sms, admin, cfg, email=email)
    store = FakeStore(subscriber(1, timedelta(days=7), phone=None, email=None))
    report = await SubscriptionScheduler(store, notifier, cfg).run(now=T0)
    assert report.seven_day_warnings == 0
    assert sms.sent == []
    assert email.sent == []


@pytest.mark.asyncio
async def test_patient_without_phone_is_warned_by_email(sms, admin, cfg):
    email = FakeEmail()
    notifier = Notifier(sms, admin, cfg, email=email)
    store = FakeStore(subscriber(1, timedelta(days=7), phone=None))
    report = await SubscriptionScheduler(store, notifier, cfg).run(now=T0)

    assert report.seven_day_warnings == 1
    assert sms.sent == []
    to, subject, body = email.sent[0]
    assert to == "ama@example.com"
    assert "expires in 7 days" in subject
    assert "expires in 7 days" in body


@pytest.mark.asyncio
async def test_notice_counts_if_any_channel_delivers(sms, admin, cfg):
    sms.fail = True
    email = FakeEmail()
    notifier = Notifier(sms, admin, cfg, email=email)
    store = FakeStore(subscriber(1, -timedelta(hours=1)))
    report = await SubscriptionScheduler(store, notifier, cfg).run(now=T0)

    assert report.expired == 1
    assert report.errors == []
    assert "has expired" in email.sent[0][1]
    assert store.patients[1].active is False


@pytest.mark.asyncio
async def test_drain_waits_for_running_sweep(notifier, sms, cfg):
    store = FakeStore(subscriber(1, -timedelta(hours=2)))
    sched = SubscriptionScheduler(store, notifier, cfg)
    sms.gate = asyncio.Event()

    sweep = asyncio.create_task(sched.run(now=T0))
    await asyncio.wait_for(sms.entered.wait(), timeout=1)
    drain = asyncio.create_task(sched.drain())
    await asyncio.sleep(0)
    assert not drain.done()

    sms.gate.set()
    await drain
    assert store.patients[1].active is False
    report = await sweep
    assert report.deactivated == 1


@pytest.mark.asyncio
async def test_seven_day_warning_only_on_its_day(notifier, sms, cfg):
    store = FakeStore(subscriber(1, timedelta(days=7)))
    sched = SubscriptionScheduler(store, notifier, cfg)

    for day in (-1, 0, 1, 2):
        await sched.run(now=T0 + timedelta(days=day))

    assert len(sms.sent) == 1
    assert "expires in 7 days" in sms.sent[0][1]
