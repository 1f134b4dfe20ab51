# insulinlog/app.py
"""
Entrypoint.

    python -m insulinlog.app serve               # run both schedulers until SIGINT/SIGTERM
    python -m insulinlog.app remind-once         # one reminder tick, then exit
    python -m insulinlog.app subscriptions-once  # one subscription sweep, then exit
"""

from __future__ import annotations

import sys
from pathlib import Path
import argparse
import asyncio
import logging
import signal
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, List, Optional

# --------------------------------------------------------------------------------------
# Ensure project root is in sys.path so "import insulinlog.*" always works
# --------------------------------------------------------------------------------------
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # noqa: E402
from apscheduler.triggers.cron import CronTrigger  # noqa: E402
from apscheduler.triggers.interval import IntervalTrigger  # noqa: E402

from insulinlog import config as default_cfg  # noqa: E402
from insulinlog.adapters.email_sender import EmailSender  # noqa: E402
from insulinlog.adapters.sms_gateway import SmsGateway  # noqa: E402
from insulinlog.adapters.telegram_admin import TelegramAdminAlerter  # noqa: E402
from insulinlog.core.config_validation import validate_config  # noqa: E402
from insulinlog.core.logging_utils import kv, setup_logging  # noqa: E402
from insulinlog.core.notifier import Notifier  # noqa: E402
from insulinlog.core.reminder_engine import ReminderScheduler  # noqa: E402
from insulinlog.core.subscription import SubscriptionScheduler  # noqa: E402
from insulinlog.db.session import dispose_engine, engine  # noqa: E402
from insulinlog.db.store import SqlPatientStore  # noqa: E402

log = logging.getLogger("insulinlog.app")


@dataclass
class Services:
    store: SqlPatientStore
    sms: SmsGateway
    email: EmailSender
    admin: TelegramAdminAlerter
    notifier: Notifier
    reminders: ReminderScheduler
    subscriptions: SubscriptionScheduler


def build_services(cfg: Any) -> Services:
    store = SqlPatientStore(engine(cfg))
    sms = SmsGateway.from_config(cfg)
    email = EmailSender.from_config(cfg)
    admin = TelegramAdminAlerter.from_token(default_cfg.get_bot_token(cfg), cfg.ADMIN_CHAT_IDS)
    notifier = Notifier(sms, admin, cfg, email=email)
    return Services(
        store=store,
        sms=sms,
        email=email,
        admin=admin,
        notifier=notifier,
        reminders=ReminderScheduler(store, notifier, cfg),
        subscriptions=SubscriptionScheduler(store, notifier, cfg),
    )


async def close_services(services: Services) -> None:
    await services.sms.close()
    await services.email.close()
    await services.admin.close()
    await dispose_engine()


def schedule_jobs(services: Services, cfg: Any) -> AsyncIOScheduler:
    """
    Register the reminder tick and the daily subscription sweep.
    The scheduler is created and configured here, but NOT started.
    """
    sched = AsyncIOScheduler(timezone=cfg.TZ)
    sched.add_job(
        services.reminders.scheduled_tick,
        trigger=IntervalTrigger(minutes=cfg.REMINDER_INTERVAL_MIN, timezone=cfg.TZ),
        id="reminders",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
        misfire_grace_time=300,
    )
    sched.add_job(
        services.subscriptions.scheduled_run,
        trigger=CronTrigger(hour=cfg.SUBSCRIPTION_CHECK_HOUR, minute=0, timezone=cfg.TZ),
        id="subscriptions",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
        misfire_grace_time=3600,
    )
    return sched


async def serve(cfg: Any) -> None:
    services = build_services(cfg)
    sched = schedule_jobs(services, cfg)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    sched.start()
    log.info(
        "startup.ready "
        + kv(
            interval_min=cfg.REMINDER_INTERVAL_MIN,
            subscription_hour=cfg.SUBSCRIPTION_CHECK_HOUR,
            tz=cfg.TIMEZONE,
            sms_enabled=cfg.SMS_ENABLED,
            email_enabled=getattr(cfg, "EMAIL_ENABLED", False),
        )
    )
    try:
        await stop.wait()
    finally:
        log.info("shutdown.begin")
        sched.shutdown(wait=True)
        # let an in-flight tick or sweep finish its writes before the pool goes away
        await services.reminders.drain()
        await services.subscriptions.drain()
        await close_services(services)
        log.info("shutdown.done")


async def remind_once(cfg: Any) -> None:
    services = build_services(cfg)
    try:
        report = await services.reminders.tick()
        log.info("remind_once.report " + kv(scanned=report.scanned, **report.outcomes))
    finally:
        await close_services(services)


async def subscriptions_once(cfg: Any) -> None:
    services = build_services(cfg)
    try:
        report = await services.subscriptions.run()
        log.info(
            "subscriptions_once.report "
            + kv(
                checked=report.total_checked,
                seven_day=report.seven_day_warnings,
                one_day=report.one_day_warnings,
                expired=report.expired,
                deactivated=report.deactivated,
                errors=report.errors,
            )
        )
    finally:
        await close_services(services)


COMMANDS = {
    "serve": serve,
    "remind-once": remind_once,
    "subscriptions-once": subscriptions_once,
}


def main(argv: Optional[List[str]] = None, cfg: Any = default_cfg) -> int:
    parser = argparse.ArgumentParser(prog="insulinlog", description="InsulinLog reminder backend")
    parser.add_argument("command", nargs="?", default="serve", choices=sorted(COMMANDS))
    args = parser.parse_args(argv)

    setup_logging(cfg)
    validate_config(cfg)
    asyncio.run(COMMANDS[args.command](cfg))
    return 0


if __name__ == "__main__":
    sys.exit(main())
