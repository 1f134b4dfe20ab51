# insulinlog/adapters/telegram_admin.py
from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence

from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode

from insulinlog.core.logging_utils import kv
from insulinlog.core.patient_state import SendResult
from insulinlog.util.retry import BACKOFFS, with_retry

logger = logging.getLogger("insulinlog.admin_alerts")


class TelegramAdminAlerter:
    """
    Delivers administrator alerts as Telegram DMs.
    The alert counts as delivered when at least one admin chat received it.
    """

    def __init__(
        self,
        bot: Bot,
        admin_chat_ids: Iterable[int],
        *,
        backoffs: Sequence[float] = BACKOFFS,
    ) -> None:
        self.bot = bot
        self.admin_chat_ids = list(admin_chat_ids)
        self.backoffs = backoffs

    @classmethod
    def from_token(cls, token: str, admin_chat_ids: Iterable[int]) -> "TelegramAdminAlerter":
        bot = Bot(token=token, default=DefaultBotProperties(parse_mode=ParseMode.HTML))
        return cls(bot, admin_chat_ids)

    async def broadcast(self, text: str) -> SendResult:
        if not self.admin_chat_ids:
            logger.warning("admin_alert.no_recipients")
            return SendResult(success=False, error="no admin recipients configured")

        delivered: list[str] = []
        last_error: Optional[str] = None
        for chat_id in self.admin_chat_ids:
            try:
                msg = await with_retry(
                    self.bot.send_message, chat_id, text, backoffs=self.backoffs
                )
                delivered.append(str(getattr(msg, "message_id", "")))
            except Exception as e:
                last_error = str(e)
                logger.error("admin_alert.send_failed " + kv(chat_id=chat_id, err=last_error))

        if not delivered:
            return SendResult(success=False, error=last_error or "delivery failed")
        return SendResult(
            success=True,
            message_id=",".join(delivered),
            extra={"recipients": len(delivered)},
        )

    async def close(self) -> None:
        await self.bot.session.close()
