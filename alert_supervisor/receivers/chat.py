"""Telegram chat receiver built on python-telegram-bot."""

from __future__ import annotations

import logging

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import (
    BadRequest,
    Forbidden,
    InvalidToken,
    NetworkError,
    RetryAfter,
    TelegramError,
    TimedOut,
)

from .. import view
from ..models.alerts import Notification
from .base import DeliveryOutcome, Receiver

logger = logging.getLogger(__name__)


def _notification_key(n: Notification) -> tuple[str, str, float]:
    return (n.alert.fingerprint, n.kind.value, n.created_at)


class TelegramReceiver(Receiver):
    """Sends the HTML rendering of a notification to one or more chats.

    Chats that already received a notification are not messaged again when
    that notification is retried for the remaining chats.
    """

    kind = "telegram"

    def __init__(self, name: str, token: str, chat_ids: list[int], bot: Bot | None = None) -> None:
        super().__init__(name)
        self.chat_ids = list(chat_ids)
        self._bot = bot or Bot(token=token)
        self._initialized = bot is not None
        self._sent: dict[tuple[str, str, float], set[int]] = {}

    async def _ensure_bot(self) -> Bot:
        if not self._initialized:
            await self._bot.initialize()
            self._initialized = True
        return self._bot

    async def _send(self, chat_id: int, text: str) -> DeliveryOutcome:
        try:
            bot = await self._ensure_bot()
            for part in view.chunk(text):
                await bot.send_message(chat_id=chat_id, text=part, parse_mode=ParseMode.HTML)
        except (BadRequest, Forbidden, InvalidToken) as exc:
            logger.error("%s: chat_id=%s rejected message: %s", self.name, chat_id, exc)
            return DeliveryOutcome.PERMANENT
        except (RetryAfter, TimedOut, NetworkError) as exc:
            logger.warning("%s: chat_id=%s temporary failure: %s", self.name, chat_id, exc)
            return DeliveryOutcome.RETRYABLE
        except TelegramError as exc:
            logger.warning("%s: chat_id=%s telegram error: %s", self.name, chat_id, exc)
            return DeliveryOutcome.RETRYABLE
        return DeliveryOutcome.SUCCESS

    async def deliver(self, notification: Notification) -> DeliveryOutcome:
        key = _notification_key(notification)
        sent = self._sent.setdefault(key, set())
        text = view.render_html(notification)
        worst = DeliveryOutcome.SUCCESS
        for chat_id in self.chat_ids:
            if chat_id in sent:
                continue
            outcome = await self._send(chat_id, text)
            if outcome is DeliveryOutcome.SUCCESS:
                sent.add(chat_id)
            elif outcome is DeliveryOutcome.PERMANENT:
                worst = DeliveryOutcome.PERMANENT
            elif worst is DeliveryOutcome.SUCCESS:
                worst = DeliveryOutcome.RETRYABLE
        if worst is not DeliveryOutcome.RETRYABLE:
            self._sent.pop(key, None)
        return worst

    def forget(self, notification: Notification) -> None:
        self._sent.pop(_notification_key(notification), None)

    async def close(self) -> None:
        if self._initialized:
            try:
                await self._bot.shutdown()
            except TelegramError:
                logger.exception("%s: failed to shut down bot", self.name)
            self._initialized = False
