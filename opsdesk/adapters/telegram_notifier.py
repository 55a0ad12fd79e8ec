"""Telegram notification adapter — implements NotificationPort.

Wraps a telegram.Bot instance to satisfy the NotificationPort protocol.
Chat ids are stored as strings; Telegram accepts them as-is.
"""

from __future__ import annotations

import logging

from telegram import Bot

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Telegram implementation of NotificationPort."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_message(self, chat_id: str, text: str) -> None:
        await self._bot.send_message(chat_id=chat_id, text=text)
        logger.debug("Sent %d chars to chat %s", len(text), chat_id)
