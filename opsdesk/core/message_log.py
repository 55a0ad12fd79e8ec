"""
OpsDesk Assistant — Message intake.

Every message seen in a registered conversation is logged. A staff message
marks the earlier messages of its conversation replied. A customer message
is run through the notification throttle and, when an alert fires, graded by
the customer classifier and announced to the manager conversations.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Awaitable, Callable

from opsdesk.core.classifier import CustomerClassification, classify_customer_message
from opsdesk.core.throttle import (
    DEFAULT_BURST_WINDOW,
    DEFAULT_REPLY_WINDOW,
    ThrottleDecision,
    evaluate,
    is_staff,
)
from opsdesk.data.models import ROLE_CUSTOMER, ROLE_MANAGER, Conversation, ConversationMessage

if TYPE_CHECKING:
    from opsdesk.ports.notification_port import NotificationPort
    from opsdesk.ports.repository_port import DirectoryStore, MessageLogStore

logger = logging.getLogger(__name__)

CustomerClassifyFn = Callable[[str], Awaitable[CustomerClassification]]

IMPORTANCE_LABELS = {
    "urgent": "🚨 緊急",
    "question": "❓ 問題",
    "payment": "💰 付款",
    "general": "💬 一般",
}


def format_alert(conversation: Conversation, text: str, grade: CustomerClassification) -> str:
    label = IMPORTANCE_LABELS.get(grade.importance, IMPORTANCE_LABELS["general"])
    preview = grade.summary or text[:50]
    return f"🔔 客戶訊息待回覆\n👥 {conversation.name}\n🏷️ {label}\n📝 {preview}"


class MessageIntake:
    """Logs messages and raises throttled "customer waiting" alerts."""

    def __init__(
        self,
        log: MessageLogStore,
        directory: DirectoryStore,
        notifier: NotificationPort,
        staff_ids: set[str],
        reply_window: timedelta = DEFAULT_REPLY_WINDOW,
        burst_window: timedelta = DEFAULT_BURST_WINDOW,
        classify_customer: CustomerClassifyFn = classify_customer_message,
    ) -> None:
        self._log = log
        self._directory = directory
        self._notifier = notifier
        self._staff_ids = set(staff_ids)
        self._reply_window = reply_window
        self._burst_window = burst_window
        self._classify_customer = classify_customer

    async def record(
        self,
        conversation: Conversation,
        author_id: str | None,
        text: str,
        now: datetime,
    ) -> ThrottleDecision:
        """Log one message and alert the managers if a customer is newly waiting."""
        draft = ConversationMessage(
            id=None,
            chat_id=conversation.chat_id,
            author_id=author_id,
            text=text,
            created_at=now,
        )
        staff = is_staff(draft, self._staff_ids)
        draft.is_replied = staff
        message = self._log.append(draft)

        if staff:
            self._log.mark_replied_before(conversation.chat_id, message.created_at)
            return ThrottleDecision(alert=False, reason="staff_message")

        if conversation.role != ROLE_CUSTOMER:
            return ThrottleDecision(alert=False, reason="not_customer")

        lookback = max(self._reply_window, self._burst_window)
        history = self._log.recent(conversation.chat_id, message.created_at - lookback)
        decision = evaluate(
            history, message, self._staff_ids, self._reply_window, self._burst_window,
        )
        if not decision.alert:
            logger.debug("Alert suppressed for %s: %s", conversation.chat_id, decision.reason)
            return decision

        grade = await self._classify_customer(message.text)
        self._log.set_importance(message.id, grade.importance, grade.summary)
        await self._alert_managers(format_alert(conversation, message.text, grade))
        logger.info(
            "Customer alert raised for %s (%s)", conversation.chat_id, grade.importance,
        )
        return decision

    async def _alert_managers(self, text: str) -> None:
        managers = self._directory.list_conversations(ROLE_MANAGER)
        if not managers:
            logger.warning("No manager conversation registered, alert dropped")
            return
        for manager in managers:
            try:
                await self._notifier.send_message(manager.chat_id, text)
            except Exception as exc:
                logger.error("Failed to alert manager conversation %s: %s", manager.chat_id, exc)
