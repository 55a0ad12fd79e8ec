"""Notification throttle — pure business logic.

Decides whether an inbound customer message should raise a "someone is
waiting" alert to the supervisors, and which conversations are still
waiting when the periodic sweep runs.

There is no stored per-conversation alert flag. Every decision is re-derived
from the message log: a staff message inside the reply window means the
conversation is being handled, and an earlier customer message inside the
burst window means an alert already went out for this burst. Whoever calls
these functions must pass the authoritative history, not a cached view.

No I/O: this module only transforms data.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from opsdesk.data.models import ConversationMessage

logger = logging.getLogger(__name__)

DEFAULT_REPLY_WINDOW = timedelta(hours=2)
DEFAULT_BURST_WINDOW = timedelta(minutes=30)


@dataclass
class ThrottleDecision:
    alert: bool
    reason: str   # "alert" | "staff_message" | "being_handled" | "already_alerted"


def is_staff(message: ConversationMessage, staff_ids: set[str]) -> bool:
    """Bot/platform messages (no author) count as staff for throttling."""
    return message.author_id is None or message.author_id in staff_ids


def evaluate(
    history: Iterable[ConversationMessage],
    message: ConversationMessage,
    staff_ids: set[str],
    reply_window: timedelta = DEFAULT_REPLY_WINDOW,
    burst_window: timedelta = DEFAULT_BURST_WINDOW,
) -> ThrottleDecision:
    """Decide whether `message` should trigger a supervisor alert.

    Args:
        history: Earlier messages of the same conversation. The message under
            evaluation may be included; it is skipped.
        message: The newly logged message.
        staff_ids: Author ids whose messages count as staff replies.
        reply_window: A staff message this recent suppresses the alert.
        burst_window: A customer message this recent means an alert was
            already raised for the current burst.
    """
    if is_staff(message, staff_ids):
        return ThrottleDecision(alert=False, reason="staff_message")

    now = message.created_at
    earlier = [
        m for m in history
        if m is not message
        and (message.id is None or m.id != message.id)
        and m.created_at <= now
    ]

    if any(
        is_staff(m, staff_ids) and now - m.created_at <= reply_window
        for m in earlier
    ):
        return ThrottleDecision(alert=False, reason="being_handled")

    if any(
        not is_staff(m, staff_ids) and now - m.created_at <= burst_window
        for m in earlier
    ):
        return ThrottleDecision(alert=False, reason="already_alerted")

    return ThrottleDecision(alert=True, reason="alert")


def find_unreplied(
    history: Iterable[ConversationMessage],
    staff_ids: set[str],
    now: datetime,
    reply_window: timedelta = DEFAULT_REPLY_WINDOW,
) -> list[str]:
    """Chat ids whose latest customer message has waited past the reply window.

    A conversation qualifies when its newest non-staff message is unreplied,
    older than `reply_window`, and no staff message came after it. Chat ids
    are returned in order of first appearance in `history`.
    """
    last_customer: dict[str, ConversationMessage] = {}
    last_staff: dict[str, datetime] = {}
    order: list[str] = []

    for m in history:
        if m.chat_id not in order:
            order.append(m.chat_id)
        if is_staff(m, staff_ids):
            if m.chat_id not in last_staff or m.created_at > last_staff[m.chat_id]:
                last_staff[m.chat_id] = m.created_at
        else:
            current = last_customer.get(m.chat_id)
            if current is None or m.created_at > current.created_at:
                last_customer[m.chat_id] = m

    waiting: list[str] = []
    for chat_id in order:
        customer = last_customer.get(chat_id)
        if customer is None or customer.is_replied:
            continue
        if now - customer.created_at < reply_window:
            continue
        staff_at = last_staff.get(chat_id)
        if staff_at is not None and staff_at >= customer.created_at:
            continue
        waiting.append(chat_id)

    logger.debug("Unreplied check: %d of %d conversations waiting", len(waiting), len(order))
    return waiting
