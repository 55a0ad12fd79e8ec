"""Notification port — abstract interface for sending messages to conversations.

Core modules depend on this protocol, never on a specific messaging provider.
"""

from __future__ import annotations

from typing import Protocol


class NotificationPort(Protocol):
    """Abstract notification interface used by core modules."""

    async def send_message(self, chat_id: str, text: str) -> None: ...
