"""Repository ports — abstract interfaces over the persistent store.

Core services (checklist reconciler, dispatcher, message intake, jobs)
depend on these protocols; `opsdesk.data.db` provides the SQLite versions.
Everything is keyed by employee name or id, conversation chat id and civil
date. Instants are aware UTC datetimes.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Protocol

from opsdesk.data.models import (
    Conversation,
    ConversationMessage,
    DailyChecklist,
    Employee,
    MonthlyReminder,
    PersonalReminder,
    Task,
    TaskCompletionRecord,
)


class DirectoryStore(Protocol):
    """Employees and the conversations the bot is a member of."""

    def add_employee(self, name: str) -> Employee: ...

    def get_employee(self, employee_id: int) -> Employee | None: ...

    def find_employee(self, name: str) -> Employee | None: ...

    def list_employees(self, active_only: bool = True) -> list[Employee]: ...

    def register_conversation(
        self, chat_id: str, name: str, role: str, employee_id: int | None = None,
    ) -> Conversation: ...

    def get_conversation(self, chat_id: str) -> Conversation | None: ...

    def find_conversation(self, name: str) -> Conversation | None: ...

    def list_conversations(self, role: str | None = None) -> list[Conversation]: ...

    def conversation_for_employee(self, employee_id: int) -> Conversation | None: ...


class TaskStore(Protocol):
    """Recurring tasks and their append-only completion records."""

    def add_task(
        self,
        employee_id: int,
        task_name: str,
        client_name: str = "",
        frequency: str = "weekly",
        frequency_detail: str = "",
    ) -> Task: ...

    def list_tasks(self, employee_id: int | None = None, active_only: bool = True) -> list[Task]: ...

    def find_task(self, employee_id: int, name_fragment: str) -> Task | None: ...

    def deactivate_task(self, task_id: int) -> bool: ...

    def update_frequency(self, task_id: int, frequency: str, frequency_detail: str) -> Task: ...

    def add_record(
        self, task_id: int, employee_id: int, completed_at: datetime,
    ) -> TaskCompletionRecord: ...

    def delete_latest_record(self, employee_id: int) -> TaskCompletionRecord | None: ...

    def records_between(
        self, start: datetime, end: datetime, employee_id: int | None = None,
    ) -> list[TaskCompletionRecord]: ...


class ChecklistStore(Protocol):
    """One checklist per (employee, civil date)."""

    def get_checklist(self, employee_id: int, day: date) -> DailyChecklist | None: ...

    def create_checklist_if_absent(self, checklist: DailyChecklist) -> DailyChecklist: ...

    def upsert_checklist(self, checklist: DailyChecklist) -> DailyChecklist: ...

    def update_items(self, checklist: DailyChecklist) -> DailyChecklist: ...


class ReminderStore(Protocol):
    """One-shot reminders, delivered at most once, and monthly manager reminders."""

    def add_reminder(self, chat_id: str, reminder_time: datetime, content: str) -> PersonalReminder: ...

    def due_unsent(self, now: datetime) -> list[PersonalReminder]: ...

    def claim(self, reminder_id: int) -> bool: ...

    def add_monthly_reminder(self, title: str, day_of_month: int) -> MonthlyReminder: ...

    def list_monthly_reminders(self, active_only: bool = True) -> list[MonthlyReminder]: ...

    def deactivate_monthly_reminder(self, reminder_id: int) -> bool: ...


class MessageLogStore(Protocol):
    """Conversation message history used by the notification throttle."""

    def append(self, message: ConversationMessage) -> ConversationMessage: ...

    def recent(self, chat_id: str, since: datetime) -> list[ConversationMessage]: ...

    def recent_all(self, since: datetime) -> list[ConversationMessage]: ...

    def mark_replied_before(self, chat_id: str, before: datetime) -> int: ...

    def set_importance(self, message_id: int, importance: str, note: str = "") -> None: ...

    def messages_between(self, start: datetime, end: datetime) -> list[ConversationMessage]: ...

    def prune_before(self, before: datetime) -> int: ...
