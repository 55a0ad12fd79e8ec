"""
OpsDesk Assistant — Data Models.

Plain dataclasses shared by the core and the SQLite stores. Instants are
stored as aware UTC datetimes; checklist dates are civil dates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime

ROLE_MANAGER = "manager"
ROLE_EMPLOYEE = "employee"
ROLE_CUSTOMER = "customer"
ROLES = (ROLE_MANAGER, ROLE_EMPLOYEE, ROLE_CUSTOMER)

FREQUENCIES = ("daily", "weekly", "monthly", "custom")
IMPORTANCE_LEVELS = ("urgent", "question", "payment", "general")

MAX_MESSAGE_LENGTH = 500


@dataclass
class Employee:
    """A team member who owns recurring tasks and a daily checklist."""

    id: int
    name: str
    active: bool = True


@dataclass
class Conversation:
    """A chat the bot is a member of, tagged with the role it plays.

    Employee conversations are bound to exactly one employee; manager and
    customer conversations are not bound.
    """

    id: int
    chat_id: str
    name: str
    role: str                         # "manager" | "employee" | "customer"
    employee_id: int | None = None
    active: bool = True


@dataclass
class Task:
    """A recurring task assigned to an employee."""

    id: int
    employee_id: int
    task_name: str
    client_name: str = ""
    frequency: str = "weekly"         # daily | weekly | monthly | custom
    frequency_detail: str = ""        # e.g. "週二,週四" or "每月15號"
    active: bool = True

    @property
    def label(self) -> str:
        if self.client_name:
            return f"{self.client_name} - {self.task_name}"
        return self.task_name


@dataclass
class TaskCompletionRecord:
    id: int
    task_id: int
    employee_id: int
    completed_at: datetime


@dataclass
class PersonalReminder:
    """A one-shot message to deliver to a conversation at an absolute instant."""

    id: int
    chat_id: str
    reminder_time: datetime           # aware, UTC
    content: str
    is_sent: bool = False


@dataclass
class MonthlyReminder:
    """A manager reminder repeated every month on `day_of_month`, announced the
    day before and on the day."""

    id: int
    title: str
    day_of_month: int
    active: bool = True


@dataclass
class ChecklistItem:
    index: int
    text: str
    done: bool = False


@dataclass
class DailyChecklist:
    """One employee's to-do list for one civil date.

    Counts are derived from the items so they can never drift.
    """

    id: int | None
    employee_id: int
    checklist_date: date
    items: list[ChecklistItem] = field(default_factory=list)
    source: str = "employee"          # "employee" | "auto"

    @property
    def total_count(self) -> int:
        return len(self.items)

    @property
    def done_count(self) -> int:
        return sum(1 for item in self.items if item.done)


@dataclass
class ConversationMessage:
    """One logged chat message. author_id None means the platform or the bot."""

    id: int | None
    chat_id: str
    author_id: str | None
    text: str
    created_at: datetime
    is_replied: bool = False
    importance: str = "general"
    note: str = ""
