"""
OpsDesk Assistant — SQLite stores.

Everything the bot remembers across restarts: employees and conversations,
recurring tasks and their completion records, daily checklists, one-shot
reminders and the conversation message log.

Instants are written as fixed-width UTC strings so that string comparison in
SQL matches chronological order. Checklist dates are civil ISO dates.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import replace
from datetime import date, datetime, timezone
from pathlib import Path

from opsdesk.core.clock import to_utc
from opsdesk.data.models import (
    MAX_MESSAGE_LENGTH,
    ROLES,
    ChecklistItem,
    Conversation,
    ConversationMessage,
    DailyChecklist,
    Employee,
    MonthlyReminder,
    PersonalReminder,
    Task,
    TaskCompletionRecord,
)

logger = logging.getLogger(__name__)

_INSTANT_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def _to_db(instant: datetime) -> str:
    return to_utc(instant).strftime(_INSTANT_FORMAT)


def _from_db(value: str) -> datetime:
    return datetime.strptime(value, _INSTANT_FORMAT).replace(tzinfo=timezone.utc)


class _SQLiteStore:
    """Connection handling shared by every store. Subclasses create their tables."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from opsdesk.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        raise NotImplementedError


class DirectoryDB(_SQLiteStore):
    """Employees and the conversations the bot has been registered in."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS employees (
                    id     INTEGER PRIMARY KEY AUTOINCREMENT,
                    name   TEXT    NOT NULL UNIQUE,
                    active INTEGER NOT NULL DEFAULT 1
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    chat_id     TEXT    NOT NULL UNIQUE,
                    name        TEXT    NOT NULL DEFAULT '',
                    role        TEXT    NOT NULL,
                    employee_id INTEGER,
                    active      INTEGER NOT NULL DEFAULT 1
                )
            """)
        logger.debug("Directory tables initialized at %s", self._db_path)

    @staticmethod
    def _row_to_employee(row: sqlite3.Row) -> Employee:
        return Employee(id=row["id"], name=row["name"], active=bool(row["active"]))

    @staticmethod
    def _row_to_conversation(row: sqlite3.Row) -> Conversation:
        return Conversation(
            id=row["id"],
            chat_id=row["chat_id"],
            name=row["name"],
            role=row["role"],
            employee_id=row["employee_id"],
            active=bool(row["active"]),
        )

    def add_employee(self, name: str) -> Employee:
        """Insert an employee, or reactivate one with the same name."""
        name = name.strip()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO employees (name, active) VALUES (?, 1)
                ON CONFLICT(name) DO UPDATE SET active = 1
                """,
                (name,),
            )
            row = conn.execute("SELECT * FROM employees WHERE name = ?", (name,)).fetchone()
        employee = self._row_to_employee(row)
        logger.info("Employee saved: #%d '%s'", employee.id, employee.name)
        return employee

    def get_employee(self, employee_id: int) -> Employee | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM employees WHERE id = ?", (employee_id,)
            ).fetchone()
        return self._row_to_employee(row) if row else None

    def find_employee(self, name: str) -> Employee | None:
        """Exact (case-insensitive) name match first, then a partial match."""
        name = (name or "").strip()
        if not name:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM employees WHERE active = 1 AND LOWER(name) = LOWER(?)",
                (name,),
            ).fetchone()
            if row is None:
                row = conn.execute(
                    "SELECT * FROM employees WHERE active = 1 AND name LIKE ? ORDER BY id",
                    (f"%{name}%",),
                ).fetchone()
        return self._row_to_employee(row) if row else None

    def list_employees(self, active_only: bool = True) -> list[Employee]:
        query = "SELECT * FROM employees"
        if active_only:
            query += " WHERE active = 1"
        query += " ORDER BY id"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_employee(r) for r in rows]

    def register_conversation(
        self, chat_id: str, name: str, role: str, employee_id: int | None = None,
    ) -> Conversation:
        """Tag a chat with its role. Re-registering a chat replaces its role."""
        if role not in ROLES:
            raise ValueError(f"Unknown conversation role {role!r}")
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO conversations (chat_id, name, role, employee_id, active)
                VALUES (?, ?, ?, ?, 1)
                ON CONFLICT(chat_id) DO UPDATE SET
                    name = excluded.name,
                    role = excluded.role,
                    employee_id = excluded.employee_id,
                    active = 1
                """,
                (str(chat_id), name, role, employee_id),
            )
            row = conn.execute(
                "SELECT * FROM conversations WHERE chat_id = ?", (str(chat_id),)
            ).fetchone()
        conversation = self._row_to_conversation(row)
        logger.info(
            "Conversation %s registered as %s (employee=%s)",
            conversation.chat_id, role, employee_id,
        )
        return conversation

    def get_conversation(self, chat_id: str) -> Conversation | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE chat_id = ? AND active = 1",
                (str(chat_id),),
            ).fetchone()
        return self._row_to_conversation(row) if row else None

    def find_conversation(self, name: str) -> Conversation | None:
        """Find an active conversation by display name, or by its bound employee's name."""
        name = (name or "").strip()
        if not name:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM conversations
                WHERE active = 1 AND (LOWER(name) = LOWER(?) OR name LIKE ?)
                ORDER BY LOWER(name) = LOWER(?) DESC, id
                """,
                (name, f"%{name}%", name),
            ).fetchone()
            if row is None:
                row = conn.execute(
                    """
                    SELECT c.* FROM conversations c
                    JOIN employees e ON e.id = c.employee_id
                    WHERE c.active = 1 AND c.role = 'employee' AND e.name LIKE ?
                    ORDER BY c.id
                    """,
                    (f"%{name}%",),
                ).fetchone()
        return self._row_to_conversation(row) if row else None

    def list_conversations(self, role: str | None = None) -> list[Conversation]:
        query = "SELECT * FROM conversations WHERE active = 1"
        params: list = []
        if role is not None:
            query += " AND role = ?"
            params.append(role)
        query += " ORDER BY id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_conversation(r) for r in rows]

    def conversation_for_employee(self, employee_id: int) -> Conversation | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM conversations
                WHERE active = 1 AND role = 'employee' AND employee_id = ?
                ORDER BY id
                """,
                (employee_id,),
            ).fetchone()
        return self._row_to_conversation(row) if row else None


class TaskDB(_SQLiteStore):
    """Recurring tasks (soft-deleted) and append-only completion records."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id               INTEGER PRIMARY KEY AUTOINCREMENT,
                    employee_id      INTEGER NOT NULL,
                    task_name        TEXT    NOT NULL,
                    client_name      TEXT    NOT NULL DEFAULT '',
                    frequency        TEXT    NOT NULL DEFAULT 'weekly',
                    frequency_detail TEXT    NOT NULL DEFAULT '',
                    active           INTEGER NOT NULL DEFAULT 1
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS task_records (
                    id           INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id      INTEGER NOT NULL,
                    employee_id  INTEGER NOT NULL,
                    completed_at TEXT    NOT NULL
                )
            """)
        logger.debug("Task tables initialized at %s", self._db_path)

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            id=row["id"],
            employee_id=row["employee_id"],
            task_name=row["task_name"],
            client_name=row["client_name"],
            frequency=row["frequency"],
            frequency_detail=row["frequency_detail"],
            active=bool(row["active"]),
        )

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> TaskCompletionRecord:
        return TaskCompletionRecord(
            id=row["id"],
            task_id=row["task_id"],
            employee_id=row["employee_id"],
            completed_at=_from_db(row["completed_at"]),
        )

    def add_task(
        self,
        employee_id: int,
        task_name: str,
        client_name: str = "",
        frequency: str = "weekly",
        frequency_detail: str = "",
    ) -> Task:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO tasks
                    (employee_id, task_name, client_name, frequency, frequency_detail, active)
                VALUES (?, ?, ?, ?, ?, 1)
                """,
                (employee_id, task_name, client_name or "", frequency, frequency_detail or ""),
            )
            task_id = cursor.lastrowid

        task = Task(
            id=task_id,
            employee_id=employee_id,
            task_name=task_name,
            client_name=client_name or "",
            frequency=frequency,
            frequency_detail=frequency_detail or "",
        )
        logger.info(
            "Task added: #%d '%s' for employee %d (%s %s)",
            task_id, task.label, employee_id, frequency, frequency_detail,
        )
        return task

    def get_task(self, task_id: int) -> Task | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row) if row else None

    def list_tasks(self, employee_id: int | None = None, active_only: bool = True) -> list[Task]:
        conditions: list[str] = []
        params: list = []
        if active_only:
            conditions.append("active = 1")
        if employee_id is not None:
            conditions.append("employee_id = ?")
            params.append(employee_id)

        query = "SELECT * FROM tasks"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY id"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_task(r) for r in rows]

    def find_task(self, employee_id: int, name_fragment: str) -> Task | None:
        """First active task of the employee whose name or client contains the fragment."""
        fragment = (name_fragment or "").strip()
        if not fragment:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM tasks
                WHERE active = 1 AND employee_id = ?
                  AND (task_name LIKE ? OR client_name || ' - ' || task_name LIKE ?)
                ORDER BY id
                """,
                (employee_id, f"%{fragment}%", f"%{fragment}%"),
            ).fetchone()
        return self._row_to_task(row) if row else None

    def deactivate_task(self, task_id: int) -> bool:
        """Soft-delete a task (set active = False)."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE tasks SET active = 0 WHERE id = ? AND active = 1",
                (task_id,),
            )
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Task #%d soft-deleted", task_id)
        return deleted

    def update_frequency(self, task_id: int, frequency: str, frequency_detail: str) -> Task:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE tasks SET frequency = ?, frequency_detail = ? WHERE id = ?",
                (frequency, frequency_detail, task_id),
            )
            if cursor.rowcount == 0:
                raise ValueError(f"Task {task_id} not found")
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        logger.info("Task #%d rescheduled: %s %s", task_id, frequency, frequency_detail)
        return self._row_to_task(row)

    def add_record(
        self, task_id: int, employee_id: int, completed_at: datetime,
    ) -> TaskCompletionRecord:
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO task_records (task_id, employee_id, completed_at) VALUES (?, ?, ?)",
                (task_id, employee_id, _to_db(completed_at)),
            )
            record_id = cursor.lastrowid
        logger.info("Completion recorded: task #%d by employee %d", task_id, employee_id)
        return TaskCompletionRecord(
            id=record_id,
            task_id=task_id,
            employee_id=employee_id,
            completed_at=to_utc(completed_at),
        )

    def delete_latest_record(self, employee_id: int) -> TaskCompletionRecord | None:
        """Remove the employee's most recent completion record, if any."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM task_records WHERE employee_id = ?
                ORDER BY completed_at DESC, id DESC LIMIT 1
                """,
                (employee_id,),
            ).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM task_records WHERE id = ?", (row["id"],))
        record = self._row_to_record(row)
        logger.info("Completion record #%d cancelled for employee %d", record.id, employee_id)
        return record

    def records_between(
        self, start: datetime, end: datetime, employee_id: int | None = None,
    ) -> list[TaskCompletionRecord]:
        """Records with start <= completed_at < end."""
        query = "SELECT * FROM task_records WHERE completed_at >= ? AND completed_at < ?"
        params: list = [_to_db(start), _to_db(end)]
        if employee_id is not None:
            query += " AND employee_id = ?"
            params.append(employee_id)
        query += " ORDER BY completed_at, id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_record(r) for r in rows]


class ChecklistDB(_SQLiteStore):
    """Daily checklists, unique per (employee, civil date).

    Counts are recomputed from the items on every write.
    """

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS daily_checklists (
                    id             INTEGER PRIMARY KEY AUTOINCREMENT,
                    employee_id    INTEGER NOT NULL,
                    checklist_date TEXT    NOT NULL,
                    items          TEXT    NOT NULL DEFAULT '[]',
                    total_count    INTEGER NOT NULL DEFAULT 0,
                    done_count     INTEGER NOT NULL DEFAULT 0,
                    source         TEXT    NOT NULL DEFAULT 'employee',
                    UNIQUE (employee_id, checklist_date)
                )
            """)
        logger.debug("Checklist table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_checklist(row: sqlite3.Row) -> DailyChecklist:
        items = [
            ChecklistItem(index=i, text=item["text"], done=bool(item.get("done")))
            for i, item in enumerate(json.loads(row["items"]))
        ]
        return DailyChecklist(
            id=row["id"],
            employee_id=row["employee_id"],
            checklist_date=date.fromisoformat(row["checklist_date"]),
            items=items,
            source=row["source"],
        )

    @staticmethod
    def _params(checklist: DailyChecklist) -> tuple:
        items_json = json.dumps(
            [{"index": i.index, "text": i.text, "done": i.done} for i in checklist.items],
            ensure_ascii=False,
        )
        return (
            checklist.employee_id,
            checklist.checklist_date.isoformat(),
            items_json,
            checklist.total_count,
            checklist.done_count,
            checklist.source,
        )

    def get_checklist(self, employee_id: int, day: date) -> DailyChecklist | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM daily_checklists WHERE employee_id = ? AND checklist_date = ?",
                (employee_id, day.isoformat()),
            ).fetchone()
        return self._row_to_checklist(row) if row else None

    def create_checklist_if_absent(self, checklist: DailyChecklist) -> DailyChecklist:
        """Insert unless (employee, date) exists. Returns whatever row is stored."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO daily_checklists
                    (employee_id, checklist_date, items, total_count, done_count, source)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(employee_id, checklist_date) DO NOTHING
                """,
                self._params(checklist),
            )
            created = cursor.rowcount > 0
        if not created:
            logger.debug(
                "Checklist for employee %d on %s already present, kept",
                checklist.employee_id, checklist.checklist_date,
            )
        return self.get_checklist(checklist.employee_id, checklist.checklist_date)

    def upsert_checklist(self, checklist: DailyChecklist) -> DailyChecklist:
        """Insert, or replace the items of the existing (employee, date) row."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO daily_checklists
                    (employee_id, checklist_date, items, total_count, done_count, source)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(employee_id, checklist_date) DO UPDATE SET
                    items = excluded.items,
                    total_count = excluded.total_count,
                    done_count = excluded.done_count,
                    source = excluded.source
                """,
                self._params(checklist),
            )
        logger.info(
            "Checklist saved for employee %d on %s: %d/%d done",
            checklist.employee_id, checklist.checklist_date,
            checklist.done_count, checklist.total_count,
        )
        return self.get_checklist(checklist.employee_id, checklist.checklist_date)

    def update_items(self, checklist: DailyChecklist) -> DailyChecklist:
        """Rewrite the items of an existing checklist, keeping its source."""
        employee_id, day, items_json, total, done, _source = self._params(checklist)
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE daily_checklists
                SET items = ?, total_count = ?, done_count = ?
                WHERE employee_id = ? AND checklist_date = ?
                """,
                (items_json, total, done, employee_id, day),
            )
        if cursor.rowcount == 0:
            raise ValueError(f"No checklist for employee {employee_id} on {day}")
        return self.get_checklist(checklist.employee_id, checklist.checklist_date)


class ReminderDB(_SQLiteStore):
    """One-shot reminders. A row is claimed (is_sent 0 -> 1) before delivery."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS reminders (
                    id            INTEGER PRIMARY KEY AUTOINCREMENT,
                    chat_id       TEXT    NOT NULL,
                    reminder_time TEXT    NOT NULL,
                    content       TEXT    NOT NULL,
                    is_sent       INTEGER NOT NULL DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS monthly_reminders (
                    id           INTEGER PRIMARY KEY AUTOINCREMENT,
                    title        TEXT    NOT NULL,
                    day_of_month INTEGER NOT NULL,
                    active       INTEGER NOT NULL DEFAULT 1
                )
            """)
        logger.debug("Reminders table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_reminder(row: sqlite3.Row) -> PersonalReminder:
        return PersonalReminder(
            id=row["id"],
            chat_id=row["chat_id"],
            reminder_time=_from_db(row["reminder_time"]),
            content=row["content"],
            is_sent=bool(row["is_sent"]),
        )

    def add_reminder(self, chat_id: str, reminder_time: datetime, content: str) -> PersonalReminder:
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO reminders (chat_id, reminder_time, content, is_sent) VALUES (?, ?, ?, 0)",
                (str(chat_id), _to_db(reminder_time), content),
            )
            reminder_id = cursor.lastrowid
        reminder = PersonalReminder(
            id=reminder_id,
            chat_id=str(chat_id),
            reminder_time=to_utc(reminder_time),
            content=content,
        )
        logger.info("Reminder #%d set for %s at %s", reminder_id, chat_id, reminder.reminder_time)
        return reminder

    def get_reminder(self, reminder_id: int) -> PersonalReminder | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM reminders WHERE id = ?", (reminder_id,)).fetchone()
        return self._row_to_reminder(row) if row else None

    def due_unsent(self, now: datetime) -> list[PersonalReminder]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM reminders
                WHERE is_sent = 0 AND reminder_time <= ?
                ORDER BY reminder_time, id
                """,
                (_to_db(now),),
            ).fetchall()
        return [self._row_to_reminder(r) for r in rows]

    def claim(self, reminder_id: int) -> bool:
        """Flip is_sent 0 -> 1. Only the caller that gets True may deliver."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE reminders SET is_sent = 1 WHERE id = ? AND is_sent = 0",
                (reminder_id,),
            )
        return cursor.rowcount == 1

    # --- monthly reminders -------------------------------------------------

    @staticmethod
    def _row_to_monthly(row: sqlite3.Row) -> MonthlyReminder:
        return MonthlyReminder(
            id=row["id"],
            title=row["title"],
            day_of_month=row["day_of_month"],
            active=bool(row["active"]),
        )

    def add_monthly_reminder(self, title: str, day_of_month: int) -> MonthlyReminder:
        title = (title or "").strip()
        if not title:
            raise ValueError("Monthly reminder needs a title")
        if not 1 <= day_of_month <= 31:
            raise ValueError(f"Day of month out of range: {day_of_month}")
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO monthly_reminders (title, day_of_month, active) VALUES (?, ?, 1)",
                (title, day_of_month),
            )
            reminder_id = cursor.lastrowid
        logger.info("Monthly reminder #%d '%s' on day %d", reminder_id, title, day_of_month)
        return MonthlyReminder(id=reminder_id, title=title, day_of_month=day_of_month)

    def list_monthly_reminders(self, active_only: bool = True) -> list[MonthlyReminder]:
        query = "SELECT * FROM monthly_reminders"
        if active_only:
            query += " WHERE active = 1"
        query += " ORDER BY day_of_month, id"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_monthly(r) for r in rows]

    def deactivate_monthly_reminder(self, reminder_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE monthly_reminders SET active = 0 WHERE id = ? AND active = 1",
                (reminder_id,),
            )
        removed = cursor.rowcount > 0
        if removed:
            logger.info("Monthly reminder #%d removed", reminder_id)
        return removed


class MessageLogDB(_SQLiteStore):
    """Logged conversation messages, the only state the throttle reads."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id         INTEGER PRIMARY KEY AUTOINCREMENT,
                    chat_id    TEXT    NOT NULL,
                    author_id  TEXT,
                    text       TEXT    NOT NULL,
                    created_at TEXT    NOT NULL,
                    is_replied INTEGER NOT NULL DEFAULT 0,
                    importance TEXT    NOT NULL DEFAULT 'general',
                    note       TEXT    NOT NULL DEFAULT ''
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_chat_time ON messages (chat_id, created_at)"
            )
        logger.debug("Message log initialized at %s", self._db_path)

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> ConversationMessage:
        return ConversationMessage(
            id=row["id"],
            chat_id=row["chat_id"],
            author_id=row["author_id"],
            text=row["text"],
            created_at=_from_db(row["created_at"]),
            is_replied=bool(row["is_replied"]),
            importance=row["importance"],
            note=row["note"],
        )

    def append(self, message: ConversationMessage) -> ConversationMessage:
        """Store a message (text truncated) and return it with its id."""
        text = (message.text or "")[:MAX_MESSAGE_LENGTH]
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO messages
                    (chat_id, author_id, text, created_at, is_replied, importance, note)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(message.chat_id),
                    message.author_id,
                    text,
                    _to_db(message.created_at),
                    int(message.is_replied),
                    message.importance,
                    message.note,
                ),
            )
            message_id = cursor.lastrowid
        return replace(
            message,
            id=message_id,
            chat_id=str(message.chat_id),
            text=text,
            created_at=to_utc(message.created_at),
        )

    def recent(self, chat_id: str, since: datetime) -> list[ConversationMessage]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM messages WHERE chat_id = ? AND created_at >= ?
                ORDER BY created_at, id
                """,
                (str(chat_id), _to_db(since)),
            ).fetchall()
        return [self._row_to_message(r) for r in rows]

    def recent_all(self, since: datetime) -> list[ConversationMessage]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM messages WHERE created_at >= ? ORDER BY created_at, id",
                (_to_db(since),),
            ).fetchall()
        return [self._row_to_message(r) for r in rows]

    def mark_replied_before(self, chat_id: str, before: datetime) -> int:
        """Mark every unreplied message earlier than `before` as replied."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE messages SET is_replied = 1
                WHERE chat_id = ? AND created_at < ? AND is_replied = 0
                """,
                (str(chat_id), _to_db(before)),
            )
        if cursor.rowcount:
            logger.info("Marked %d messages replied in %s", cursor.rowcount, chat_id)
        return cursor.rowcount

    def set_importance(self, message_id: int, importance: str, note: str = "") -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE messages SET importance = ?, note = ? WHERE id = ?",
                (importance, note, message_id),
            )

    def messages_between(self, start: datetime, end: datetime) -> list[ConversationMessage]:
        """Messages with start <= created_at < end, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM messages WHERE created_at >= ? AND created_at < ?
                ORDER BY created_at, id
                """,
                (_to_db(start), _to_db(end)),
            ).fetchall()
        return [self._row_to_message(r) for r in rows]

    def prune_before(self, before: datetime) -> int:
        """Delete every message older than `before`. Returns the number removed."""
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM messages WHERE created_at < ?", (_to_db(before),),
            )
        logger.info("Pruned %d logged messages before %s", cursor.rowcount, before)
        return cursor.rowcount
