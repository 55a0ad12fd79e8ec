"""
OpsDesk Assistant — Scheduled jobs.

Morning reminder: ask every employee conversation for yesterday's report.
Daily tasks: build each employee's checklist (carry-over + due tasks) and post it.
Evening reminder: list what is still open, weekends skipped unless opted in.
Daily report: completed/total per employee to the manager conversations.
Reminder sweep: deliver due one-shot reminders, at most once each.
Unreplied sweep: digest of customer conversations still waiting.
Monthly reminders: manager reminders on (and the day before) a day of the month.
Monthly summary: LLM digest of last month's customer messages, then log pruning.

Each job loops over employees or conversations and isolates failures: one
broken send is logged and the loop continues. Jobs depend on the store and
notification protocols only; the Telegram bot registers them on its JobQueue.
"""

from __future__ import annotations

import calendar
import logging
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Awaitable, Callable, Iterable

from opsdesk.core.checklist import format_checklist, unfinished_items
from opsdesk.core.clock import DEFAULT_OFFSET_HOURS, civil_day_bounds, civil_today
from opsdesk.core.dispatcher import employee_progress
from opsdesk.core.llm import complete
from opsdesk.core.recurrence import due_tasks, outstanding_tasks
from opsdesk.core.throttle import DEFAULT_REPLY_WINDOW, find_unreplied, is_staff
from opsdesk.data.models import ROLE_CUSTOMER, ROLE_EMPLOYEE, ROLE_MANAGER

if TYPE_CHECKING:
    from opsdesk.core.checklist import ChecklistReconciler
    from opsdesk.data.models import MonthlyReminder
    from opsdesk.ports.notification_port import NotificationPort
    from opsdesk.ports.repository_port import (
        ChecklistStore,
        DirectoryStore,
        MessageLogStore,
        ReminderStore,
        TaskStore,
    )

logger = logging.getLogger(__name__)

MORNING_TEXT = "☀️ 早安！請回報昨日工作進度～"
UNREPLIED_LOOKBACK = timedelta(hours=24)
SUMMARY_SAMPLE_SIZE = 50

CompleteFn = Callable[..., Awaitable[str]]

_SUMMARY_PROMPT = """\
你是客服主管的助理。根據使用者提供的各客戶群組上個月訊息，產生簡潔的月報。

格式：
每個客戶一段：
📌 客戶名 - X則訊息
主要議題：XXX、XXX、XXX

最後一段：
💡 整體觀察（2-3句話）
"""


async def _broadcast(notifier: NotificationPort, chat_ids: Iterable[str], text: str) -> int:
    sent = 0
    for chat_id in chat_ids:
        try:
            await notifier.send_message(chat_id, text)
            sent += 1
        except Exception as exc:
            logger.error("Failed to send to %s: %s", chat_id, exc)
    return sent


# ---------------------------------------------------------------------------
# Employee jobs
# ---------------------------------------------------------------------------


async def send_morning_reminder(notifier: NotificationPort, directory: DirectoryStore) -> int:
    conversations = directory.list_conversations(ROLE_EMPLOYEE)
    sent = await _broadcast(notifier, [c.chat_id for c in conversations], MORNING_TEXT)
    logger.info("Morning reminder sent to %d employee conversations", sent)
    return sent


async def send_daily_tasks(
    notifier: NotificationPort,
    directory: DirectoryStore,
    reconciler: ChecklistReconciler,
    now: datetime,
    offset_hours: int = DEFAULT_OFFSET_HOURS,
) -> int:
    """Ensure today's checklist for every employee and post it to their conversation."""
    today = civil_today(now, offset_hours)
    posted = 0
    for employee in directory.list_employees():
        try:
            conversation = directory.conversation_for_employee(employee.id)
            if conversation is None:
                logger.debug("No conversation for employee %s, skipped", employee.name)
                continue
            checklist = reconciler.ensure_today(employee.id, today)
            if not checklist.items:
                continue
            await notifier.send_message(conversation.chat_id, format_checklist(checklist))
            posted += 1
        except Exception as exc:
            logger.error("Daily tasks failed for %s: %s", employee.name, exc)
    logger.info("Daily checklists posted for %d employees", posted)
    return posted


async def send_evening_reminder(
    notifier: NotificationPort,
    directory: DirectoryStore,
    tasks: TaskStore,
    checklists: ChecklistStore,
    now: datetime,
    offset_hours: int = DEFAULT_OFFSET_HOURS,
    weekend_employees: Iterable[str] = (),
) -> int:
    """Remind employees of what is still open today."""
    today = civil_today(now, offset_hours)
    is_weekend = today.weekday() >= 5
    weekend_names = set(weekend_employees)
    start, end = civil_day_bounds(today, offset_hours)
    reminded = 0

    for employee in directory.list_employees():
        if is_weekend and employee.name not in weekend_names:
            continue
        try:
            conversation = directory.conversation_for_employee(employee.id)
            if conversation is None:
                continue

            checklist = checklists.get_checklist(employee.id, today)
            if checklist is not None:
                pending = [item.text for item in unfinished_items(checklist)]
            else:
                due = due_tasks(tasks.list_tasks(employee.id), today)
                records = tasks.records_between(start, end, employee.id)
                pending = [t.label for t in outstanding_tasks(due, records, today, offset_hours)]

            if not pending:
                continue
            lines = [f"⏰ {employee.name}，今天還有任務未完成：", ""]
            lines.extend(f"• {text}" for text in pending)
            await notifier.send_message(conversation.chat_id, "\n".join(lines))
            reminded += 1
        except Exception as exc:
            logger.error("Evening reminder failed for %s: %s", employee.name, exc)

    logger.info("Evening reminder sent to %d employees", reminded)
    return reminded


# ---------------------------------------------------------------------------
# Manager jobs
# ---------------------------------------------------------------------------


def build_daily_report(
    directory: DirectoryStore,
    tasks: TaskStore,
    checklists: ChecklistStore,
    now: datetime,
    offset_hours: int = DEFAULT_OFFSET_HOURS,
) -> str:
    today = civil_today(now, offset_hours)
    lines = [f"📊 {today.isoformat()} 每日報表", ""]
    employees = directory.list_employees()
    if not employees:
        lines.append("目前沒有員工")
    for employee in employees:
        try:
            progress = employee_progress(tasks, checklists, employee, today, offset_hours)
        except Exception as exc:
            logger.error("Daily report: progress failed for %s: %s", employee.name, exc)
            lines.append(f"👤 {employee.name}：(無法取得)")
            continue
        rate = round(progress.done * 100 / progress.total) if progress.total else 0
        lines.append(f"👤 {employee.name}：{progress.done}/{progress.total} ({rate}%)")
    return "\n".join(lines)


async def send_daily_report(
    notifier: NotificationPort,
    directory: DirectoryStore,
    tasks: TaskStore,
    checklists: ChecklistStore,
    now: datetime,
    offset_hours: int = DEFAULT_OFFSET_HOURS,
) -> int:
    managers = directory.list_conversations(ROLE_MANAGER)
    if not managers:
        logger.warning("Daily report skipped: no manager conversation")
        return 0
    report = build_daily_report(directory, tasks, checklists, now, offset_hours)
    return await _broadcast(notifier, [m.chat_id for m in managers], report)


# ---------------------------------------------------------------------------
# Sweeps
# ---------------------------------------------------------------------------


async def deliver_due_reminders(
    notifier: NotificationPort, reminders: ReminderStore, now: datetime,
) -> int:
    """Send every due reminder. A reminder is claimed before it is sent, so a
    failed send is not retried."""
    delivered = 0
    for reminder in reminders.due_unsent(now):
        if not reminders.claim(reminder.id):
            logger.debug("Reminder #%d already claimed", reminder.id)
            continue
        try:
            await notifier.send_message(reminder.chat_id, reminder.content)
            delivered += 1
            logger.info("Reminder #%d delivered to %s", reminder.id, reminder.chat_id)
        except Exception as exc:
            logger.error("Reminder #%d delivery failed: %s", reminder.id, exc)
    return delivered


async def send_unreplied_digest(
    notifier: NotificationPort,
    directory: DirectoryStore,
    log: MessageLogStore,
    now: datetime,
    staff_ids: set[str],
    reply_window: timedelta = DEFAULT_REPLY_WINDOW,
) -> list[str]:
    """Tell the managers which customer conversations are still waiting."""
    customers = {c.chat_id: c for c in directory.list_conversations(ROLE_CUSTOMER)}
    if not customers:
        return []

    history = [m for m in log.recent_all(now - UNREPLIED_LOOKBACK) if m.chat_id in customers]
    waiting = find_unreplied(history, staff_ids, now, reply_window)
    if not waiting:
        return []

    hours = reply_window.total_seconds() / 3600
    lines = [f"⚠️ 以下群組超過 {hours:g} 小時有未回覆訊息：", ""]
    lines.extend(f"• {customers[chat_id].name}" for chat_id in waiting)

    managers = directory.list_conversations(ROLE_MANAGER)
    await _broadcast(notifier, [m.chat_id for m in managers], "\n".join(lines))
    logger.info("Unreplied digest: %d conversations waiting", len(waiting))
    return waiting


# ---------------------------------------------------------------------------
# Monthly jobs
# ---------------------------------------------------------------------------


def _effective_day(day_of_month: int, on: date) -> int:
    """Clamp a day-of-month to the month of `on`, so "31" fires on the last day."""
    return min(day_of_month, calendar.monthrange(on.year, on.month)[1])


def monthly_reminder_lines(reminders: Iterable[MonthlyReminder], today: date) -> list[str]:
    """Reminder lines for today and a heads-up for tomorrow."""
    tomorrow = today + timedelta(days=1)
    lines: list[str] = []
    for reminder in reminders:
        if _effective_day(reminder.day_of_month, today) == today.day:
            lines.append(f"📌 今天要{reminder.title}！")
        if _effective_day(reminder.day_of_month, tomorrow) == tomorrow.day:
            lines.append(f"🔔 明天記得{reminder.title}")
    return lines


async def send_monthly_reminders(
    notifier: NotificationPort,
    directory: DirectoryStore,
    reminders: ReminderStore,
    now: datetime,
    offset_hours: int = DEFAULT_OFFSET_HOURS,
) -> list[str]:
    lines = monthly_reminder_lines(reminders.list_monthly_reminders(), civil_today(now, offset_hours))
    if not lines:
        return []
    managers = directory.list_conversations(ROLE_MANAGER)
    if not managers:
        logger.warning("Monthly reminders skipped: no manager conversation")
        return lines
    await _broadcast(notifier, [m.chat_id for m in managers], "\n".join(lines))
    logger.info("Monthly reminders sent: %d lines", len(lines))
    return lines


def previous_month_bounds(
    today: date, offset_hours: int = DEFAULT_OFFSET_HOURS,
) -> tuple[date, datetime, datetime]:
    """First civil day of last month and the [start, end) UTC instants covering it."""
    this_month = today.replace(day=1)
    last_month = (this_month - timedelta(days=1)).replace(day=1)
    start, _ = civil_day_bounds(last_month, offset_hours)
    end, _ = civil_day_bounds(this_month, offset_hours)
    return last_month, start, end


def build_summary_prompt(month_label: str, grouped: dict[str, list[str]]) -> str:
    parts = [f"以下是各客戶群組 {month_label} 的訊息：", ""]
    for name, texts in grouped.items():
        parts.append(f"【{name}】共 {len(texts)} 則訊息：")
        parts.extend(f"- {text}" for text in texts[:SUMMARY_SAMPLE_SIZE])
        if len(texts) > SUMMARY_SAMPLE_SIZE:
            parts.append(f"（還有 {len(texts) - SUMMARY_SAMPLE_SIZE} 則...）")
        parts.append("")
    return "\n".join(parts)


async def send_monthly_summary(
    notifier: NotificationPort,
    directory: DirectoryStore,
    log: MessageLogStore,
    now: datetime,
    staff_ids: set[str],
    offset_hours: int = DEFAULT_OFFSET_HOURS,
    complete_fn: CompleteFn = complete,
) -> str | None:
    """Summarise last month's customer messages for the managers, then prune
    the log up to the start of this month.

    Returns the text sent, or None when there was nothing to summarise.
    """
    today = civil_today(now, offset_hours)
    last_month, start, end = previous_month_bounds(today, offset_hours)
    month_label = f"{last_month.year}/{last_month.month}"

    customers = {c.chat_id: c.name for c in directory.list_conversations(ROLE_CUSTOMER)}
    grouped: dict[str, list[str]] = {}
    for message in log.messages_between(start, end):
        if message.chat_id not in customers or is_staff(message, staff_ids):
            continue
        grouped.setdefault(customers[message.chat_id], []).append(message.text)

    report = None
    if grouped:
        try:
            summary = await complete_fn(
                system=_SUMMARY_PROMPT,
                user_message=build_summary_prompt(month_label, grouped),
                max_tokens=1024,
            )
        except Exception as exc:
            logger.error("Monthly summary LLM call failed: %s", exc)
            summary = ""
        if not summary.strip():
            summary = "\n".join(f"📌 {name} - {len(texts)}則訊息" for name, texts in grouped.items())
        report = f"📊 {month_label} 客戶訊息月報\n\n{summary.strip()}"

        managers = directory.list_conversations(ROLE_MANAGER)
        await _broadcast(notifier, [m.chat_id for m in managers], report)
        logger.info(
            "Monthly summary for %s: %d conversations, %d messages",
            month_label, len(grouped), sum(len(t) for t in grouped.values()),
        )

    log.prune_before(end)
    return report
