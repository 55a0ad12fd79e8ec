"""
OpsDesk Assistant — Command Dispatcher.

Routes one inbound chat message to a task-tracking action:
classify text -> gate by conversation role -> act on the stores -> return a
`DispatchResult` for the transport to render.

Role gating:
- the boss identity is never dispatched (their messages only count as staff
  replies for the notification throttle);
- customer conversations accept nothing, and the classifier is not called;
- employee conversations accept complete/query/progress, always scoped to
  the bound employee;
- manager conversations accept every intent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable

from opsdesk.core.checklist import (
    CARRY_OVER_TAG,
    ChecklistReconciler,
    best_match_index,
    format_checklist,
    looks_like_checklist,
    unfinished_items,
)
from opsdesk.core.classifier import Intent, ParsedCommand, classify
from opsdesk.core.clock import (
    DEFAULT_OFFSET_HOURS,
    civil_day_bounds,
    civil_today,
    format_civil,
)
from opsdesk.core.recurrence import due_tasks, infer_frequency, outstanding_tasks
from opsdesk.core.time_resolver import resolve_expression
from opsdesk.data.models import (
    FREQUENCIES,
    ROLE_CUSTOMER,
    ROLE_EMPLOYEE,
    ROLE_MANAGER,
    ChecklistItem,
    Conversation,
    DailyChecklist,
    Employee,
    Task,
)

if TYPE_CHECKING:
    from opsdesk.ports.notification_port import NotificationPort
    from opsdesk.ports.repository_port import (
        ChecklistStore,
        DirectoryStore,
        ReminderStore,
        TaskStore,
    )

logger = logging.getLogger(__name__)

ClassifyFn = Callable[..., Awaitable[ParsedCommand]]

_CLARIFY_TASK = "找不到對應的任務，可以說清楚一點嗎？"

EMPLOYEE_INTENTS = frozenset({
    Intent.COMPLETE_TASK,
    Intent.QUERY_TASKS,
    Intent.QUERY_PROGRESS,
})


# ---------------------------------------------------------------------------
# Response types
# ---------------------------------------------------------------------------


class ResultKind(Enum):
    SUCCESS = "success"
    QUERY_RESULT = "query_result"
    ERROR = "error"          # not found, delivery failed
    CLARIFY = "clarify"      # ambiguous or unmatched report
    NO_ACTION = "no_action"  # gated out, unknown intent, missing slots, repeat report


@dataclass
class DispatchResult:
    kind: ResultKind
    message: str = ""
    intent: Intent | None = None

    @property
    def should_reply(self) -> bool:
        return bool(self.message)


def _no_action(intent: Intent | None = None) -> DispatchResult:
    return DispatchResult(ResultKind.NO_ACTION, "", intent)


def _strip_carry_over(text: str) -> str:
    return text.replace(CARRY_OVER_TAG, "").strip()


@dataclass
class Progress:
    employee: Employee
    done: int
    total: int
    from_checklist: bool


def employee_progress(
    tasks: TaskStore,
    checklists: ChecklistStore,
    employee: Employee,
    day: date,
    offset_hours: int = DEFAULT_OFFSET_HOURS,
) -> Progress:
    """Completed/total for one employee on one civil date.

    Today's checklist is authoritative when present; otherwise the count is
    due tasks with a completion record that day.
    """
    checklist = checklists.get_checklist(employee.id, day)
    if checklist is not None:
        return Progress(employee, checklist.done_count, checklist.total_count, True)

    due = due_tasks(tasks.list_tasks(employee.id), day)
    start, end = civil_day_bounds(day, offset_hours)
    records = tasks.records_between(start, end, employee.id)
    outstanding = outstanding_tasks(due, records, day, offset_hours)
    return Progress(employee, len(due) - len(outstanding), len(due), False)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class CommandDispatcher:
    """Executes classified commands against the stores."""

    def __init__(
        self,
        directory: DirectoryStore,
        tasks: TaskStore,
        checklists: ChecklistStore,
        reminders: ReminderStore,
        notifier: NotificationPort,
        classify_fn: ClassifyFn = classify,
        boss_id: str = "",
        offset_hours: int = DEFAULT_OFFSET_HOURS,
        default_reminder_hour: int = 9,
        default_meeting_hour: int = 14,
        meeting_link: str = "",
    ) -> None:
        self._directory = directory
        self._tasks = tasks
        self._checklists = checklists
        self._reminders = reminders
        self._notifier = notifier
        self._classify = classify_fn
        self._boss_id = boss_id
        self._offset = offset_hours
        self._default_reminder_hour = default_reminder_hour
        self._default_meeting_hour = default_meeting_hour
        self._meeting_link = meeting_link
        self._reconciler = ChecklistReconciler(checklists, tasks)

    async def handle(
        self,
        text: str,
        conversation: Conversation | None,
        author_id: str | None,
        now: datetime,
    ) -> DispatchResult:
        """Process one message. Returns NO_ACTION with no text when nothing applies."""
        text = (text or "").strip()
        if not text:
            return _no_action()
        if self._boss_id and author_id == self._boss_id:
            logger.debug("Message from boss identity not dispatched")
            return _no_action()
        if conversation is None:
            logger.debug("Message from unregistered conversation ignored")
            return _no_action()
        if conversation.role == ROLE_CUSTOMER:
            return _no_action()

        today = civil_today(now, self._offset)

        bound: Employee | None = None
        if conversation.role == ROLE_EMPLOYEE:
            if conversation.employee_id is None:
                logger.warning("Employee conversation %s has no bound employee", conversation.chat_id)
                return _no_action()
            bound = self._directory.get_employee(conversation.employee_id)
            if bound is None:
                logger.warning("Bound employee %s not found", conversation.employee_id)
                return _no_action()
            if looks_like_checklist(text):
                return self._save_posted_checklist(bound, today, text)

        parsed = await self._classify(text, conversation.role, now, offset_hours=self._offset)
        intent = parsed.intent
        if intent == Intent.UNKNOWN:
            return _no_action(intent)
        if conversation.role == ROLE_EMPLOYEE and intent not in EMPLOYEE_INTENTS:
            logger.info("Intent %s not allowed in employee conversation", intent.value)
            return _no_action(intent)
        if conversation.role not in (ROLE_EMPLOYEE, ROLE_MANAGER):
            return _no_action(intent)

        logger.info("Dispatching %s from %s conversation %s", intent.value, conversation.role, conversation.chat_id)

        if intent == Intent.ADD_TASK:
            result = self._add_task(parsed)
        elif intent == Intent.COMPLETE_TASK:
            result = self._complete_task(parsed, bound, text, today, now)
        elif intent == Intent.QUERY_TASKS:
            result = self._query_tasks(parsed, bound, today)
        elif intent == Intent.QUERY_PROGRESS:
            result = self._query_progress(parsed, bound, today)
        elif intent == Intent.CANCEL_RECORD:
            result = self._cancel_record(parsed)
        elif intent == Intent.DELETE_TASK:
            result = self._delete_task(parsed)
        elif intent == Intent.UPDATE_TASK:
            result = self._update_task(parsed)
        elif intent == Intent.SET_REMINDER:
            result = self._set_reminder(parsed, conversation, text, now)
        elif intent == Intent.SCHEDULE_MEETING:
            result = self._schedule_meeting(parsed, now)
        elif intent == Intent.SEND_MESSAGE:
            result = await self._send_message(parsed)
        else:
            result = _no_action()

        result.intent = intent
        return result

    # --- helpers -----------------------------------------------------------

    def _resolve_employee(
        self, parsed: ParsedCommand, bound: Employee | None,
    ) -> Employee | DispatchResult | None:
        """Bound employee, else the named one. None when no name was given."""
        if bound is not None:
            return bound
        if not parsed.employee_name:
            return None
        employee = self._directory.find_employee(parsed.employee_name)
        if employee is None:
            return DispatchResult(ResultKind.ERROR, f"找不到員工「{parsed.employee_name}」")
        return employee

    def _day_records(self, employee_id: int, day: date):
        start, end = civil_day_bounds(day, self._offset)
        return self._tasks.records_between(start, end, employee_id)

    def _save_posted_checklist(self, employee: Employee, day: date, text: str) -> DispatchResult:
        checklist = self._reconciler.save_posted(employee.id, day, text)
        if checklist is None:
            return _no_action()
        logger.info("Checklist posted by %s: %d items", employee.name, checklist.total_count)
        return DispatchResult(
            ResultKind.SUCCESS,
            f"✅ 已記錄今日清單\n{format_checklist(checklist)}",
        )

    # --- intents -----------------------------------------------------------

    def _add_task(self, parsed: ParsedCommand) -> DispatchResult:
        if not parsed.employee_name or not parsed.task_name:
            return _no_action()
        employee = self._directory.find_employee(parsed.employee_name)
        if employee is None:
            return DispatchResult(ResultKind.ERROR, f"找不到員工「{parsed.employee_name}」")

        detail = parsed.frequency_detail or ""
        frequency = parsed.frequency if parsed.frequency in FREQUENCIES else infer_frequency(detail)
        task = self._tasks.add_task(
            employee_id=employee.id,
            task_name=parsed.task_name,
            client_name=parsed.client_name or "",
            frequency=frequency,
            frequency_detail=detail,
        )
        return DispatchResult(
            ResultKind.SUCCESS,
            f"✅ 已新增任務！\n👤 {employee.name}\n📋 {task.label}\n🔄 {detail or frequency}",
        )

    def _complete_task(
        self,
        parsed: ParsedCommand,
        bound: Employee | None,
        text: str,
        today: date,
        now: datetime,
    ) -> DispatchResult:
        employee = self._resolve_employee(parsed, bound)
        if employee is None:
            return _no_action()
        if isinstance(employee, DispatchResult):
            return employee

        report = f"{parsed.task_name} {text}" if parsed.task_name else text
        active_tasks = self._tasks.list_tasks(employee.id)
        labels = [task.label for task in active_tasks]

        checklist, item = self._reconciler.complete(employee.id, today, report)
        if checklist is not None:
            return self._complete_checklist_item(employee, checklist, item, report, active_tasks, now)

        if not active_tasks:
            return DispatchResult(ResultKind.ERROR, "目前沒有任務")

        index = best_match_index(labels, report)
        if index is None:
            return DispatchResult(ResultKind.CLARIFY, _CLARIFY_TASK)

        task = active_tasks[index]
        self._tasks.add_record(task.id, employee.id, now)
        due = due_tasks(active_tasks, today)
        remaining = len(outstanding_tasks(due, self._day_records(employee.id, today), today, self._offset))
        return DispatchResult(
            ResultKind.SUCCESS,
            f"✅ 收到！已記錄「{task.label}」完成\n📊 今日還剩 {remaining} 項",
        )

    def _complete_checklist_item(
        self,
        employee: Employee,
        checklist: DailyChecklist,
        item: ChecklistItem | None,
        report: str,
        active_tasks: list[Task],
        now: datetime,
    ) -> DispatchResult:
        """Today's checklist decides the outcome; the task list is not consulted."""
        remaining = len(unfinished_items(checklist))
        if item is None:
            done_items = [i for i in checklist.items if i.done]
            index = best_match_index([i.text for i in done_items], report)
            if index is not None:
                done_text = _strip_carry_over(done_items[index].text)
                logger.info("Repeat report for done item '%s' ignored", done_text)
                return DispatchResult(
                    ResultKind.NO_ACTION,
                    f"👌「{done_text}」今天已經完成了\n📊 今日還剩 {remaining} 項",
                )
            return DispatchResult(ResultKind.CLARIFY, _CLARIFY_TASK)

        item_text = _strip_carry_over(item.text)
        index = best_match_index([task.label for task in active_tasks], item_text)
        if index is not None:
            self._tasks.add_record(active_tasks[index].id, employee.id, now)
        return DispatchResult(
            ResultKind.SUCCESS,
            f"✅ 收到！已完成「{item_text}」\n📊 今日還剩 {remaining} 項",
        )

    def _describe_day(self, employee: Employee, day: date) -> str:
        checklist = self._checklists.get_checklist(employee.id, day)
        active_tasks = self._tasks.list_tasks(employee.id)
        lines = [f"👤 {employee.name}"]

        if checklist is not None:
            lines.append(format_checklist(checklist))
        else:
            due = due_tasks(active_tasks, day)
            if due:
                done_ids = {r.task_id for r in self._day_records(employee.id, day)}
                lines.append(f"📅 {day.month}/{day.day} 今日任務：")
                for i, task in enumerate(due, 1):
                    mark = "✅" if task.id in done_ids else "⬜"
                    lines.append(f"{i}. {mark} {task.label}")
            else:
                lines.append("今天沒有排定的任務")

        if active_tasks:
            lines.append("\n📋 任務清單：")
            for i, task in enumerate(active_tasks, 1):
                lines.append(f"{i}. {task.label} ({task.frequency_detail or task.frequency})")
        else:
            lines.append("目前沒有任務")
        return "\n".join(lines)

    def _query_tasks(
        self, parsed: ParsedCommand, bound: Employee | None, today: date,
    ) -> DispatchResult:
        employee = self._resolve_employee(parsed, bound)
        if isinstance(employee, DispatchResult):
            return employee
        employees = [employee] if employee is not None else self._directory.list_employees()
        if not employees:
            return DispatchResult(ResultKind.QUERY_RESULT, "目前沒有員工")
        message = "\n\n".join(self._describe_day(e, today) for e in employees)
        return DispatchResult(ResultKind.QUERY_RESULT, message)

    def _query_progress(
        self, parsed: ParsedCommand, bound: Employee | None, today: date,
    ) -> DispatchResult:
        employee = self._resolve_employee(parsed, bound)
        if isinstance(employee, DispatchResult):
            return employee
        employees = [employee] if employee is not None else self._directory.list_employees()
        if not employees:
            return DispatchResult(ResultKind.QUERY_RESULT, "目前沒有員工")

        lines = [f"📊 {today.month}/{today.day} 今日進度："]
        for e in employees:
            progress = employee_progress(self._tasks, self._checklists, e, today, self._offset)
            lines.append(f"• {e.name}：{progress.done}/{progress.total}")
        return DispatchResult(ResultKind.QUERY_RESULT, "\n".join(lines))

    def _cancel_record(self, parsed: ParsedCommand) -> DispatchResult:
        if not parsed.employee_name:
            return _no_action()
        employee = self._directory.find_employee(parsed.employee_name)
        if employee is None:
            return DispatchResult(ResultKind.ERROR, f"找不到員工「{parsed.employee_name}」")

        record = self._tasks.delete_latest_record(employee.id)
        if record is None:
            return DispatchResult(ResultKind.ERROR, f"{employee.name} 沒有完成記錄可以取消")
        task = self._tasks.get_task(record.task_id)
        label = task.label if task is not None else f"#{record.task_id}"
        return DispatchResult(ResultKind.SUCCESS, f"✅ 已取消「{label}」的完成記錄")

    def _find_named_task(self, parsed: ParsedCommand):
        employee = self._directory.find_employee(parsed.employee_name)
        if employee is None:
            return DispatchResult(ResultKind.ERROR, f"找不到員工「{parsed.employee_name}」")
        task = self._tasks.find_task(employee.id, parsed.task_name)
        if task is None:
            return DispatchResult(ResultKind.ERROR, f"找不到任務「{parsed.task_name}」")
        return task

    def _delete_task(self, parsed: ParsedCommand) -> DispatchResult:
        if not parsed.employee_name or not parsed.task_name:
            return _no_action()
        task = self._find_named_task(parsed)
        if isinstance(task, DispatchResult):
            return task
        self._tasks.deactivate_task(task.id)
        return DispatchResult(ResultKind.SUCCESS, f"✅ 已刪除「{task.label}」")

    def _update_task(self, parsed: ParsedCommand) -> DispatchResult:
        if not parsed.employee_name or not parsed.task_name or not parsed.frequency_detail:
            return _no_action()
        task = self._find_named_task(parsed)
        if isinstance(task, DispatchResult):
            return task
        detail = parsed.frequency_detail
        frequency = parsed.frequency if parsed.frequency in FREQUENCIES else infer_frequency(detail)
        updated = self._tasks.update_frequency(task.id, frequency, detail)
        return DispatchResult(
            ResultKind.SUCCESS,
            f"✅ 已修改「{updated.label}」\n🔄 新頻率：{detail}",
        )

    def _set_reminder(
        self, parsed: ParsedCommand, conversation: Conversation, text: str, now: datetime,
    ) -> DispatchResult:
        if not parsed.reminder_time:
            return _no_action()
        content = parsed.reminder_content or text
        resolution = resolve_expression(
            now, parsed.reminder_time, self._default_reminder_hour, self._offset,
        )
        if resolution.rule == "default":
            logger.info("Reminder time %r fell back to default hour", parsed.reminder_time)
        self._reminders.add_reminder(conversation.chat_id, resolution.instant, content)
        return DispatchResult(
            ResultKind.SUCCESS,
            f"⏰ 已設定提醒！\n📅 {format_civil(resolution.instant, self._offset)}\n📝 {content}",
        )

    def _schedule_meeting(self, parsed: ParsedCommand, now: datetime) -> DispatchResult:
        if not parsed.target_group:
            return _no_action()
        target = self._directory.find_conversation(parsed.target_group)
        if target is None:
            return DispatchResult(ResultKind.ERROR, f"找不到群組「{parsed.target_group}」")

        expression = " ".join(p for p in (parsed.meeting_date, parsed.reminder_time) if p)
        resolution = resolve_expression(
            now, expression, self._default_meeting_hour, self._offset,
        )
        when = format_civil(resolution.instant, self._offset)
        content = f"【開會提醒】開會囉！\n⏰ 時間：{when}"
        if self._meeting_link:
            content += f"\n🔗 會議連結：{self._meeting_link}"
        self._reminders.add_reminder(target.chat_id, resolution.instant, content)

        message = f"✅ 已設定會議提醒！\n👥 {target.name}\n📅 {when}"
        if self._meeting_link:
            message += f"\n🔗 {self._meeting_link}"
        return DispatchResult(ResultKind.SUCCESS, message)

    async def _send_message(self, parsed: ParsedCommand) -> DispatchResult:
        if not parsed.target_group or not parsed.message_content:
            return _no_action()
        target = self._directory.find_conversation(parsed.target_group)
        if target is None:
            return DispatchResult(ResultKind.ERROR, f"找不到群組「{parsed.target_group}」")
        try:
            await self._notifier.send_message(target.chat_id, parsed.message_content)
        except Exception as exc:
            logger.error("Failed to send message to %s: %s", target.chat_id, exc)
            return DispatchResult(ResultKind.ERROR, "發送失敗，請稍後再試")
        return DispatchResult(ResultKind.SUCCESS, f"✅ 已發送到「{target.name}」")
