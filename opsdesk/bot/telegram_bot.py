"""
OpsDesk Assistant — Telegram Bot.

The bot sits in a manager chat, one chat per employee, and the customer
chats. Every text message in a registered chat is logged for the
notification throttle and then handed to the command dispatcher. Daily jobs
(morning reminder, daily checklists, evening reminder, daily report, monthly
reminders), the monthly customer summary and the reminder/unreplied sweeps
run on the application's JobQueue in the fixed civil offset.

Admin commands (/register, /employee, /monthly) silently ignore non-admins.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from datetime import time as dt_time
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine

from telegram import Update
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from opsdesk.config import settings
from opsdesk.core.checklist import ChecklistReconciler
from opsdesk.core.clock import civil_now, civil_tz
from opsdesk.core.dispatcher import CommandDispatcher
from opsdesk.core.message_log import MessageIntake
from opsdesk.data.db import ChecklistDB, DirectoryDB, MessageLogDB, ReminderDB, TaskDB
from opsdesk.data.models import ROLE_EMPLOYEE, ROLES

if TYPE_CHECKING:
    from opsdesk.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores admin commands from non-admin users."""

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if user is None or user.id not in settings.ALLOWED_USER_IDS:
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized admin command from user_id=%s", uid)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


def _chat_name(update: Update) -> str:
    chat = update.effective_chat
    return chat.title or chat.full_name or str(chat.id)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start — welcome message."""
    await update.message.reply_text(
        "👋 我是 OpsDesk 任務助理！\n\n"
        "• 在員工群回報完成的工作，例如「午餐買好了」\n"
        "• 貼上 1. 2. 3. 格式的清單作為今日工作清單\n"
        "• 在主管群新增任務、設定提醒、安排會議\n\n"
        "輸入 /help 查看所有指令。"
    )


async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help — list available commands."""
    await update.message.reply_text(
        "可用指令：\n"
        "/chatid — 顯示這個聊天的 ID\n"
        "/register <manager|employee|customer> [員工名稱] — 登記這個聊天（管理員）\n"
        "/employee <名稱> — 新增員工（管理員）\n"
        "/monthly [<日> <內容> | del <編號>] — 每月提醒（管理員）\n"
        "/help — 顯示這個訊息"
    )


async def cmd_chatid(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /chatid — reply with the current chat id."""
    await update.message.reply_text(f"Chat ID: {update.effective_chat.id}")


@authorized_only
async def cmd_register(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /register <role> [employee name] — tag this chat with a role."""
    directory: DirectoryDB = context.bot_data["directory"]
    args = context.args or []
    if not args or args[0].lower() not in ROLES:
        await update.message.reply_text("用法：/register <manager|employee|customer> [員工名稱]")
        return

    role = args[0].lower()
    employee_id = None
    if role == ROLE_EMPLOYEE:
        name = " ".join(args[1:]).strip()
        if not name:
            await update.message.reply_text("請提供員工名稱：/register employee <名稱>")
            return
        employee = directory.find_employee(name)
        if employee is None:
            await update.message.reply_text(f"找不到員工「{name}」，請先用 /employee 新增")
            return
        employee_id = employee.id

    try:
        conversation = directory.register_conversation(
            str(update.effective_chat.id), _chat_name(update), role, employee_id,
        )
    except Exception as exc:
        logger.error("Failed to register chat %s: %s", update.effective_chat.id, exc)
        await update.message.reply_text("登記失敗，請稍後再試")
        return
    await update.message.reply_text(f"✅ 已登記「{conversation.name}」為 {role}")


@authorized_only
async def cmd_employee(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /employee <name> — add (or reactivate) an employee."""
    directory: DirectoryDB = context.bot_data["directory"]
    name = " ".join(context.args or []).strip()
    if not name:
        await update.message.reply_text("用法：/employee <名稱>")
        return
    try:
        employee = directory.add_employee(name)
    except Exception as exc:
        logger.error("Failed to add employee %s: %s", name, exc)
        await update.message.reply_text("新增失敗，請稍後再試")
        return
    await update.message.reply_text(f"✅ 已新增員工「{employee.name}」")


@authorized_only
async def cmd_monthly(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /monthly: list, /monthly <day> <title> adds, /monthly del <id> removes."""
    reminders: ReminderDB = context.bot_data["reminders"]
    args = context.args or []

    if not args:
        items = reminders.list_monthly_reminders()
        if not items:
            await update.message.reply_text("目前沒有每月提醒")
            return
        lines = [f"#{r.id} 每月 {r.day_of_month} 號：{r.title}" for r in items]
        await update.message.reply_text("📅 每月提醒：\n" + "\n".join(lines))
        return

    if args[0].lower() == "del":
        if len(args) < 2 or not args[1].isdigit():
            await update.message.reply_text("用法：/monthly del <編號>")
            return
        if reminders.deactivate_monthly_reminder(int(args[1])):
            await update.message.reply_text(f"🗑️ 已刪除每月提醒 #{args[1]}")
        else:
            await update.message.reply_text(f"找不到每月提醒 #{args[1]}")
        return

    title = " ".join(args[1:]).strip()
    if not args[0].isdigit() or not title:
        await update.message.reply_text("用法：/monthly <日> <內容>")
        return
    try:
        reminder = reminders.add_monthly_reminder(title, int(args[0]))
    except ValueError as exc:
        logger.warning("Rejected monthly reminder %r: %s", args, exc)
        await update.message.reply_text("日期需在 1 到 31 之間")
        return
    await update.message.reply_text(
        f"✅ 已新增每月提醒 #{reminder.id}：每月 {reminder.day_of_month} 號{reminder.title}"
    )


# ---------------------------------------------------------------------------
# Message handlers
# ---------------------------------------------------------------------------


async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle plain text — log it, run the throttle, then dispatch."""
    message = update.effective_message
    if message is None or not message.text:
        return

    directory: DirectoryDB = context.bot_data["directory"]
    intake: MessageIntake = context.bot_data["intake"]
    dispatcher: CommandDispatcher = context.bot_data["dispatcher"]

    conversation = directory.get_conversation(str(update.effective_chat.id))
    if conversation is None:
        logger.debug("Ignoring message from unregistered chat %s", update.effective_chat.id)
        return

    user = update.effective_user
    author_id = str(user.id) if user else None
    now = civil_now(settings.UTC_OFFSET_HOURS)

    try:
        await intake.record(conversation, author_id, message.text, now)
    except Exception as exc:
        logger.error("Message intake failed for chat %s: %s", conversation.chat_id, exc)

    try:
        result = await dispatcher.handle(message.text, conversation, author_id, now)
    except Exception as exc:
        logger.error("Dispatch failed for chat %s: %s", conversation.chat_id, exc)
        await message.reply_text("系統錯誤，請稍後再試")
        return

    if result.should_reply:
        await message.reply_text(result.message)


# ---------------------------------------------------------------------------
# App builder
# ---------------------------------------------------------------------------


def build_app(
    notifier: NotificationPort | None = None,
    db_path: str | None = None,
) -> Application:
    """Build and configure the Telegram Application with all handlers and jobs.

    Args:
        notifier: Notification port implementation. Defaults to TelegramNotifier
                  (created from the bot instance after app is built).
        db_path: SQLite file. Defaults to settings.DATABASE_PATH.
    """
    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).build()

    if notifier is None:
        from opsdesk.adapters.telegram_notifier import TelegramNotifier
        notifier = TelegramNotifier(app.bot)

    directory = DirectoryDB(db_path)
    tasks = TaskDB(db_path)
    checklists = ChecklistDB(db_path)
    reminders = ReminderDB(db_path)
    message_log = MessageLogDB(db_path)

    dispatcher = CommandDispatcher(
        directory=directory,
        tasks=tasks,
        checklists=checklists,
        reminders=reminders,
        notifier=notifier,
        boss_id=settings.BOSS_USER_ID,
        offset_hours=settings.UTC_OFFSET_HOURS,
        default_reminder_hour=settings.DEFAULT_REMINDER_HOUR,
        default_meeting_hour=settings.DEFAULT_MEETING_HOUR,
        meeting_link=settings.MEETING_LINK,
    )
    intake = MessageIntake(
        log=message_log,
        directory=directory,
        notifier=notifier,
        staff_ids=settings.staff_ids,
        reply_window=timedelta(minutes=settings.REPLY_WINDOW_MINUTES),
        burst_window=timedelta(minutes=settings.BURST_WINDOW_MINUTES),
    )

    app.bot_data["notifier"] = notifier
    app.bot_data["directory"] = directory
    app.bot_data["tasks"] = tasks
    app.bot_data["checklists"] = checklists
    app.bot_data["reminders"] = reminders
    app.bot_data["message_log"] = message_log
    app.bot_data["dispatcher"] = dispatcher
    app.bot_data["intake"] = intake

    # Commands
    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("chatid", cmd_chatid))
    app.add_handler(CommandHandler("register", cmd_register))
    app.add_handler(CommandHandler("employee", cmd_employee))
    app.add_handler(CommandHandler("monthly", cmd_monthly))

    # Text messages (non-command)
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text))

    _setup_jobs(app)

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def _setup_jobs(app: Application) -> None:
    """Register the daily jobs and the periodic sweeps on the JobQueue."""
    from opsdesk.core import scheduler

    data = app.bot_data
    notifier = data["notifier"]
    directory = data["directory"]
    tasks = data["tasks"]
    checklists = data["checklists"]
    offset = settings.UTC_OFFSET_HOURS
    tz = civil_tz(offset)
    reconciler = ChecklistReconciler(checklists, tasks)

    async def _morning(context: ContextTypes.DEFAULT_TYPE) -> None:
        await scheduler.send_morning_reminder(notifier, directory)

    async def _daily_tasks(context: ContextTypes.DEFAULT_TYPE) -> None:
        await scheduler.send_daily_tasks(notifier, directory, reconciler, civil_now(offset), offset)

    async def _evening(context: ContextTypes.DEFAULT_TYPE) -> None:
        await scheduler.send_evening_reminder(
            notifier, directory, tasks, checklists, civil_now(offset), offset,
            settings.WEEKEND_EMPLOYEES,
        )

    async def _daily_report(context: ContextTypes.DEFAULT_TYPE) -> None:
        await scheduler.send_daily_report(
            notifier, directory, tasks, checklists, civil_now(offset), offset,
        )

    async def _monthly_reminders(context: ContextTypes.DEFAULT_TYPE) -> None:
        await scheduler.send_monthly_reminders(
            notifier, directory, data["reminders"], civil_now(offset), offset,
        )

    async def _monthly_summary(context: ContextTypes.DEFAULT_TYPE) -> None:
        await scheduler.send_monthly_summary(
            notifier, directory, data["message_log"], civil_now(offset),
            settings.staff_ids, offset,
        )

    async def _reminder_sweep(context: ContextTypes.DEFAULT_TYPE) -> None:
        await scheduler.deliver_due_reminders(
            notifier, data["reminders"], datetime.now(timezone.utc),
        )

    async def _unreplied_sweep(context: ContextTypes.DEFAULT_TYPE) -> None:
        await scheduler.send_unreplied_digest(
            notifier, directory, data["message_log"], datetime.now(timezone.utc),
            settings.staff_ids, timedelta(minutes=settings.REPLY_WINDOW_MINUTES),
        )

    daily_jobs = [
        (_morning, settings.MORNING_REMINDER_HOUR, "morning_reminder"),
        (_daily_tasks, settings.DAILY_TASKS_HOUR, "daily_tasks"),
        (_evening, settings.EVENING_REMINDER_HOUR, "evening_reminder"),
        (_daily_report, settings.DAILY_REPORT_HOUR, "daily_report"),
        (_monthly_reminders, settings.MONTHLY_REMINDER_HOUR, "monthly_reminders"),
    ]
    for callback, hour, name in daily_jobs:
        app.job_queue.run_daily(callback, time=dt_time(hour=hour, minute=0, tzinfo=tz), name=name)
        logger.info("Job %s scheduled at %02d:00 UTC%+d", name, hour, offset)

    app.job_queue.run_monthly(
        _monthly_summary,
        when=dt_time(hour=settings.MONTHLY_SUMMARY_HOUR, minute=0, tzinfo=tz),
        day=1,
        name="monthly_summary",
    )

    app.job_queue.run_repeating(
        _reminder_sweep, interval=settings.REMINDER_SWEEP_SECONDS, first=10, name="reminder_sweep",
    )
    app.job_queue.run_repeating(
        _unreplied_sweep,
        interval=settings.UNREPLIED_SWEEP_MINUTES * 60,
        first=60,
        name="unreplied_sweep",
    )


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting OpsDesk Assistant bot...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
