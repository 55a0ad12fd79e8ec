"""Tests for opsdesk.bot.telegram_bot — Telegram bot handlers.

Tests the admin commands, authorization and the text message flow.
The stores are real temp-file SQLite; intake and dispatcher are mocked.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from opsdesk.bot.telegram_bot import (
    cmd_chatid,
    cmd_employee,
    cmd_monthly,
    cmd_register,
    handle_text,
)
from opsdesk.core.dispatcher import DispatchResult, ResultKind


def _make_update(text="", user_id=12345, chat_id=-100, chat_title="雅涵群"):
    """Create a mock Update with a text message."""
    update = MagicMock()
    update.effective_message.text = text
    update.effective_message.reply_text = AsyncMock()
    update.message.reply_text = AsyncMock()
    update.effective_user.id = user_id
    update.effective_chat.id = chat_id
    update.effective_chat.title = chat_title
    return update


def _make_context(directory, args=None, **bot_data):
    context = MagicMock()
    context.args = args or []
    context.bot_data = {"directory": directory, **bot_data}
    return context


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_non_admin_is_silently_ignored(self, directory_db):
        update = _make_update(user_id=999)
        context = _make_context(directory_db, args=["雅涵"])

        await cmd_employee(update, context)

        update.message.reply_text.assert_not_awaited()
        assert directory_db.list_employees() == []

    @pytest.mark.asyncio
    async def test_chatid_is_open_to_everyone(self, directory_db):
        update = _make_update(user_id=999, chat_id=-42)
        await cmd_chatid(update, _make_context(directory_db))
        assert "-42" in update.message.reply_text.call_args.args[0]


class TestAdminCommands:
    @pytest.mark.asyncio
    async def test_employee_added(self, directory_db):
        update = _make_update()
        await cmd_employee(update, _make_context(directory_db, args=["雅涵"]))
        assert directory_db.find_employee("雅涵") is not None
        assert "雅涵" in update.message.reply_text.call_args.args[0]

    @pytest.mark.asyncio
    async def test_employee_without_name_shows_usage(self, directory_db):
        update = _make_update()
        await cmd_employee(update, _make_context(directory_db))
        assert "用法" in update.message.reply_text.call_args.args[0]

    @pytest.mark.asyncio
    async def test_register_employee_chat(self, directory_db):
        employee = directory_db.add_employee("雅涵")
        update = _make_update(chat_id=-100)

        await cmd_register(update, _make_context(directory_db, args=["employee", "雅涵"]))

        conversation = directory_db.get_conversation("-100")
        assert conversation.role == "employee"
        assert conversation.employee_id == employee.id
        assert conversation.name == "雅涵群"

    @pytest.mark.asyncio
    async def test_register_unknown_employee(self, directory_db):
        update = _make_update()
        await cmd_register(update, _make_context(directory_db, args=["employee", "小明"]))
        assert "找不到員工「小明」" in update.message.reply_text.call_args.args[0]
        assert directory_db.get_conversation("-100") is None

    @pytest.mark.asyncio
    async def test_register_bad_role(self, directory_db):
        update = _make_update()
        await cmd_register(update, _make_context(directory_db, args=["vendor"]))
        assert "用法" in update.message.reply_text.call_args.args[0]

    @pytest.mark.asyncio
    async def test_register_customer_chat(self, directory_db):
        update = _make_update(chat_id=-300, chat_title="寵樂芙")
        await cmd_register(update, _make_context(directory_db, args=["customer"]))
        assert directory_db.get_conversation("-300").role == "customer"


class TestMonthlyCommand:
    @pytest.mark.asyncio
    async def test_add_then_list(self, directory_db, reminder_db):
        update = _make_update()
        await cmd_monthly(update, _make_context(directory_db, args=["5", "繳房租"], reminders=reminder_db))
        assert "每月 5 號繳房租" in update.message.reply_text.call_args.args[0]

        await cmd_monthly(update, _make_context(directory_db, reminders=reminder_db))
        assert "每月 5 號：繳房租" in update.message.reply_text.call_args.args[0]

    @pytest.mark.asyncio
    async def test_delete(self, directory_db, reminder_db):
        reminder = reminder_db.add_monthly_reminder("繳房租", 5)
        update = _make_update()
        context = _make_context(directory_db, args=["del", str(reminder.id)], reminders=reminder_db)

        await cmd_monthly(update, context)

        assert "已刪除" in update.message.reply_text.call_args.args[0]
        assert reminder_db.list_monthly_reminders() == []

    @pytest.mark.asyncio
    async def test_day_out_of_range(self, directory_db, reminder_db):
        update = _make_update()
        await cmd_monthly(update, _make_context(directory_db, args=["40", "繳房租"], reminders=reminder_db))
        assert "1 到 31" in update.message.reply_text.call_args.args[0]
        assert reminder_db.list_monthly_reminders() == []

    @pytest.mark.asyncio
    async def test_non_admin_cannot_add(self, directory_db, reminder_db):
        update = _make_update(user_id=999)
        await cmd_monthly(update, _make_context(directory_db, args=["5", "繳房租"], reminders=reminder_db))
        update.message.reply_text.assert_not_awaited()
        assert reminder_db.list_monthly_reminders() == []


class TestHandleText:
    @pytest.mark.asyncio
    async def test_unregistered_chat_is_ignored(self, directory_db):
        intake = AsyncMock()
        dispatcher = AsyncMock()
        update = _make_update("午餐買好了", chat_id=-999)
        context = _make_context(directory_db, intake=intake, dispatcher=dispatcher)

        await handle_text(update, context)

        intake.record.assert_not_awaited()
        dispatcher.handle.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_logs_then_dispatches_and_replies(self, directory_db):
        directory_db.register_conversation("-1", "主管群", "manager")
        intake = AsyncMock()
        dispatcher = AsyncMock()
        dispatcher.handle.return_value = DispatchResult(ResultKind.SUCCESS, "✅ 已新增任務")
        update = _make_update("新增雅涵任務", user_id=12345, chat_id=-1)
        context = _make_context(directory_db, intake=intake, dispatcher=dispatcher)

        await handle_text(update, context)

        intake.record.assert_awaited_once()
        conversation, author_id, text, _ = intake.record.call_args.args
        assert conversation.chat_id == "-1"
        assert author_id == "12345"
        assert text == "新增雅涵任務"
        update.effective_message.reply_text.assert_awaited_once_with("✅ 已新增任務")

    @pytest.mark.asyncio
    async def test_no_action_stays_silent(self, directory_db):
        directory_db.register_conversation("-3", "寵樂芙", "customer")
        intake = AsyncMock()
        dispatcher = AsyncMock()
        dispatcher.handle.return_value = DispatchResult(ResultKind.NO_ACTION)
        update = _make_update("請問報價", chat_id=-3)
        context = _make_context(directory_db, intake=intake, dispatcher=dispatcher)

        await handle_text(update, context)

        update.effective_message.reply_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_intake_failure_does_not_block_dispatch(self, directory_db):
        directory_db.register_conversation("-1", "主管群", "manager")
        intake = AsyncMock()
        intake.record.side_effect = RuntimeError("db locked")
        dispatcher = AsyncMock()
        dispatcher.handle.return_value = DispatchResult(ResultKind.QUERY_RESULT, "進度")
        update = _make_update("大家進度", chat_id=-1)
        context = _make_context(directory_db, intake=intake, dispatcher=dispatcher)

        await handle_text(update, context)

        dispatcher.handle.assert_awaited_once()
        update.effective_message.reply_text.assert_awaited_once_with("進度")

    @pytest.mark.asyncio
    async def test_dispatch_error_replies_generic_message(self, directory_db):
        directory_db.register_conversation("-1", "主管群", "manager")
        dispatcher = AsyncMock()
        dispatcher.handle.side_effect = RuntimeError("boom")
        update = _make_update("大家進度", chat_id=-1)
        context = _make_context(directory_db, intake=AsyncMock(), dispatcher=dispatcher)

        await handle_text(update, context)

        update.effective_message.reply_text.assert_awaited_once_with("系統錯誤，請稍後再試")
