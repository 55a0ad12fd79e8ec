"""Tests for opsdesk.data.db — SQLite stores."""

import sqlite3

import pytest
from datetime import date, datetime, timedelta, timezone

from opsdesk.data.models import ChecklistItem, ConversationMessage, DailyChecklist

T0 = datetime(2024, 1, 3, 2, 0, tzinfo=timezone.utc)
CIVIL = timezone(timedelta(hours=8))


class TestDirectoryDB:
    def test_add_and_find_employee(self, directory_db):
        emp = directory_db.add_employee("雅涵")
        assert emp.id is not None
        assert directory_db.find_employee("雅涵").id == emp.id
        assert directory_db.get_employee(emp.id).name == "雅涵"

    def test_add_employee_twice_keeps_one(self, directory_db):
        first = directory_db.add_employee("怡婷")
        second = directory_db.add_employee("怡婷")
        assert first.id == second.id
        assert len(directory_db.list_employees()) == 1

    def test_find_employee_partial_and_missing(self, directory_db):
        directory_db.add_employee("Amy Chen")
        assert directory_db.find_employee("amy chen").name == "Amy Chen"
        assert directory_db.find_employee("Amy").name == "Amy Chen"
        assert directory_db.find_employee("Bob") is None
        assert directory_db.find_employee("") is None

    def test_register_conversation_and_rebind(self, directory_db):
        emp = directory_db.add_employee("雅涵")
        conv = directory_db.register_conversation("-100", "雅涵群", "employee", emp.id)
        assert conv.role == "employee"
        assert directory_db.conversation_for_employee(emp.id).chat_id == "-100"

        again = directory_db.register_conversation("-100", "客戶群", "customer")
        assert again.id == conv.id
        assert again.role == "customer"
        assert again.employee_id is None
        assert directory_db.conversation_for_employee(emp.id) is None

    def test_register_rejects_unknown_role(self, directory_db):
        with pytest.raises(ValueError):
            directory_db.register_conversation("-1", "x", "vendor")

    def test_find_conversation_by_name_or_employee(self, directory_db):
        emp = directory_db.add_employee("雅涵")
        directory_db.register_conversation("-1", "寵樂芙 客戶群", "customer")
        directory_db.register_conversation("-2", "Team A", "employee", emp.id)
        assert directory_db.find_conversation("寵樂芙").chat_id == "-1"
        assert directory_db.find_conversation("雅涵").chat_id == "-2"
        assert directory_db.find_conversation("nobody") is None

    def test_list_conversations_by_role(self, directory_db):
        directory_db.register_conversation("-1", "boss", "manager")
        directory_db.register_conversation("-2", "cust", "customer")
        assert [c.chat_id for c in directory_db.list_conversations("manager")] == ["-1"]
        assert len(directory_db.list_conversations()) == 2


class TestTaskDB:
    def test_add_and_list(self, task_db):
        task = task_db.add_task(1, "廣告", client_name="寵樂芙", frequency="weekly", frequency_detail="週三")
        assert task.label == "寵樂芙 - 廣告"
        tasks = task_db.list_tasks(1)
        assert [t.id for t in tasks] == [task.id]
        assert tasks[0].frequency_detail == "週三"

    def test_find_task_and_soft_delete(self, task_db):
        task = task_db.add_task(1, "FB貼文")
        assert task_db.find_task(1, "貼文").id == task.id
        assert task_db.find_task(2, "貼文") is None

        assert task_db.deactivate_task(task.id) is True
        assert task_db.deactivate_task(task.id) is False
        assert task_db.find_task(1, "貼文") is None
        assert task_db.list_tasks(1) == []
        assert len(task_db.list_tasks(1, active_only=False)) == 1

    def test_update_frequency(self, task_db):
        task = task_db.add_task(1, "FB貼文", frequency="weekly", frequency_detail="週三")
        updated = task_db.update_frequency(task.id, "weekly", "週二,週四")
        assert updated.frequency_detail == "週二,週四"

    def test_update_missing_task_raises(self, task_db):
        with pytest.raises(ValueError):
            task_db.update_frequency(999, "daily", "每天")

    def test_records_and_cancel_latest(self, task_db):
        task = task_db.add_task(1, "FB貼文")
        task_db.add_record(task.id, 1, T0)
        latest = task_db.add_record(task.id, 1, T0 + timedelta(hours=1))

        deleted = task_db.delete_latest_record(1)
        assert deleted.id == latest.id
        assert deleted.completed_at == T0 + timedelta(hours=1)
        remaining = task_db.records_between(T0 - timedelta(days=1), T0 + timedelta(days=1))
        assert len(remaining) == 1

    def test_cancel_with_no_records(self, task_db):
        assert task_db.delete_latest_record(1) is None

    def test_records_between_is_half_open(self, task_db):
        task_db.add_record(1, 1, T0)
        assert task_db.records_between(T0, T0 + timedelta(hours=1))
        assert task_db.records_between(T0 - timedelta(hours=1), T0) == []

    def test_civil_instants_stored_as_utc(self, task_db):
        record = task_db.add_record(1, 1, datetime(2024, 1, 3, 10, 0, tzinfo=CIVIL))
        assert record.completed_at == T0
        stored = task_db.records_between(T0, T0 + timedelta(seconds=1))
        assert stored[0].completed_at.tzinfo == timezone.utc


class TestChecklistDB:
    def _checklist(self, texts, done=(), source="employee"):
        items = [ChecklistItem(i, t, i in done) for i, t in enumerate(texts)]
        return DailyChecklist(None, 1, date(2024, 1, 3), items, source)

    def test_counts_computed_on_save(self, checklist_db, tmp_db_path):
        checklist_db.upsert_checklist(self._checklist(["a1", "b2", "c3"], done={0, 2}))
        with sqlite3.connect(tmp_db_path) as conn:
            total, done = conn.execute(
                "SELECT total_count, done_count FROM daily_checklists"
            ).fetchone()
        assert (total, done) == (3, 2)

    def test_create_if_absent_keeps_existing(self, checklist_db):
        checklist_db.upsert_checklist(self._checklist(["mine"]))
        stored = checklist_db.create_checklist_if_absent(self._checklist(["auto"], source="auto"))
        assert [i.text for i in stored.items] == ["mine"]
        assert stored.source == "employee"

    def test_upsert_replaces_items(self, checklist_db):
        first = checklist_db.create_checklist_if_absent(self._checklist(["auto"], source="auto"))
        second = checklist_db.upsert_checklist(self._checklist(["mine", "also"]))
        assert second.id == first.id
        assert second.total_count == 2
        assert second.source == "employee"

    def test_update_items(self, checklist_db):
        stored = checklist_db.upsert_checklist(self._checklist(["a1", "b2"]))
        stored.items[1].done = True
        updated = checklist_db.update_items(stored)
        assert updated.done_count == 1

    def test_update_missing_raises(self, checklist_db):
        with pytest.raises(ValueError):
            checklist_db.update_items(self._checklist(["a1"]))

    def test_unicode_items_roundtrip(self, checklist_db):
        checklist_db.upsert_checklist(self._checklist(["[延續] 回覆客戶信件"]))
        assert checklist_db.get_checklist(1, date(2024, 1, 3)).items[0].text == "[延續] 回覆客戶信件"


class TestReminderDB:
    def test_due_unsent_and_claim_once(self, reminder_db):
        due = reminder_db.add_reminder("-1", T0, "開會")
        reminder_db.add_reminder("-1", T0 + timedelta(hours=1), "later")

        pending = reminder_db.due_unsent(T0 + timedelta(minutes=1))
        assert [r.id for r in pending] == [due.id]

        assert reminder_db.claim(due.id) is True
        assert reminder_db.claim(due.id) is False
        assert reminder_db.due_unsent(T0 + timedelta(minutes=1)) == []
        assert reminder_db.get_reminder(due.id).is_sent is True

    def test_monthly_reminders_add_list_deactivate(self, reminder_db):
        rent = reminder_db.add_monthly_reminder("繳房租", 5)
        first = reminder_db.add_monthly_reminder("對帳", 1)
        assert [r.id for r in reminder_db.list_monthly_reminders()] == [first.id, rent.id]

        assert reminder_db.deactivate_monthly_reminder(rent.id) is True
        assert reminder_db.deactivate_monthly_reminder(rent.id) is False
        assert [r.title for r in reminder_db.list_monthly_reminders()] == ["對帳"]
        assert len(reminder_db.list_monthly_reminders(active_only=False)) == 2

    @pytest.mark.parametrize("title, day", [("繳房租", 0), ("繳房租", 32), ("  ", 5)])
    def test_monthly_reminder_rejects_bad_input(self, reminder_db, title, day):
        with pytest.raises(ValueError):
            reminder_db.add_monthly_reminder(title, day)


class TestMessageLogDB:
    def _message(self, author, at, text="hi", chat="c1"):
        return ConversationMessage(None, chat, author, text, at)

    def test_append_truncates_text(self, message_log_db):
        stored = message_log_db.append(self._message("cust", T0, text="x" * 600))
        assert stored.id is not None
        assert len(stored.text) == 500
        assert len(message_log_db.recent("c1", T0)[0].text) == 500

    def test_recent_filters_by_chat_and_time(self, message_log_db):
        message_log_db.append(self._message("cust", T0 - timedelta(hours=3)))
        message_log_db.append(self._message("cust", T0))
        message_log_db.append(self._message("cust", T0, chat="c2"))
        assert len(message_log_db.recent("c1", T0 - timedelta(hours=1))) == 1
        assert len(message_log_db.recent_all(T0 - timedelta(hours=1))) == 2

    def test_mark_replied_before(self, message_log_db):
        message_log_db.append(self._message("cust", T0))
        message_log_db.append(self._message("cust", T0 + timedelta(minutes=1)))
        marked = message_log_db.mark_replied_before("c1", T0 + timedelta(minutes=1))
        assert marked == 1
        flags = [m.is_replied for m in message_log_db.recent("c1", T0)]
        assert flags == [True, False]

    def test_set_importance(self, message_log_db):
        stored = message_log_db.append(self._message("cust", T0))
        message_log_db.set_importance(stored.id, "urgent", "要求退款")
        row = message_log_db.recent("c1", T0)[0]
        assert row.importance == "urgent"
        assert row.note == "要求退款"

    def test_messages_between_is_half_open(self, message_log_db):
        message_log_db.append(self._message("cust", T0 - timedelta(seconds=1), text="before"))
        message_log_db.append(self._message("cust", T0, text="start"))
        message_log_db.append(self._message("cust", T0 + timedelta(hours=1), text="end"))
        texts = [m.text for m in message_log_db.messages_between(T0, T0 + timedelta(hours=1))]
        assert texts == ["start"]

    def test_prune_before(self, message_log_db):
        message_log_db.append(self._message("cust", T0 - timedelta(days=40), text="old"))
        message_log_db.append(self._message("cust", T0 - timedelta(seconds=1), text="edge"))
        message_log_db.append(self._message("cust", T0, text="kept"))

        assert message_log_db.prune_before(T0) == 2
        assert [m.text for m in message_log_db.recent_all(T0 - timedelta(days=60))] == ["kept"]
        assert message_log_db.prune_before(T0) == 0


class TestFreshSchema:
    def _columns(self, path, table):
        conn = sqlite3.connect(path)
        try:
            return {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}
        finally:
            conn.close()

    def test_tasks_table_has_client_name(self, task_db, tmp_db_path):
        assert "client_name" in self._columns(tmp_db_path, "tasks")
        task = task_db.add_task(1, "廣告", client_name="寵樂芙")
        assert task_db.get_task(task.id).client_name == "寵樂芙"

    def test_messages_table_has_grading_columns(self, message_log_db, tmp_db_path):
        assert {"importance", "note"} <= self._columns(tmp_db_path, "messages")
        stored = message_log_db.append(ConversationMessage(None, "c1", "cust", "hi", T0))
        assert message_log_db.recent("c1", T0)[0].importance == "general"
        assert stored.note == ""
