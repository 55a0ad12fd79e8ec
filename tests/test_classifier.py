"""Tests for opsdesk.core.classifier — LLM intent and customer classification."""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from opsdesk.core.classifier import (
    Intent,
    ParsedCommand,
    _clean_llm_response,
    classify,
    classify_customer_message,
)

NOW = datetime(2024, 1, 3, 10, 0, tzinfo=timezone(timedelta(hours=8)))


class TestCleanLlmResponse:
    def test_strips_json_code_block(self):
        raw = '```json\n{"intent": "add_task"}\n```'
        assert _clean_llm_response(raw) == '{"intent": "add_task"}'

    def test_strips_bare_code_block(self):
        assert _clean_llm_response('```\n{"a": 1}\n```') == '{"a": 1}'

    def test_strips_whitespace(self):
        assert _clean_llm_response("  hello  ") == "hello"

    def test_none(self):
        assert _clean_llm_response(None) == ""


class TestParsedCommand:
    def test_unknown_intent_string_becomes_unknown(self):
        assert ParsedCommand(intent="dance").intent == Intent.UNKNOWN

    def test_blank_slots_become_none(self):
        command = ParsedCommand(intent="add_task", employee_name="  ", task_name="廣告")
        assert command.employee_name is None
        assert command.task_name == "廣告"


class TestClassify:
    @pytest.mark.asyncio
    async def test_add_task(self):
        llm_response = (
            '{"intent": "add_task", "employee_name": "雅涵", "task_name": "廣告", '
            '"client_name": "寵樂芙", "frequency": "weekly", "frequency_detail": "週三"}'
        )
        with patch("opsdesk.core.classifier.complete", AsyncMock(return_value=llm_response)):
            result = await classify("新增雅涵任務，每週三做寵樂芙廣告", "manager", NOW)
        assert result.intent == Intent.ADD_TASK
        assert result.employee_name == "雅涵"
        assert result.frequency_detail == "週三"

    @pytest.mark.asyncio
    async def test_prompt_carries_role_and_date(self):
        mock = AsyncMock(return_value='{"intent": "unknown"}')
        with patch("opsdesk.core.classifier.complete", mock):
            await classify("hello", "employee", NOW)
        system = mock.call_args.kwargs["system"]
        assert "employee" in system
        assert "2024-01-03" in system

    @pytest.mark.asyncio
    async def test_prompt_date_uses_given_offset(self):
        late_utc = datetime(2024, 1, 2, 20, 0, tzinfo=timezone.utc)
        mock = AsyncMock(return_value='{"intent": "unknown"}')
        with patch("opsdesk.core.classifier.complete", mock):
            await classify("hello", "manager", late_utc, offset_hours=0)
            await classify("hello", "manager", late_utc)
        utc_prompt = mock.call_args_list[0].kwargs["system"]
        civil_prompt = mock.call_args_list[1].kwargs["system"]
        assert "2024-01-02（星期二）" in utc_prompt
        assert "2024-01-03（星期三）" in civil_prompt

    @pytest.mark.asyncio
    async def test_fenced_response(self):
        llm_response = '```json\n{"intent": "set_reminder", "reminder_time": "下午3點"}\n```'
        with patch("opsdesk.core.classifier.complete", AsyncMock(return_value=llm_response)):
            result = await classify("提醒我下午3點開會", "manager", NOW)
        assert result.intent == Intent.SET_REMINDER
        assert result.reminder_time == "下午3點"

    @pytest.mark.asyncio
    async def test_list_wrapped_object(self):
        with patch("opsdesk.core.classifier.complete", AsyncMock(return_value='[{"intent": "query_tasks"}]')):
            result = await classify("今天要做什麼", "employee", NOW)
        assert result.intent == Intent.QUERY_TASKS

    @pytest.mark.asyncio
    async def test_invalid_json_degrades(self):
        with patch("opsdesk.core.classifier.complete", AsyncMock(return_value="not json")):
            result = await classify("???", "manager", NOW)
        assert result.intent == Intent.UNKNOWN

    @pytest.mark.asyncio
    async def test_llm_error_degrades(self):
        with patch("opsdesk.core.classifier.complete", AsyncMock(side_effect=RuntimeError("down"))):
            result = await classify("新增任務", "manager", NOW)
        assert result.intent == Intent.UNKNOWN

    @pytest.mark.asyncio
    async def test_empty_text_skips_llm(self):
        mock = AsyncMock()
        with patch("opsdesk.core.classifier.complete", mock):
            result = await classify("   ", "manager", NOW)
        assert result.intent == Intent.UNKNOWN
        mock.assert_not_called()


class TestClassifyCustomerMessage:
    @pytest.mark.asyncio
    async def test_urgent(self):
        llm_response = '{"type": "urgent", "summary": "要求退款"}'
        with patch("opsdesk.core.classifier.complete", AsyncMock(return_value=llm_response)):
            result = await classify_customer_message("我要退款，馬上處理")
        assert result.importance == "urgent"
        assert result.summary == "要求退款"

    @pytest.mark.asyncio
    async def test_unknown_type_becomes_general(self):
        with patch("opsdesk.core.classifier.complete", AsyncMock(return_value='{"type": "spam"}')):
            result = await classify_customer_message("hello")
        assert result.importance == "general"

    @pytest.mark.asyncio
    async def test_failure_degrades_to_general(self):
        with patch("opsdesk.core.classifier.complete", AsyncMock(side_effect=RuntimeError("down"))):
            result = await classify_customer_message("請問報價")
        assert result.importance == "general"
        assert result.summary == ""
