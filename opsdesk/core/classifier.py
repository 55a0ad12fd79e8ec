"""
OpsDesk Assistant — Intent Classifier.

Turns one free-text chat message (mostly Traditional Chinese) into a
`ParsedCommand`: a closed intent plus optional slots. A second prompt grades
inbound customer messages (urgent / question / payment / general) for the
supervisor alert.

The language model is a black box here. Both entry points catch every
failure, log it and degrade (`Intent.UNKNOWN`, importance "general"), so the
dispatcher never sees an exception from this module.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, field_validator

from opsdesk.core.clock import DEFAULT_OFFSET_HOURS, to_civil, weekday_label
from opsdesk.core.llm import complete
from opsdesk.data.models import IMPORTANCE_LEVELS

logger = logging.getLogger(__name__)


class Intent(str, Enum):
    ADD_TASK = "add_task"
    COMPLETE_TASK = "complete_task"
    QUERY_TASKS = "query_tasks"
    QUERY_PROGRESS = "query_progress"
    CANCEL_RECORD = "cancel_record"
    DELETE_TASK = "delete_task"
    UPDATE_TASK = "update_task"
    SET_REMINDER = "set_reminder"
    SCHEDULE_MEETING = "schedule_meeting"
    SEND_MESSAGE = "send_message"
    UNKNOWN = "unknown"


class ParsedCommand(BaseModel):
    """Structured command extracted from a chat message.

    JSON example:
    {
        "intent": "add_task",
        "employee_name": "雅涵",
        "task_name": "廣告",
        "client_name": "寵樂芙",
        "frequency": "weekly",
        "frequency_detail": "週三"
    }
    """
    intent: Intent = Intent.UNKNOWN
    employee_name: str | None = None
    task_name: str | None = None
    client_name: str | None = None
    frequency: str | None = None
    frequency_detail: str | None = None
    target_group: str | None = None
    message_content: str | None = None
    reminder_time: str | None = None
    reminder_content: str | None = None
    meeting_date: str | None = None

    @field_validator("intent", mode="before")
    @classmethod
    def parse_intent(cls, v):
        if isinstance(v, Intent):
            return v
        try:
            return Intent(str(v).strip().lower())
        except ValueError:
            logger.warning("LLM returned unknown intent: '%s'", v)
            return Intent.UNKNOWN

    @field_validator(
        "employee_name", "task_name", "client_name", "frequency", "frequency_detail",
        "target_group", "message_content", "reminder_time", "reminder_content",
        "meeting_date",
        mode="before",
    )
    @classmethod
    def blank_to_none(cls, v):
        if v is None:
            return None
        text = str(v).strip()
        return text or None


class CustomerClassification(BaseModel):
    """Importance grade of an inbound customer message."""
    importance: str = "general"
    summary: str = ""


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

_SYSTEM_PROMPT = """\
你是一個任務管理助理。分析使用者的訊息，判斷意圖並提取資訊。

群組類型：{role}
今天是：{today}（星期{weekday}）

只回傳一個 JSON 物件：
{{"intent": "add_task | complete_task | query_tasks | query_progress | send_message | cancel_record | delete_task | update_task | set_reminder | schedule_meeting | unknown",
  "employee_name": "員工名稱（如有）",
  "task_name": "任務名稱（如有）",
  "client_name": "客戶名稱（如有）",
  "frequency": "daily | weekly | monthly | custom（如有）",
  "frequency_detail": "週二,週三 或 每月15號（如有）",
  "target_group": "目標群組名稱（如有）",
  "message_content": "要發送的訊息內容（如有）",
  "reminder_time": "提醒時間（如有，例如：15:00、下午3點、30分鐘）",
  "reminder_content": "提醒內容（如有）",
  "meeting_date": "會議日期（如有，例如：下週三、明天、2/5）"}}

判斷規則：
1. add_task：新增任務。「新增雅涵任務，每週三做寵樂芙廣告」「幫怡婷加一個工作」
2. complete_task：完成任務。「XXX完成了」「XXX做好了」「XXX OK了」
3. query_tasks：詢問任務。「雅涵今天的任務」「今天要做什麼」
4. query_progress：詢問今日進度。「大家今天進度如何」「雅涵做了幾項」
5. send_message：發送訊息到其他群組。「到雅涵群說大家辛苦了」「跟寵樂芙說報告已完成」
6. cancel_record：撤銷完成記錄。「取消雅涵的工作回報」「雅涵那個不算」
7. delete_task：刪除任務。「刪除雅涵的FB貼文任務」
8. update_task：修改任務頻率。「把雅涵的FB貼文改成週二週四」
9. set_reminder：設定提醒。「提醒我下午3點開會」「30分鐘後提醒我打電話」「明天提醒我XXX」
10. schedule_meeting：安排線上會議。「跟陸居下週四14:00線上會議」
    → target_group 填群組名稱，meeting_date 填日期，reminder_time 填時間
11. unknown：一般聊天、不明確的訊息

不要輸出 markdown，不要其他文字。
"""

_CUSTOMER_PROMPT = """\
你是客服助理。分析客戶訊息，判斷類型並生成簡短摘要。

類型（請嚴格判斷）：
- urgent：明確憤怒、投訴、要求退款，或「很急」「馬上」「立刻」，或「要告」「找律師」
- question：有明確疑問，「請問」「為什麼」「怎麼」「可以嗎」或問號結尾
- payment：「已匯款」「已轉帳」「付款完成」
- general：其他所有訊息（預設）。不確定時選 general。

摘要：10 字以內描述重點，例如「詢問報價」「已付款通知」。

只回傳 JSON：{"type": "urgent | question | payment | general", "summary": "簡短摘要"}
"""


# ---------------------------------------------------------------------------
# Response cleaning
# ---------------------------------------------------------------------------

def _clean_llm_response(raw_text: str) -> str:
    """Remove markdown code fences around a JSON payload."""
    cleaned = (raw_text or "").strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned.removeprefix("```json")
    elif cleaned.startswith("```"):
        cleaned = cleaned.removeprefix("```")
    if cleaned.endswith("```"):
        cleaned = cleaned.removesuffix("```")
    return cleaned.strip()


def _load_object(raw_text: str) -> dict | None:
    cleaned = _clean_llm_response(raw_text)
    if not cleaned:
        return None
    data = json.loads(cleaned)
    # Some models wrap a single object in a list
    if isinstance(data, list) and data and isinstance(data[0], dict):
        data = data[0]
    if not isinstance(data, dict):
        logger.warning("LLM returned unexpected type: %s", type(data).__name__)
        return None
    return data


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def classify(
    text: str, role: str, now: datetime, offset_hours: int = DEFAULT_OFFSET_HOURS,
) -> ParsedCommand:
    """Classify a message sent in a conversation with the given role.

    `offset_hours` is the civil offset used for the "today" shown to the model.

    Never raises; any failure yields `ParsedCommand(intent=Intent.UNKNOWN)`.
    """
    if not (text or "").strip():
        return ParsedCommand()

    local = to_civil(now, offset_hours)
    system_prompt = _SYSTEM_PROMPT.format(
        role=role,
        today=local.date().isoformat(),
        weekday=weekday_label(local.date()),
    )

    raw_text = ""
    try:
        raw_text = await complete(
            system=system_prompt,
            user_message=text,
            max_tokens=512,
        )
        logger.debug("LLM raw response: %s", raw_text)

        data = _load_object(raw_text)
        if data is None:
            return ParsedCommand()

        command = ParsedCommand(**data)
        logger.info("Classified message as %s", command.intent.value)
        return command

    except json.JSONDecodeError as exc:
        logger.error("Failed to parse LLM response as JSON: %s, raw: '%s'", exc, raw_text)
        return ParsedCommand()
    except Exception as exc:
        logger.error("Unexpected error in classify: %s", exc)
        return ParsedCommand()


async def classify_customer_message(text: str) -> CustomerClassification:
    """Grade a customer message. Never raises; degrades to "general"."""
    raw_text = ""
    try:
        raw_text = await complete(
            system=_CUSTOMER_PROMPT,
            user_message=text,
            max_tokens=128,
        )
        data = _load_object(raw_text) or {}
        importance = str(data.get("type", "general")).strip().lower()
        if importance not in IMPORTANCE_LEVELS:
            logger.warning("LLM returned unknown importance: '%s'", importance)
            importance = "general"
        return CustomerClassification(
            importance=importance,
            summary=str(data.get("summary") or "").strip(),
        )
    except json.JSONDecodeError as exc:
        logger.error("Failed to parse customer classification: %s, raw: '%s'", exc, raw_text)
        return CustomerClassification()
    except Exception as exc:
        logger.error("Unexpected error in classify_customer_message: %s", exc)
        return CustomerClassification()
