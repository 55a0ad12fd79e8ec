"""Recurrence matcher — pure business logic.

Decides whether a recurring task is due on a civil date from its
human-language `frequency_detail` ("週三", "週二,週四", "每月15號", "每天",
"不固定"). Parsing is best-effort: anything unrecognised is never due.

No I/O: this module only transforms data.
"""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Iterable

from opsdesk.core.clock import WEEKDAY_LABELS, civil_today

logger = logging.getLogger(__name__)

_NEVER_TOKENS = ("不固定", "不定期", "unscheduled", "irregular")
_ALWAYS_TOKENS = ("每天", "每日", "every day", "everyday", "daily")
_MONTHLY_TOKENS = ("每月", "每個月", "monthly")

_DAY_OF_MONTH = re.compile(r"(\d{1,2})\s*[號号日]")
# "一號", "十五号", or "月二十日"; a bare "六日" is Saturday and Sunday, not the 6th
_CJK_DAY_OF_MONTH = re.compile(
    r"([一二三四五六七八九十]+)\s*[號号]|月\s*([一二三四五六七八九十]+)\s*日"
)
# A week marker followed by one label or a list of labels ("週二、四")
_WEEKDAY_RUN = re.compile(
    r"(?:週|周|星期|禮拜|礼拜)\s*([一二三四五六日天](?:\s*[、,，/和及與与]?\s*[一二三四五六日天])*)"
)
_CJK_DIGITS = {c: i for i, c in enumerate("一二三四五六七八九", 1)}


def _cjk_number(text: str) -> int | None:
    """Parse a Chinese numeral from 1 to 39 ("五", "十二", "二十", "三十一")."""
    if "十" not in text:
        return _CJK_DIGITS.get(text) if len(text) == 1 else None
    tens, _, units = text.partition("十")
    if len(tens) > 1 or len(units) > 1:
        return None
    value = (_CJK_DIGITS.get(tens, 0) if tens else 1) * 10
    if units:
        value += _CJK_DIGITS.get(units, 0)
    return value


def _days_of_month(text: str) -> set[int]:
    days = {int(m) for m in _DAY_OF_MONTH.findall(text)}
    for match in _CJK_DAY_OF_MONTH.finditer(text):
        value = _cjk_number(match.group(1) or match.group(2))
        if value:
            days.add(value)
    return days


def _weekdays(text: str) -> set[int]:
    days: set[int] = set()
    for run in _WEEKDAY_RUN.findall(text):
        for label in re.findall(r"[一二三四五六日天]", run):
            days.add(6 if label == "天" else WEEKDAY_LABELS.index(label))
    return days


def _normalize(detail: str | None) -> str:
    return (detail or "").strip().lower()


def is_due(detail: str | None, day: date) -> bool:
    """Return True if a task with this frequency detail is due on `day`.

    Rules, OR-ed together after the "never" check:
    - an unscheduled/irregular token  -> never due (checked first)
    - an every-day token              -> always due
    - a marker-led weekday matching `day` ("週三", "週二、四") -> due
    - a day-of-month ("15號", "一號", "月二十日") == `day`     -> due
    """
    text = _normalize(detail)
    if not text:
        return False

    if any(token in text for token in _NEVER_TOKENS):
        return False

    if any(token in text for token in _ALWAYS_TOKENS):
        return True

    if day.day in _days_of_month(text):
        return True

    # Labels only count after a week marker, so "每月一號" is not a Monday
    return day.weekday() in _weekdays(text)


def is_task_due(task, day: date) -> bool:
    """Due check for a Task: a daily task without a detail runs every day."""
    if not task.active:
        return False
    if not (task.frequency_detail or "").strip():
        return task.frequency == "daily"
    return is_due(task.frequency_detail, day)


def due_tasks(tasks: Iterable, day: date) -> list:
    """Filter `tasks` to those due on `day`, preserving order."""
    return [t for t in tasks if is_task_due(t, day)]


def outstanding_tasks(
    tasks: Iterable,
    records: Iterable,
    day: date,
    offset_hours: int = 8,
) -> list:
    """Due tasks on `day` that have no completion record on that civil date."""
    done_ids = {
        r.task_id for r in records
        if civil_today(r.completed_at, offset_hours) == day
    }
    return [t for t in due_tasks(tasks, day) if t.id not in done_ids]


def infer_frequency(detail: str | None) -> str:
    """Best guess of the coarse frequency bucket for a detail string."""
    text = _normalize(detail)
    if not text:
        return "custom"
    if any(token in text for token in _NEVER_TOKENS):
        return "custom"
    if any(token in text for token in _ALWAYS_TOKENS):
        return "daily"
    if _days_of_month(text) or any(token in text for token in _MONTHLY_TOKENS):
        return "monthly"
    if _weekdays(text):
        return "weekly"
    logger.debug("Unrecognised frequency detail %r, filed as custom", detail)
    return "custom"
