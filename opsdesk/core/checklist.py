"""
OpsDesk Assistant — Daily Checklist Reconciler.

An employee's day is tracked by one checklist per civil date. It is either
posted by the employee as an enumerated list ("1. 回覆客戶信件 ✅"), or built
by the morning job from yesterday's unfinished items plus today's due tasks.
Completion reports ("午餐買好了") are matched against the open items by
keyword overlap.

The pure functions at the top do the text work; ChecklistReconciler wires
them to the checklist and task stores.
"""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from datetime import date, timedelta
from typing import TYPE_CHECKING, Iterable

from opsdesk.core.recurrence import due_tasks as filter_due_tasks
from opsdesk.data.models import ChecklistItem, DailyChecklist

if TYPE_CHECKING:
    from opsdesk.data.models import Task
    from opsdesk.ports.repository_port import ChecklistStore, TaskStore

logger = logging.getLogger(__name__)

CARRY_OVER_TAG = "[延續]"

_ENUMERATED = re.compile(r"^\s*(\d{1,3})\s*[.、．)）:：]\s*(.+?)\s*$")
_CHECKED = re.compile(r"✅|✔️|✔|☑️|☑|✓|\[[xXvV]\]")
_TAG = re.compile(r"\[[^\]]*\]")
_BRACKET_CHARS = re.compile(r"[【】()（）〔〕「」]")
_SPLIT = re.compile(r"[\s/／,，、]+")
_CJK_RUN = re.compile(r"[\u3400-\u9fff]{2,}")


# ---------------------------------------------------------------------------
# Free-text ingestion
# ---------------------------------------------------------------------------


def ingest_free_text(raw: str | Iterable[str]) -> list[ChecklistItem]:
    """Turn enumerated lines into checklist items.

    Only lines shaped like "<digit><separator><text>" count. A line carrying
    a checked glyph is done, and the glyph is removed from the stored text.
    """
    lines = raw.splitlines() if isinstance(raw, str) else list(raw)
    items: list[ChecklistItem] = []
    for line in lines:
        match = _ENUMERATED.match(line)
        if not match:
            continue
        body = match.group(2)
        done = bool(_CHECKED.search(body))
        text = _CHECKED.sub("", body).replace("\ufe0f", "").strip()
        if not text:
            continue
        items.append(ChecklistItem(index=len(items), text=text, done=done))
    return items


def looks_like_checklist(text: str) -> bool:
    """True when a message is an enumerated list of at least two items."""
    return len(ingest_free_text(text)) >= 2


# ---------------------------------------------------------------------------
# Auto-creation
# ---------------------------------------------------------------------------


def _strip_tag(text: str) -> str:
    return text.replace(CARRY_OVER_TAG, "").strip()


def build_auto_items(
    carry_over: Iterable[ChecklistItem], today_due: Iterable[Task],
) -> list[ChecklistItem]:
    """Carry-over items first (tagged), then today's scheduled tasks, all open.

    A scheduled task already present as a carry-over item is not repeated.
    """
    items: list[ChecklistItem] = []
    seen: set[str] = set()

    for item in carry_over:
        text = _strip_tag(item.text)
        if not text or text.lower() in seen:
            continue
        seen.add(text.lower())
        items.append(ChecklistItem(index=len(items), text=f"{CARRY_OVER_TAG} {text}"))

    for task in today_due:
        text = task.label
        if text.lower() in seen:
            continue
        seen.add(text.lower())
        items.append(ChecklistItem(index=len(items), text=text))

    return items


def unfinished_items(checklist: DailyChecklist | None) -> list[ChecklistItem]:
    if checklist is None:
        return []
    return [item for item in checklist.items if not item.done]


# ---------------------------------------------------------------------------
# Fuzzy completion
# ---------------------------------------------------------------------------


def extract_keywords(text: str) -> list[str]:
    """Keywords (length > 1) for matching, in first-seen order.

    Bracketed tags like "[延續]" are dropped and other bracket characters are
    treated as separators. CJK runs also contribute their character bigrams,
    so "買午餐" yields "買午餐", "買午" and "午餐".
    """
    cleaned = _BRACKET_CHARS.sub(" ", _TAG.sub(" ", text))
    keywords: list[str] = []
    for token in _SPLIT.split(cleaned.lower()):
        if len(token) <= 1:
            continue
        candidates = [token]
        for run in _CJK_RUN.findall(token):
            candidates.extend(run[i:i + 2] for i in range(len(run) - 1))
        for candidate in candidates:
            if candidate not in keywords:
                keywords.append(candidate)
    return keywords


def score_text(candidate: str, report: str) -> int:
    """Number of the candidate's keywords that occur in the report."""
    haystack = report.lower()
    return sum(1 for kw in extract_keywords(candidate) if kw in haystack)


def best_match_index(candidates: list[str], report: str) -> int | None:
    """Index of the highest-scoring candidate (score > 0), first one on ties."""
    best_index = None
    best_score = 0
    for i, candidate in enumerate(candidates):
        score = score_text(candidate, report)
        if score > best_score:
            best_index, best_score = i, score
    return best_index


def complete_by_fuzzy_match(
    checklist: DailyChecklist, report: str,
) -> tuple[DailyChecklist, ChecklistItem | None]:
    """Mark the open item best matching `report` as done.

    Returns the updated checklist and the matched item, or the unchanged
    checklist and None when nothing scores above zero.
    """
    open_items = unfinished_items(checklist)
    index = best_match_index([item.text for item in open_items], report)
    if index is None:
        return checklist, None

    target = open_items[index]
    items = [
        replace(item, done=True) if item.index == target.index else item
        for item in checklist.items
    ]
    updated = replace(checklist, items=items)
    return updated, replace(target, done=True)


def format_checklist(checklist: DailyChecklist) -> str:
    lines = [f"📋 {checklist.checklist_date.month}/{checklist.checklist_date.day} 工作清單："]
    for item in checklist.items:
        mark = "✅" if item.done else "⬜"
        lines.append(f"{item.index + 1}. {mark} {item.text}")
    lines.append(f"\n完成 {checklist.done_count}/{checklist.total_count}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Reconciler service
# ---------------------------------------------------------------------------


class ChecklistReconciler:
    """Applies the checklist rules against the stores."""

    def __init__(self, checklists: ChecklistStore, tasks: TaskStore) -> None:
        self._checklists = checklists
        self._tasks = tasks

    def carry_over_for(self, employee_id: int, day: date) -> list[ChecklistItem]:
        """Unfinished items from the previous day's checklist."""
        yesterday = self._checklists.get_checklist(employee_id, day - timedelta(days=1))
        return unfinished_items(yesterday)

    def auto_create(
        self,
        employee_id: int,
        day: date,
        carry_over: list[ChecklistItem],
        today_due: list[Task],
    ) -> DailyChecklist:
        """Create the day's checklist unless one already exists.

        The insert itself is conditional on (employee, date), so an employee
        post that lands between the lookup and the insert still wins.
        """
        existing = self._checklists.get_checklist(employee_id, day)
        if existing is not None:
            logger.debug("Checklist for employee %d on %s already exists", employee_id, day)
            return existing

        checklist = DailyChecklist(
            id=None,
            employee_id=employee_id,
            checklist_date=day,
            items=build_auto_items(carry_over, today_due),
            source="auto",
        )
        stored = self._checklists.create_checklist_if_absent(checklist)
        logger.info(
            "Auto checklist for employee %d on %s: %d items (%d carried over)",
            employee_id, day, stored.total_count, len(carry_over),
        )
        return stored

    def ensure_today(self, employee_id: int, day: date) -> DailyChecklist:
        carry_over = self.carry_over_for(employee_id, day)
        today_due = filter_due_tasks(self._tasks.list_tasks(employee_id), day)
        return self.auto_create(employee_id, day, carry_over, today_due)

    def save_posted(self, employee_id: int, day: date, raw: str) -> DailyChecklist | None:
        """Store an employee-authored checklist, replacing any auto-created one."""
        items = ingest_free_text(raw)
        if not items:
            return None
        checklist = DailyChecklist(
            id=None,
            employee_id=employee_id,
            checklist_date=day,
            items=items,
            source="employee",
        )
        return self._checklists.upsert_checklist(checklist)

    def complete(
        self, employee_id: int, day: date, report: str,
    ) -> tuple[DailyChecklist | None, ChecklistItem | None]:
        """Apply a completion report to the day's checklist, if there is one."""
        checklist = self._checklists.get_checklist(employee_id, day)
        if checklist is None:
            return None, None

        updated, matched = complete_by_fuzzy_match(checklist, report)
        if matched is None:
            return checklist, None

        self._checklists.update_items(updated)
        logger.info(
            "Checklist item %d '%s' done for employee %d",
            matched.index, matched.text, employee_id,
        )
        return updated, matched
