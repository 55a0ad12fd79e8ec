"""Relative time resolver — pure business logic.

Turns reminder/meeting expressions such as "30分鐘", "2小時後", "15:00",
"明天下午3點", "下週三14:00" or "2/5" into an absolute UTC instant, computed
in one fixed civil offset.

Unrecognised expressions never raise: they fall back to the default hour
(09:00 unless the caller says otherwise), today or tomorrow if that has
already passed. The `rule` on the returned Resolution tells callers which
branch fired so they can log fallbacks.

No I/O: this module only transforms data.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

from opsdesk.core.clock import DEFAULT_OFFSET_HOURS, WEEKDAY_LABELS, to_civil

logger = logging.getLogger(__name__)

_MINUTES = re.compile(
    r"(?<![\d:：])(\d+)\s*(?:分鐘|分钟|分|minutes?|mins?)", re.IGNORECASE,
)
_CLOCK_LEAD = re.compile(r"[點点]\s*$")
_HOURS = re.compile(r"(\d+)\s*(?:個|个)?\s*(?:小時|小时|hours?|hrs?)", re.IGNORECASE)
_HH_MM = re.compile(r"(\d{1,2})[:：](\d{2})")
_PM = re.compile(r"(下午|晚上|傍晚|中午)\s*(\d{1,2})\s*[點点]?")
_AM = re.compile(r"(?:上午|早上|早晨|凌晨)\s*(\d{1,2})\s*[點点]?")
_BARE_HOUR = re.compile(r"(\d{1,2})\s*[點点]")
_POINT_MINUTES = re.compile(r"[點点]\s*(?:(半)|(\d{1,2})\s*分?)")
_WEEKDAY_REF = re.compile(r"(這|这|本|下)?\s*(?:週|周|星期|禮拜|礼拜)([一二三四五六日天])")
_MONTH_DAY = re.compile(r"(?<!\d)(\d{1,2})\s*[/月]\s*(\d{1,2})(?!\d)")

_TOMORROW = ("明天", "明日")
_DAY_AFTER = ("後天", "后天")
_NEXT_WEEK = ("下",)


@dataclass
class Resolution:
    """A resolved instant (aware, UTC) and the rule that produced it."""

    instant: datetime
    rule: str   # minutes | hours | clock | period | weekday | month_day | relative_day | default


def _civil_date_part(now_civil: datetime, text: str) -> tuple[date, str | None]:
    """Pick the civil date an expression refers to.

    Returns (date, rule) where rule is None when no explicit date was given.
    """
    today = now_civil.date()

    if any(token in text for token in _DAY_AFTER):
        return today + timedelta(days=2), "relative_day"
    if any(token in text for token in _TOMORROW):
        return today + timedelta(days=1), "relative_day"

    weekday_match = _WEEKDAY_REF.search(text)
    if weekday_match:
        prefix, label = weekday_match.groups()
        target = 6 if label == "天" else WEEKDAY_LABELS.index(label)
        delta = target - today.weekday()
        if delta <= 0:
            delta += 7
        if prefix in _NEXT_WEEK:
            delta += 7
        return today + timedelta(days=delta), "weekday"

    month_day = _MONTH_DAY.search(text)
    if month_day:
        month, day_of_month = int(month_day.group(1)), int(month_day.group(2))
        try:
            target = date(today.year, month, day_of_month)
            if target < today:
                target = date(today.year + 1, month, day_of_month)
        except ValueError:
            logger.warning("Invalid calendar date in %r", text)
        else:
            return target, "month_day"

    return today, None


def _clock_part(text: str, default_hour: int) -> tuple[int, int, str | None]:
    """Pick the wall-clock time. Returns (hour, minute, rule or None).

    The hour may be 24 for "晚上12點", meaning 00:00 of the following day.
    """
    explicit = _HH_MM.search(text)
    if explicit:
        hour, minute = int(explicit.group(1)), int(explicit.group(2))
        if 0 <= hour <= 23 and 0 <= minute <= 59:
            return hour, minute, "clock"
        logger.warning("Out-of-range clock time in %r", text)

    minute = 0
    point_minutes = _POINT_MINUTES.search(text)
    if point_minutes:
        if point_minutes.group(1):
            minute = 30
        elif point_minutes.group(2) and int(point_minutes.group(2)) <= 59:
            minute = int(point_minutes.group(2))

    pm = _PM.search(text)
    if pm:
        period, hour = pm.group(1), int(pm.group(2))
        if hour < 12:
            hour += 12
        elif hour == 12 and period == "晚上":
            # midnight at the end of the named day
            hour = 24
        if hour <= 24:
            return hour, minute, "period"

    am = _AM.search(text)
    if am and int(am.group(1)) <= 12:
        hour = int(am.group(1))
        if hour == 12 and "凌晨" in text:
            hour = 0
        return hour, minute, "period"

    bare = _BARE_HOUR.search(text)
    if bare:
        hour = int(bare.group(1))
        # Small bare hours are business-afternoon reminders ("3點" = 15:00)
        if hour < 6:
            hour += 12
        if hour <= 23:
            return hour, minute, "period"

    return default_hour, 0, None


def _duration_minutes(text: str) -> int | None:
    """Minutes of a relative duration ("30分鐘後"), skipping the minute part of
    a clock time such as "3點 45分"."""
    for match in _MINUTES.finditer(text):
        if _CLOCK_LEAD.search(text[:match.start()]):
            continue
        return int(match.group(1))
    return None


def resolve_expression(
    now: datetime,
    expression: str,
    default_hour: int = 9,
    offset_hours: int = DEFAULT_OFFSET_HOURS,
) -> Resolution:
    """Resolve `expression` relative to `now` and report which rule fired.

    Args:
        now: The current civil instant. Naive datetimes are civil time.
        expression: Free text such as "下午3點" or "下週三 14:00".
        default_hour: Hour used when the expression names no time of day.
        offset_hours: The fixed civil UTC offset.
    """
    now_civil = to_civil(now, offset_hours)
    text = (expression or "").strip()

    minutes = _duration_minutes(text)
    if minutes is not None:
        instant = now_civil + timedelta(minutes=minutes)
        return Resolution(instant.astimezone(timezone.utc), "minutes")

    hours = _HOURS.search(text)
    if hours:
        instant = now_civil + timedelta(hours=int(hours.group(1)))
        return Resolution(instant.astimezone(timezone.utc), "hours")

    target_day, date_rule = _civil_date_part(now_civil, text)
    hour, minute, clock_rule = _clock_part(text, default_hour)

    midnight = datetime.combine(target_day, time(0), tzinfo=now_civil.tzinfo)
    target = midnight + timedelta(hours=hour, minutes=minute)
    if date_rule is None and target <= now_civil:
        target += timedelta(days=1)

    rule = clock_rule or date_rule or "default"
    if rule == "default":
        logger.info("No time expression recognised in %r, using %02d:00", text, default_hour)
    return Resolution(target.astimezone(timezone.utc), rule)


def resolve(
    now: datetime,
    expression: str,
    default_hour: int = 9,
    offset_hours: int = DEFAULT_OFFSET_HOURS,
) -> datetime:
    """Resolve a time expression to an aware UTC datetime. Never raises."""
    return resolve_expression(now, expression, default_hour, offset_hours).instant
