"""Civil time helpers for the single fixed offset the team works in.

No I/O. Callers pass `offset_hours` explicitly; only `civil_now` without an
argument reads the configured default.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

DEFAULT_OFFSET_HOURS = 8

WEEKDAY_LABELS = "一二三四五六日"   # Monday first, matching date.weekday()


def civil_tz(offset_hours: int = DEFAULT_OFFSET_HOURS) -> timezone:
    return timezone(timedelta(hours=offset_hours))


def to_civil(instant: datetime, offset_hours: int = DEFAULT_OFFSET_HOURS) -> datetime:
    """Convert an instant to civil time. Naive datetimes are taken as civil already."""
    tz = civil_tz(offset_hours)
    if instant.tzinfo is None:
        return instant.replace(tzinfo=tz)
    return instant.astimezone(tz)


def to_utc(instant: datetime, offset_hours: int = DEFAULT_OFFSET_HOURS) -> datetime:
    return to_civil(instant, offset_hours).astimezone(timezone.utc)


def civil_now(offset_hours: int | None = None) -> datetime:
    if offset_hours is None:
        from opsdesk.config import settings

        offset_hours = settings.UTC_OFFSET_HOURS
    return datetime.now(civil_tz(offset_hours))


def civil_today(now: datetime, offset_hours: int = DEFAULT_OFFSET_HOURS) -> date:
    return to_civil(now, offset_hours).date()


def civil_day_bounds(
    day: date, offset_hours: int = DEFAULT_OFFSET_HOURS,
) -> tuple[datetime, datetime]:
    """Return the [start, end) UTC instants covering one civil date."""
    start = datetime(day.year, day.month, day.day, tzinfo=civil_tz(offset_hours))
    return start.astimezone(timezone.utc), (start + timedelta(days=1)).astimezone(timezone.utc)


def weekday_label(day: date) -> str:
    return WEEKDAY_LABELS[day.weekday()]


def format_civil(instant: datetime, offset_hours: int = DEFAULT_OFFSET_HOURS) -> str:
    """Display form used in replies, e.g. '2/5 14:00'."""
    local = to_civil(instant, offset_hours)
    return f"{local.month}/{local.day} {local.hour:02d}:{local.minute:02d}"
