"""Small helpers for slugs and run calendars."""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

_SLUG_RE = re.compile(r"[^a-z0-9]+")

FREQUENCY_HOURS = {
    "every_6_hours": 6,
    "every_12_hours": 12,
    "daily": 24,
    "every_2_days": 48,
    "weekly": 168,
}


def slugify(text: str) -> str:
    return _SLUG_RE.sub("-", text.lower()).strip("-")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def today_in(tz_name: str, now: datetime | None = None) -> date:
    """Return the calendar date in ``tz_name`` at ``now`` (default: the current time)."""
    return as_utc(now or utcnow()).astimezone(ZoneInfo(tz_name)).date()


def next_scheduled_run(schedule_utc: list[str], now: datetime | None = None) -> datetime:
    """Return the next UTC datetime matching one of the ``HH:MM`` slots."""
    now = as_utc(now or utcnow())
    slots = sorted(time.fromisoformat(s) for s in schedule_utc)
    for slot in slots:
        candidate = datetime.combine(now.date(), slot, tzinfo=timezone.utc)
        if candidate > now:
            return candidate
    return datetime.combine(now.date() + timedelta(days=1), slots[0], tzinfo=timezone.utc)


def next_run_for_frequency(frequency: str, now: datetime | None = None) -> datetime:
    now = as_utc(now or utcnow())
    return now + timedelta(hours=FREQUENCY_HOURS.get(frequency, 24))
