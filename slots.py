"""Expansion of a room's local scheduling rules into absolute slot ids.

A slot id is the decimal number of whole minutes since the Unix epoch, so it
names the same instant no matter which zone a viewer displays it in.
"""
import re
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, List, Optional

from logging_config import get_logger
from tzmath import zoned_local_to_instant

logger = get_logger(__name__)

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^\d{2}:\d{2}$")
_SLOT_RE = re.compile(r"^\d{1,12}$")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_date(value) -> Optional[date]:
    if not isinstance(value, str) or not _DATE_RE.match(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def parse_time_minutes(value) -> Optional[int]:
    if not isinstance(value, str) or not _TIME_RE.match(value):
        return None
    hh, mm = int(value[:2]), int(value[3:])
    if hh > 23 or mm > 59:
        return None
    return hh * 60 + mm


def slot_id(instant: datetime) -> str:
    return str(int((instant - _EPOCH).total_seconds()) // 60)


def slot_instant(value: str) -> datetime:
    return _EPOCH + timedelta(minutes=int(value))


def is_slot_id(value) -> bool:
    return isinstance(value, str) and bool(_SLOT_RE.match(value))


def sort_slot_ids(ids: Iterable[str]) -> List[str]:
    return sorted(set(ids), key=int)


def generate_slots(start_date: str, end_date: str, day_start: str, day_end: str,
                   slot_minutes: int, time_zone: str) -> List[str]:
    """All slot ids for ``[day_start, day_end)`` on every date in range.

    Inputs are assumed valid; callers reject bad rules before getting here.
    """
    first = parse_date(start_date)
    last = parse_date(end_date)
    window_start = parse_time_minutes(day_start)
    window_end = parse_time_minutes(day_end)
    if first is None or last is None or window_start is None or window_end is None:
        return []

    ids = set()
    day = first
    while day <= last:
        for minute in range(window_start, window_end, slot_minutes):
            hour, mins = divmod(minute, 60)
            ids.add(slot_id(zoned_local_to_instant(time_zone, day.year, day.month, day.day, hour, mins)))
        day += timedelta(days=1)

    result = sort_slot_ids(ids)
    logger.debug(f"Generated {len(result)} slots for {start_date}..{end_date} {day_start}-{day_end} "
                 f"every {slot_minutes}m in {time_zone}")
    return result


def migrate_legacy_key(key: str, time_zone: str) -> Optional[str]:
    """Translate an old ``YYYY-MM-DD|HH:MM`` key into a slot id."""
    if not isinstance(key, str) or "|" not in key:
        return None
    day_text, _, time_text = key.partition("|")
    day = parse_date(day_text.strip())
    minutes = parse_time_minutes(time_text.strip())
    if day is None or minutes is None:
        return None
    hour, mins = divmod(minutes, 60)
    return slot_id(zoned_local_to_instant(time_zone, day.year, day.month, day.day, hour, mins))
