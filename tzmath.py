"""Conversions between local wall-clock fields in an IANA zone and UTC instants.

All instants handled here are timezone-aware ``datetime`` objects in UTC.
Strings only appear at the edges (``format_instant`` / ``parse_instant``).
"""
from datetime import date, datetime, timedelta, timezone
from functools import lru_cache
from typing import Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from errors import InvalidTimeZone

_ONE_DAY = timedelta(days=1)


@lru_cache(maxsize=256)
def resolve_zone(name: str) -> ZoneInfo:
    if not isinstance(name, str) or not name.strip():
        raise InvalidTimeZone()
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError, OSError) as e:
        raise InvalidTimeZone(f"Unknown time zone: {name}") from e


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _offset_at(tz: ZoneInfo, instant: datetime) -> timedelta:
    return instant.astimezone(tz).utcoffset()


def zoned_local_to_instant(zone: str, year: int, month: int, day: int, hour: int, minute: int) -> datetime:
    """Return the UTC instant at which ``zone`` shows the given local time.

    Two passes of offset correction: the local fields are first read as if
    they were UTC, then shifted by the zone's offset at that guess, then
    shifted again if the offset at the corrected instant differs.

    Local times that occur twice (fall-back fold) resolve to the earlier
    occurrence. Local times that never occur (spring-forward gap) snap
    forward: they are read with the pre-transition offset and land after
    the gap.
    """
    tz = resolve_zone(zone)
    guess = datetime(year, month, day, hour, minute, tzinfo=timezone.utc)

    first = _offset_at(tz, guess)
    instant = guess - first
    second = _offset_at(tz, instant)
    if second != first:
        instant = guess - second

    # Offsets on both sides of any transition near the nominal time.
    offsets = {first, second, _offset_at(tz, instant - _ONE_DAY), _offset_at(tz, instant + _ONE_DAY)}
    candidates = sorted({guess - off for off in offsets})
    exact = [c for c in candidates if guess - _offset_at(tz, c) == c]
    if exact:
        return exact[0]
    return candidates[-1]


def instant_to_zoned_parts(zone: str, instant: datetime) -> Tuple[str, str]:
    local = instant.astimezone(resolve_zone(zone))
    return local.strftime("%Y-%m-%d"), local.strftime("%H:%M")


def local_date_start(zone: str, day: date) -> datetime:
    return zoned_local_to_instant(zone, day.year, day.month, day.day, 0, 0)


def format_instant(instant: datetime) -> str:
    utc = instant.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def parse_instant(value: str) -> datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
