from __future__ import annotations

from collections.abc import Iterator
from datetime import date, datetime, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


@lru_cache(maxsize=16)
def zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def from_ms(ts_ms: int, tz_name: str = "UTC") -> datetime:
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=zone(tz_name))


def now_ms() -> int:
    return to_ms(datetime.now(timezone.utc))


def hour_start_ms(ts_ms: int, tz_name: str) -> int:
    local = from_ms(ts_ms, tz_name)
    return to_ms(local.replace(minute=0, second=0, microsecond=0))


def hour_key(hour_start: int, tz_name: str) -> str:
    return from_ms(hour_start, tz_name).strftime("%Y-%m-%d_%H")


def local_date(ts_ms: int, tz_name: str) -> date:
    return from_ms(ts_ms, tz_name).date()


def date_key(day: date) -> str:
    return day.isoformat()


def day_bounds(day: date, tz_name: str) -> tuple[int, int]:
    """Return ``[start, end)`` epoch ms of a calendar day in ``tz_name``.

    Computed from local midnights, so DST days are 23 or 25 hours long.
    """
    tz = zone(tz_name)
    start = datetime(day.year, day.month, day.day, tzinfo=tz)
    following = day + timedelta(days=1)
    end = datetime(following.year, following.month, following.day, tzinfo=tz)
    return to_ms(start), to_ms(end)


def day_start_ms(ts_ms: int, tz_name: str) -> int:
    return day_bounds(local_date(ts_ms, tz_name), tz_name)[0]


def iter_days(start_ms: int, end_ms: int, tz_name: str) -> Iterator[tuple[date, int, int]]:
    """Yield ``(day, day_start, day_end)`` for every day overlapping ``[start_ms, end_ms]``."""
    if end_ms < start_ms:
        return
    current = local_date(start_ms, tz_name)
    last = local_date(end_ms, tz_name)
    while current <= last:
        day_start, day_end = day_bounds(current, tz_name)
        yield current, day_start, day_end
        current += timedelta(days=1)


def iter_hours(start_ms: int, end_ms: int, tz_name: str) -> Iterator[int]:
    """Yield hour starts for every hour beginning in ``[start_ms, end_ms)``."""
    current = hour_start_ms(start_ms, tz_name)
    if current < start_ms:
        current += HOUR_MS
    while current < end_ms:
        yield current
        current += HOUR_MS


def iter_months(start_ms: int, end_ms: int, tz_name: str) -> Iterator[tuple[date, int, int]]:
    """Yield ``(first_day, month_start, month_end)`` for every month overlapping ``[start_ms, end_ms]``."""
    if end_ms < start_ms:
        return
    first = local_date(start_ms, tz_name).replace(day=1)
    last = local_date(end_ms, tz_name).replace(day=1)
    while first <= last:
        following = date(first.year + first.month // 12, first.month % 12 + 1, 1)
        yield first, day_bounds(first, tz_name)[0], day_bounds(following, tz_name)[0]
        first = following
