from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Callable, Mapping, Sequence
from threading import Event, Lock
from typing import Any

from sqlalchemy.orm import sessionmaker

from weather_backbone.core.config import Settings
from weather_backbone.repositories.weather_store import fetch_range as store_fetch_range
from weather_backbone.services.field_aliases import resolve_timestamp
from weather_backbone.services.periods import (
    DAY_MS,
    day_start_ms,
    hour_start_ms,
    iter_days,
    iter_months,
    now_ms,
)
from weather_backbone.services.tier_selector import QueryRange

ChunkKey = tuple[str, int, int]
ChunkRecords = tuple[Mapping[str, Any], ...]
ChunkReader = Callable[[str, int, int], Sequence[Mapping[str, Any]]]


class QueryCancelled(Exception):
    pass


class CancellationToken:
    def __init__(self) -> None:
        self._event = Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise QueryCancelled()


class ChunkCache:
    """Bounded day-chunk cache with oldest-inserted eviction.

    Values are immutable tuples; an entry is only ever inserted or evicted.
    """

    def __init__(self, capacity: int = 50):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = int(capacity)
        self._entries: OrderedDict[ChunkKey, ChunkRecords] = OrderedDict()
        self._lock = Lock()
        self._hits = 0
        self._misses = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def get(self, key: ChunkKey) -> ChunkRecords | None:
        with self._lock:
            records = self._entries.get(key)
            if records is None:
                self._misses += 1
            else:
                self._hits += 1
            return records

    def put(self, key: ChunkKey, records: Sequence[Mapping[str, Any]]) -> None:
        frozen = tuple(records)
        with self._lock:
            if key in self._entries:
                return
            while len(self._entries) >= self._capacity:
                self._entries.popitem(last=False)
            self._entries[key] = frozen

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "capacity": self._capacity,
                "hits": self._hits,
                "misses": self._misses,
            }


def store_chunk_reader(session_factory: sessionmaker) -> ChunkReader:
    def read(tier: str, start_ms: int, end_ms: int) -> list[dict[str, Any]]:
        with session_factory() as db:
            return store_fetch_range(db, collection=tier, start_ms=start_ms, end_ms=end_ms)

    return read


class ChunkedFetcher:
    def __init__(
        self,
        *,
        settings: Settings,
        cache: ChunkCache,
        reader: ChunkReader,
        clock: Callable[[], int] = now_ms,
    ):
        self._settings = settings
        self._cache = cache
        self._reader = reader
        self._clock = clock
        self._logger = logging.getLogger("weather_backbone.chunk_fetch")

    @property
    def cache(self) -> ChunkCache:
        return self._cache

    def retention_cutoff(self, tier: str, now: int) -> int | None:
        if tier == "raw":
            return now - self._settings.raw_retention_days * DAY_MS
        if tier == "hourly":
            return now - self._settings.hourly_retention_days * DAY_MS
        return None

    def is_cacheable(self, tier: str, chunk_start: int, chunk_end: int, now: int) -> bool:
        today_start = day_start_ms(now, self._settings.station_timezone)
        if chunk_end > today_start:
            return False
        cutoff = self.retention_cutoff(tier, now)
        return cutoff is None or chunk_start >= cutoff

    def fetch_range(
        self,
        query_range: QueryRange,
        *,
        tier: str,
        stride: int = 1,
        cancel_token: CancellationToken | None = None,
    ) -> list[Mapping[str, Any]]:
        """Assemble ``[start, end)`` from chunks, keeping every ``stride``-th record per chunk.

        Raw and hourly chunks are calendar days; daily chunks are calendar months.

        Raises ``QueryCancelled`` between chunk reads once the token is cancelled.
        """
        stride = max(1, int(stride))
        now = self._clock()
        tz_name = self._settings.station_timezone
        floor = self._range_floor(tier, query_range.start_ms)
        last = max(query_range.start_ms, query_range.end_ms - 1)
        results: list[Mapping[str, Any]] = []
        reads = 0

        chunks = iter_months if tier == "daily" else iter_days
        for _, chunk_start, chunk_end in chunks(query_range.start_ms, last, tz_name):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            key: ChunkKey = (tier, chunk_start, chunk_end)
            cacheable = self.is_cacheable(tier, chunk_start, chunk_end, now)
            records = self._cache.get(key) if cacheable else None
            if records is None:
                records = tuple(self._reader(tier, chunk_start, chunk_end))
                reads += 1
                if cacheable:
                    self._cache.put(key, records)
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()

            clipped = [
                record
                for record in records
                if _within(resolve_timestamp(record), floor, query_range.end_ms)
            ]
            results.extend(clipped[::stride])

        self._logger.debug(
            "fetched range tier=%s start_ms=%s end_ms=%s stride=%s store_reads=%s records=%s",
            tier,
            query_range.start_ms,
            query_range.end_ms,
            stride,
            reads,
            len(results),
        )
        return results

    def _range_floor(self, tier: str, start_ms: int) -> int:
        # Aggregates are stamped with their period start, so a range beginning
        # mid-period still includes that period.
        tz_name = self._settings.station_timezone
        if tier == "hourly":
            return hour_start_ms(start_ms, tz_name)
        if tier == "daily":
            return day_start_ms(start_ms, tz_name)
        return start_ms


def _within(ts: int | None, start_ms: int, end_ms: int) -> bool:
    return ts is not None and start_ms <= ts < end_ms
