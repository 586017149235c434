from __future__ import annotations

import time
from threading import Event, Thread, enumerate as running_threads
from typing import Any
from unittest import TestCase
from unittest.mock import patch

from weather_backbone.repositories.weather_store import (
    fetch_latest_raw,
    insert_daily_aggregate,
    insert_hourly_aggregate,
)
from weather_backbone.services.chunk_cache import ChunkCache, ChunkedFetcher, store_chunk_reader
from weather_backbone.services.periods import DAY_MS, HOUR_MS, date_key, hour_key, local_date
from weather_backbone.services.series import NO_DATA_DESCRIPTION, SeriesQueryService, SeriesResult
from weather_backbone.services.tier_selector import ClientProfile, QueryRange, sampling_stride_for

from tests.helpers import MINUTE_MS, make_settings, memory_session_factory, reading, seed_readings, utc_ms

NOW = utc_ms(2026, 9, 1, 12)


def _service(session_factory, *, reader=None) -> SeriesQueryService:
    settings = make_settings()

    def read_latest(limit: int) -> list[dict[str, Any]]:
        with session_factory() as db:
            return fetch_latest_raw(db, limit=limit)

    fetcher = ChunkedFetcher(
        settings=settings,
        cache=ChunkCache(settings.chunk_cache_capacity),
        reader=reader or store_chunk_reader(session_factory),
        clock=lambda: NOW,
    )
    return SeriesQueryService(settings=settings, fetcher=fetcher, latest_reader=read_latest, clock=lambda: NOW)


class SeriesQueryTests(TestCase):
    def setUp(self) -> None:
        self.session_factory = memory_session_factory()
        self.service = _service(self.session_factory)

    def _insert_hourly(self, hour_start: int, total: float) -> None:
        with self.session_factory() as db:
            insert_hourly_aggregate(
                db,
                hour_start_ms=hour_start,
                hour_key=hour_key(hour_start, "UTC"),
                fields={"avg_temperature": 18.0, "total_rainfall": total, "record_count": 60},
            )
            db.commit()

    def test_ninety_day_query_falls_back_to_hourly(self) -> None:
        start = NOW - 90 * DAY_MS
        for day in (5, 40, 80):
            self._insert_hourly(utc_ms(2026, 6, 3) + day * DAY_MS, 1.0)

        result = self.service.get_series(QueryRange.from_bounds(start, NOW), ClientProfile())

        self.assertEqual(result.status, "ok")
        self.assertEqual(result.tier_used, "hourly")
        self.assertEqual(len(result.points), 3)
        self.assertEqual(result.fallback_steps, 1)
        self.assertEqual(result.sampling_stride, 1)
        self.assertEqual(result.coverage_description, "3 readings, 90-day span, hourly resolution")

    def test_two_year_query_with_daily_data_uses_daily(self) -> None:
        start = NOW - 730 * DAY_MS
        with self.session_factory() as db:
            day_start = utc_ms(2024, 9, 1)
            while day_start < NOW:
                insert_daily_aggregate(
                    db,
                    date_key=date_key(local_date(day_start, "UTC")),
                    day_start_ms=day_start,
                    fields={"avg_temperature": 15.0, "total_rainfall": 0.5, "record_count": 1440},
                )
                day_start += DAY_MS
            db.commit()

        result = self.service.get_series(QueryRange.from_bounds(start, NOW), ClientProfile())

        self.assertEqual(result.tier_used, "daily")
        self.assertEqual(result.fallback_steps, 0)
        self.assertEqual(len(result.points), 731)

    def test_no_tier_has_data(self) -> None:
        result = self.service.get_series(QueryRange.from_bounds(NOW - 90 * DAY_MS, NOW), ClientProfile())

        self.assertEqual(result.status, "no_data")
        self.assertIsNone(result.tier_used)
        self.assertEqual(result.points, [])
        self.assertEqual(result.coverage_description, NO_DATA_DESCRIPTION)

    def test_raw_range_reports_stride_in_coverage(self) -> None:
        base = utc_ms(2026, 8, 30)
        seed_readings(self.session_factory, [reading(base + index * 30 * MINUTE_MS) for index in range(8)])

        result = self.service.get_series(QueryRange.from_bounds(base, base + 2 * DAY_MS), ClientProfile())

        self.assertEqual(result.tier_used, "raw")
        self.assertEqual(result.sampling_stride, 2)
        self.assertEqual(len(result.points), 4)
        self.assertEqual(result.coverage_description, "4 readings, 2-day span, raw resolution, every 2 readings")

    def test_group_by_day_combines_hourly_points(self) -> None:
        day = utc_ms(2026, 8, 10)
        self._insert_hourly(day + 3 * HOUR_MS, 3.0)
        self._insert_hourly(day + 4 * HOUR_MS, 4.5)

        result = self.service.get_series(
            QueryRange.from_bounds(utc_ms(2026, 8, 9), utc_ms(2026, 8, 20)),
            ClientProfile(),
            group_by="day",
        )

        self.assertEqual(result.tier_used, "hourly")
        self.assertEqual(len(result.points), 1)
        self.assertEqual(result.points[0]["period"], "2026-08-10")
        self.assertAlmostEqual(result.points[0]["total_rainfall"], 7.5)

    def test_ten_day_query_without_hourly_data_falls_back_to_raw(self) -> None:
        base = utc_ms(2026, 8, 25)
        seed_readings(self.session_factory, [reading(base + index * 10 * MINUTE_MS) for index in range(12)])
        stride = sampling_stride_for(10, "desktop")

        result = self.service.get_series(QueryRange.from_bounds(NOW - 10 * DAY_MS, NOW), ClientProfile())

        self.assertEqual(result.tier_used, "raw")
        self.assertEqual(result.fallback_steps, 1)
        self.assertEqual(result.sampling_stride, stride)
        self.assertEqual(len(result.points), len(range(0, 12, stride)))
        self.assertEqual(result.points[0]["timestamp"], base)

    def test_partial_daily_coverage_does_not_fall_back(self) -> None:
        hourly_only = utc_ms(2025, 3, 1, 6)
        self._insert_hourly(hourly_only, 2.0)
        with self.session_factory() as db:
            for offset in range(30):
                day_start = utc_ms(2026, 8, 2) + offset * DAY_MS
                insert_daily_aggregate(
                    db,
                    date_key=date_key(local_date(day_start, "UTC")),
                    day_start_ms=day_start,
                    fields={"avg_temperature": 21.0, "total_rainfall": 0.0, "record_count": 1440},
                )
            db.commit()

        result = self.service.get_series(QueryRange.from_bounds(NOW - 730 * DAY_MS, NOW), ClientProfile())

        self.assertEqual(result.tier_used, "daily")
        self.assertEqual(result.fallback_steps, 0)
        self.assertEqual(len(result.points), 30)
        self.assertNotIn(hourly_only, [point["timestamp"] for point in result.points])

    def test_invalid_group_by_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.service.get_series(QueryRange.from_bounds(NOW - DAY_MS, NOW), group_by="fortnight")

    def test_most_recent_returns_latest_records(self) -> None:
        seed_readings(self.session_factory, [reading(NOW - index * MINUTE_MS) for index in range(10)])

        result = self.service.get_series(QueryRange.most_recent(NOW), ClientProfile())

        self.assertTrue(result.live)
        self.assertEqual(result.record_cap, 7)
        self.assertEqual(len(result.points), 7)
        self.assertEqual(result.points[-1]["timestamp"], NOW)
        self.assertEqual(result.points[0]["timestamp"], NOW - 6 * MINUTE_MS)
        self.assertEqual(result.coverage_description, "7 live readings, real-time")


class ViewCancellationTests(TestCase):
    def test_superseding_query_cancels_the_view_in_flight(self) -> None:
        session_factory = memory_session_factory()
        base = utc_ms(2026, 8, 20)
        seed_readings(session_factory, [reading(base + index * HOUR_MS) for index in range(72)])
        store_reader = store_chunk_reader(session_factory)
        nested: list[SeriesResult] = []
        superseded = Event()

        def reader(tier: str, start_ms: int, end_ms: int):
            records = store_reader(tier, start_ms, end_ms)
            if not superseded.is_set():
                superseded.set()
                nested.append(
                    service.get_series(
                        QueryRange.from_bounds(base, base + DAY_MS),
                        ClientProfile(),
                        view_id="chart",
                    )
                )
            return records

        service = _service(session_factory, reader=reader)

        first = service.get_series(
            QueryRange.from_bounds(base, base + 3 * DAY_MS),
            ClientProfile(),
            view_id="chart",
        )

        self.assertEqual(first.status, "cancelled")
        self.assertEqual(first.points, [])
        self.assertEqual(nested[0].status, "ok")
        self.assertTrue(service.fetcher.cache.stats()["entries"] >= 1)

    def test_switching_view_to_latest_cancels_range_query(self) -> None:
        session_factory = memory_session_factory()
        base = utc_ms(2026, 8, 20)
        seed_readings(session_factory, [reading(base + index * HOUR_MS) for index in range(72)])
        store_reader = store_chunk_reader(session_factory)
        reads: list[tuple[str, int, int]] = []
        live: list[SeriesResult] = []

        def reader(tier: str, start_ms: int, end_ms: int):
            reads.append((tier, start_ms, end_ms))
            records = store_reader(tier, start_ms, end_ms)
            if not live:
                live.append(service.get_series(QueryRange.most_recent(NOW), ClientProfile(), view_id="chart"))
            return records

        service = _service(session_factory, reader=reader)

        first = service.get_series(
            QueryRange.from_bounds(base, base + 3 * DAY_MS),
            ClientProfile(),
            view_id="chart",
        )

        self.assertEqual(first.status, "cancelled")
        self.assertEqual(len(reads), 1)
        self.assertTrue(live[0].live)
        self.assertEqual(live[0].status, "ok")
        self.assertFalse(service.cancel_view("chart"))

    def test_cancel_view_without_query_is_false(self) -> None:
        service = _service(memory_session_factory())

        self.assertFalse(service.cancel_view("missing"))


class LiveSubscriptionTests(TestCase):
    def setUp(self) -> None:
        self.session_factory = memory_session_factory()
        self.service = _service(self.session_factory)
        seed_readings(self.session_factory, [reading(NOW - index * MINUTE_MS) for index in range(3)])

    def test_poll_delivers_only_changed_snapshots(self) -> None:
        received: list[SeriesResult] = []
        subscription = self.service.subscribe_latest(received.append, interval_seconds=60.0)
        subscription.start()
        try:
            deadline = time.monotonic() + 2.0
            while not received and time.monotonic() < deadline:
                time.sleep(0.01)
            self.assertFalse(subscription.poll_once())
            seed_readings(self.session_factory, [reading(NOW + MINUTE_MS)])
            self.assertTrue(subscription.poll_once())
        finally:
            subscription.stop()

        self.assertEqual(len(received), 2)
        self.assertEqual(received[-1].points[-1]["timestamp"], NOW + MINUTE_MS)

    def test_no_callback_after_stop(self) -> None:
        delivered = Event()
        received: list[SeriesResult] = []

        def callback(snapshot: SeriesResult) -> None:
            received.append(snapshot)
            delivered.set()

        subscription = self.service.subscribe_latest(callback, interval_seconds=0.01)
        subscription.start()
        self.assertTrue(delivered.wait(2.0))
        subscription.stop()
        count = len(received)

        seed_readings(self.session_factory, [reading(NOW + MINUTE_MS)])
        time.sleep(0.05)

        self.assertFalse(subscription.active)
        self.assertFalse(subscription.poll_once())
        self.assertEqual(len(received), count)

    def test_restart_after_unfinished_stop_runs_a_single_loop(self) -> None:
        delivered = Event()
        subscription = self.service.subscribe_latest(lambda snapshot: delivered.set(), interval_seconds=0.02)
        subscription.start()
        self.assertTrue(delivered.wait(2.0))

        with patch.object(Thread, "join"):
            subscription.stop()
        subscription.start()
        time.sleep(0.2)
        loops = [thread for thread in running_threads() if thread.name == "live-subscription"]
        subscription.stop()

        self.assertEqual(len(loops), 1)
        self.assertFalse(subscription.active)
