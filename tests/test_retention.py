from __future__ import annotations

from unittest import TestCase
from unittest.mock import patch

from weather_backbone.repositories.job_runs import get_job_snapshot
from weather_backbone.repositories.weather_store import (
    count_rows,
    fetch_daily_range,
    fetch_hourly_range,
    fetch_raw_range,
    insert_daily_aggregate,
    insert_hourly_aggregate,
)
from weather_backbone.services.periods import DAY_MS
from weather_backbone.services.retention import RetentionManager, collect_storage_stats, storage_health
from weather_backbone.services.rollup import RollupEngine

from tests.helpers import make_settings, memory_session_factory, reading, seed_readings, utc_ms

NOW = utc_ms(2026, 7, 1, 12)
RAW_CUTOFF = NOW - 60 * DAY_MS


class RetentionManagerTests(TestCase):
    def setUp(self) -> None:
        self.session_factory = memory_session_factory()
        self.settings = make_settings()
        self.rollup_engine = RollupEngine(settings=self.settings, session_factory=self.session_factory)
        self.manager = RetentionManager(
            settings=self.settings,
            session_factory=self.session_factory,
            rollup_engine=self.rollup_engine,
        )
        seed_readings(
            self.session_factory,
            [
                reading(utc_ms(2026, 4, 20, 10), rainfall_cumulative=1.0),
                reading(utc_ms(2026, 4, 20, 10, 30), rainfall_cumulative=2.5),
                reading(RAW_CUTOFF - 60_000),
                reading(RAW_CUTOFF + 60_000),
                reading(utc_ms(2026, 6, 30, 8)),
            ],
        )

    def _raw_timestamps(self) -> list[int]:
        with self.session_factory() as db:
            return [row["timestamp"] for row in fetch_raw_range(db, start_ms=0, end_ms=NOW)]

    def test_expired_raw_readings_are_deleted_and_window_is_kept(self) -> None:
        result = self.manager.run_retention(now=NOW)

        self.assertEqual(result.raw.deleted, 3)
        self.assertTrue(result.raw.complete)
        remaining = self._raw_timestamps()
        self.assertEqual(remaining, [RAW_CUTOFF + 60_000, utc_ms(2026, 6, 30, 8)])
        self.assertTrue(all(ts >= RAW_CUTOFF for ts in remaining))

    def test_daily_aggregates_exist_before_raw_disappears(self) -> None:
        self.manager.run_retention(now=NOW)

        with self.session_factory() as db:
            daily = fetch_daily_range(db, start_ms=utc_ms(2026, 4, 20), end_ms=utc_ms(2026, 4, 21))
            cutoff_day = fetch_daily_range(db, start_ms=utc_ms(2026, 5, 2), end_ms=utc_ms(2026, 5, 3))
        self.assertEqual(len(daily), 1)
        self.assertAlmostEqual(daily[0]["total_rainfall"], 1.5)
        self.assertEqual(daily[0]["record_count"], 2)
        self.assertEqual(len(cutoff_day), 1)
        self.assertEqual(cutoff_day[0]["record_count"], 2)

    def test_daily_aggregates_are_never_deleted(self) -> None:
        ancient = utc_ms(2010, 1, 1)
        with self.session_factory() as db:
            insert_daily_aggregate(
                db,
                date_key="2010-01-01",
                day_start_ms=ancient,
                fields={"total_rainfall": 12.0, "record_count": 1440},
            )
            db.commit()

        self.manager.run_retention(now=NOW)

        with self.session_factory() as db:
            rows = fetch_daily_range(db, start_ms=ancient, end_ms=ancient + DAY_MS)
        self.assertEqual(len(rows), 1)
        self.assertAlmostEqual(rows[0]["total_rainfall"], 12.0)

    def test_expiring_hourly_data_is_cascaded_into_daily_first(self) -> None:
        hour = utc_ms(2020, 1, 1, 6)
        with self.session_factory() as db:
            insert_hourly_aggregate(
                db,
                hour_start_ms=hour,
                hour_key="2020-01-01_06",
                fields={"avg_temperature": 3.0, "total_rainfall": 0.8, "record_count": 60},
            )
            db.commit()

        result = self.manager.run_retention(now=NOW)

        self.assertEqual(result.hourly.deleted, 1)
        with self.session_factory() as db:
            self.assertEqual(fetch_hourly_range(db, start_ms=0, end_ms=utc_ms(2021, 1, 1)), [])
            daily = fetch_daily_range(db, start_ms=utc_ms(2020, 1, 1), end_ms=utc_ms(2020, 1, 2))
        self.assertEqual(daily[0]["source_tier"], "hourly")
        self.assertAlmostEqual(daily[0]["total_rainfall"], 0.8)

    def test_batch_limit_leaves_stale_records_for_next_cycle(self) -> None:
        manager = RetentionManager(
            settings=make_settings(retention_batch_size=1, retention_max_batches=2),
            session_factory=self.session_factory,
        )

        first = manager.run_retention(now=NOW)
        second = manager.run_retention(now=NOW)

        self.assertEqual(first.raw.deleted, 2)
        self.assertFalse(first.raw.complete)
        self.assertEqual(second.raw.deleted, 1)
        self.assertTrue(second.raw.complete)
        self.assertTrue(all(ts >= RAW_CUTOFF for ts in self._raw_timestamps()))

    def test_rollup_failure_aborts_before_deleting(self) -> None:
        with patch.object(
            self.rollup_engine,
            "rollup_range",
            side_effect=RuntimeError("rollup failed"),
        ):
            with self.assertRaises(RuntimeError):
                self.manager.run_retention(now=NOW)

        self.assertEqual(len(self._raw_timestamps()), 5)
        with self.session_factory() as db:
            snapshot = get_job_snapshot(db, job_name="retention")
        self.assertEqual(snapshot.status, "error")

    def test_successful_run_is_recorded(self) -> None:
        self.manager.run_retention(now=NOW)

        with self.session_factory() as db:
            snapshot = get_job_snapshot(db, job_name="retention")
        self.assertEqual(snapshot.status, "ok")
        self.assertEqual(snapshot.affected_rows, 3)
        self.assertEqual(snapshot.details_json["raw"]["cutoff_ms"], RAW_CUTOFF)


class StorageStatsTests(TestCase):
    def test_health_thresholds(self) -> None:
        self.assertEqual(storage_health(10.0), "excellent")
        self.assertEqual(storage_health(50.0), "good")
        self.assertEqual(storage_health(80.0), "warning")
        self.assertEqual(storage_health(95.0), "critical")

    def test_collects_counts_per_tier(self) -> None:
        session_factory = memory_session_factory()
        seed_readings(session_factory, [reading(utc_ms(2026, 6, 1, hour)) for hour in range(4)])

        with session_factory() as db:
            stats = collect_storage_stats(db, settings=make_settings(storage_quota_mb=1.0))
            self.assertEqual(count_rows(db, collection="hourly"), 0)

        self.assertEqual(stats.raw_records, 4)
        self.assertEqual(stats.daily_records, 0)
        self.assertEqual(stats.oldest_raw_ms, utc_ms(2026, 6, 1))
        self.assertAlmostEqual(stats.usage_percent, round(1200 / (1024 * 1024) * 100, 2))
        self.assertEqual(stats.health, "excellent")
