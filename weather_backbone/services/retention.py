from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from weather_backbone.core.config import Settings
from weather_backbone.repositories.job_runs import run_recorded_job
from weather_backbone.repositories.weather_store import (
    count_rows,
    delete_by_keys,
    list_expired_keys,
    oldest_timestamp,
)
from weather_backbone.services.periods import DAY_MS, day_start_ms, iter_days, now_ms
from weather_backbone.services.rollup import RollupEngine

# Estimated on-disk bytes per record, used for quota reporting only.
RECORD_SIZE_BYTES = {"raw": 300, "hourly": 400, "daily": 500}


@dataclass(frozen=True)
class CollectionPurge:
    collection: str
    cutoff_ms: int
    deleted: int
    batches: int
    complete: bool


@dataclass(frozen=True)
class RetentionResult:
    now_ms: int
    raw: CollectionPurge
    hourly: CollectionPurge
    rollups_created: int

    @property
    def deleted(self) -> int:
        return self.raw.deleted + self.hourly.deleted

    def to_details(self) -> dict[str, Any]:
        return {
            "now_ms": self.now_ms,
            "raw": asdict(self.raw),
            "hourly": asdict(self.hourly),
            "rollups_created": self.rollups_created,
        }


@dataclass(frozen=True)
class StorageStats:
    raw_records: int
    hourly_records: int
    daily_records: int
    oldest_raw_ms: int | None
    oldest_hourly_ms: int | None
    oldest_daily_ms: int | None
    estimated_size_mb: float
    quota_mb: float
    usage_percent: float
    health: str


class RetentionManager:
    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        rollup_engine: RollupEngine | None = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._rollup_engine = rollup_engine or RollupEngine(
            settings=settings,
            session_factory=session_factory,
        )
        self._logger = logging.getLogger("weather_backbone.retention")

    def run_retention(self, *, now: int | None = None) -> RetentionResult:
        current = now_ms() if now is None else int(now)

        def work(db: Session) -> tuple[int, dict[str, Any], RetentionResult]:
            result = self._run(db, current)
            return result.deleted, result.to_details(), result

        with self._session_factory() as db:
            result = run_recorded_job(db, job_name="retention", work=work)

        self._logger.info(
            "retention run finished raw_deleted=%s hourly_deleted=%s raw_complete=%s hourly_complete=%s",
            result.raw.deleted,
            result.hourly.deleted,
            result.raw.complete,
            result.hourly.complete,
        )
        return result

    def raw_cutoff(self, now: int) -> int:
        return int(now) - self._settings.raw_retention_days * DAY_MS

    def hourly_cutoff(self, now: int) -> int:
        return int(now) - self._settings.hourly_retention_days * DAY_MS

    def _run(self, db: Session, now: int) -> RetentionResult:
        raw_cutoff = self.raw_cutoff(now)
        hourly_cutoff = self.hourly_cutoff(now)

        # Any failure here propagates before a single row is deleted.
        rollups_created = self._ensure_rollups_before_raw_expiry(db, raw_cutoff, now)
        rollups_created += self._ensure_daily_before_hourly_expiry(db, hourly_cutoff, now)

        raw = self._purge(db, collection="raw", cutoff_ms=raw_cutoff)
        hourly = self._purge(db, collection="hourly", cutoff_ms=hourly_cutoff)
        return RetentionResult(now_ms=now, raw=raw, hourly=hourly, rollups_created=rollups_created)

    def _ensure_rollups_before_raw_expiry(self, db: Session, raw_cutoff: int, now: int) -> int:
        oldest = oldest_timestamp(db, collection="raw")
        horizon = min(now, raw_cutoff + self._settings.retention_rollup_margin_days * DAY_MS)
        if oldest is None or oldest >= horizon:
            return 0
        start = day_start_ms(oldest, self._settings.station_timezone)
        summary = self._rollup_engine.rollup_range(db, start_ms=start, end_ms=horizon, now=now)
        db.commit()
        if summary.created:
            self._logger.info(
                "rolled up expiring raw data start_ms=%s end_ms=%s created=%s",
                start,
                horizon,
                summary.created,
            )
        return summary.created

    def _ensure_daily_before_hourly_expiry(self, db: Session, hourly_cutoff: int, now: int) -> int:
        oldest = oldest_timestamp(db, collection="hourly")
        horizon = min(now, hourly_cutoff + self._settings.retention_rollup_margin_days * DAY_MS)
        if oldest is None or oldest >= horizon:
            return 0
        created = 0
        for day, _, day_end in iter_days(oldest, horizon - 1, self._settings.station_timezone):
            if day_end > horizon:
                break
            result = self._rollup_engine.rollup_day_in(db, day, source="hourly", now=now)
            if result.outcome == "created":
                created += 1
        db.commit()
        return created

    def _purge(self, db: Session, *, collection: str, cutoff_ms: int) -> CollectionPurge:
        deleted = 0
        batches = 0
        complete = False
        while batches < self._settings.retention_max_batches:
            keys = list_expired_keys(
                db,
                collection=collection,
                cutoff_ms=cutoff_ms,
                limit=self._settings.retention_batch_size,
            )
            if not keys:
                complete = True
                break
            deleted += delete_by_keys(db, collection=collection, keys=keys, cutoff_ms=cutoff_ms)
            db.commit()
            batches += 1
            self._logger.debug(
                "retention batch collection=%s batch=%s keys=%s",
                collection,
                batches,
                len(keys),
            )
        if not complete:
            self._logger.warning(
                "retention batch limit reached collection=%s batches=%s deleted=%s",
                collection,
                batches,
                deleted,
            )
        return CollectionPurge(
            collection=collection,
            cutoff_ms=cutoff_ms,
            deleted=deleted,
            batches=batches,
            complete=complete,
        )


def collect_storage_stats(db: Session, *, settings: Settings) -> StorageStats:
    counts = {collection: count_rows(db, collection=collection) for collection in RECORD_SIZE_BYTES}
    size_bytes = sum(counts[name] * RECORD_SIZE_BYTES[name] for name in RECORD_SIZE_BYTES)
    size_mb = size_bytes / (1024 * 1024)
    usage = size_mb / settings.storage_quota_mb * 100.0
    return StorageStats(
        raw_records=counts["raw"],
        hourly_records=counts["hourly"],
        daily_records=counts["daily"],
        oldest_raw_ms=oldest_timestamp(db, collection="raw"),
        oldest_hourly_ms=oldest_timestamp(db, collection="hourly"),
        oldest_daily_ms=oldest_timestamp(db, collection="daily"),
        estimated_size_mb=round(size_mb, 3),
        quota_mb=settings.storage_quota_mb,
        usage_percent=round(usage, 2),
        health=storage_health(usage),
    )


def storage_health(usage_percent: float) -> str:
    if usage_percent < 50.0:
        return "excellent"
    if usage_percent < 80.0:
        return "good"
    if usage_percent < 95.0:
        return "warning"
    return "critical"
