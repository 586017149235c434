from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from threading import Event, Lock, Thread

from sqlalchemy.orm import Session, sessionmaker

from weather_backbone.core.config import Settings
from weather_backbone.repositories.job_runs import JobRunSnapshot, get_pipeline_status
from weather_backbone.services.periods import now_ms
from weather_backbone.services.retention import RetentionManager, RetentionResult
from weather_backbone.services.rollup import RollupEngine, RollupRunSummary


class DataPipelineService:
    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        rollup_engine: RollupEngine | None = None,
        retention_manager: RetentionManager | None = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._rollup_engine = rollup_engine or RollupEngine(settings=settings, session_factory=session_factory)
        self._retention_manager = retention_manager or RetentionManager(
            settings=settings,
            session_factory=session_factory,
            rollup_engine=self._rollup_engine,
        )
        self._logger = logging.getLogger("weather_backbone.data_pipeline")
        self._stop_event = Event()
        self._thread: Thread | None = None
        self._lock = Lock()
        self._running = False
        self._last_rollup_attempt_ts: datetime | None = None
        self._last_retention_attempt_ts: datetime | None = None
        self._last_error: str | None = None

    @property
    def rollup_engine(self) -> RollupEngine:
        return self._rollup_engine

    @property
    def retention_manager(self) -> RetentionManager:
        return self._retention_manager

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
        self._stop_event.clear()
        self._thread = Thread(target=self._loop, name="weather-data-pipeline", daemon=True)
        self._thread.start()
        self._logger.info(
            "started data pipeline rollup_job_seconds=%s retention_job_seconds=%s",
            self._settings.rollup_job_seconds,
            self._settings.retention_job_seconds,
        )

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
        with self._lock:
            self._running = False

    def run_rollup_once(self) -> RollupRunSummary:
        with self._lock:
            self._last_rollup_attempt_ts = datetime.now(timezone.utc)
        return self._rollup_engine.run_scheduled_rollup()

    def run_retention_once(self) -> RetentionResult:
        with self._lock:
            self._last_retention_attempt_ts = datetime.now(timezone.utc)
        return self._retention_manager.run_retention()

    def get_status_snapshot(self, db: Session) -> dict[str, object]:
        pipeline = get_pipeline_status(db, now_ms=now_ms())
        with self._lock:
            return {
                "running": self._running and not self._stop_event.is_set(),
                "last_rollup_attempt_ts": _to_iso(self._last_rollup_attempt_ts),
                "last_retention_attempt_ts": _to_iso(self._last_retention_attempt_ts),
                "last_error": self._last_error,
                "last_rollup_run": _job_snapshot_to_dict(pipeline.last_rollup_run),
                "last_retention_run": _job_snapshot_to_dict(pipeline.last_retention_run),
                "last_backfill_run": _job_snapshot_to_dict(pipeline.last_backfill_run),
                "raw_rows_24h": pipeline.raw_rows_24h,
                "hourly_rows_24h": pipeline.hourly_rows_24h,
                "daily_rows_total": pipeline.daily_rows_total,
            }

    def _loop(self) -> None:
        next_rollup = datetime.now(timezone.utc)
        next_retention = datetime.now(timezone.utc)

        while not self._stop_event.is_set():
            now = datetime.now(timezone.utc)
            try:
                if now >= next_rollup:
                    next_rollup = now + timedelta(seconds=self._settings.rollup_job_seconds)
                    self.run_rollup_once()
                if now >= next_retention:
                    next_retention = now + timedelta(seconds=self._settings.retention_job_seconds)
                    self.run_retention_once()
                with self._lock:
                    self._last_error = None
            except Exception as exc:
                self._logger.exception("data pipeline loop iteration failed")
                with self._lock:
                    self._last_error = str(exc)

            self._stop_event.wait(1.0)


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _job_snapshot_to_dict(snapshot: JobRunSnapshot | None) -> dict[str, object] | None:
    if snapshot is None:
        return None
    return {
        "id": snapshot.id,
        "job_name": snapshot.job_name,
        "started_at": _to_iso(snapshot.started_at),
        "finished_at": _to_iso(snapshot.finished_at),
        "status": snapshot.status,
        "affected_rows": snapshot.affected_rows,
        "details_json": snapshot.details_json,
        "error_text": snapshot.error_text,
    }
