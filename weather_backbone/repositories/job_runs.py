from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, TypeVar

from sqlalchemy import JSON, DateTime, bindparam, text
from sqlalchemy.orm import Session

from weather_backbone.repositories.weather_store import count_rows

JOB_NAMES = ("rollup", "retention", "backfill")

T = TypeVar("T")


@dataclass(frozen=True)
class JobRunSnapshot:
    id: int
    job_name: str
    started_at: datetime
    finished_at: datetime | None
    status: str
    affected_rows: int
    details_json: dict[str, Any] | list[Any] | None
    error_text: str | None


def insert_job_run(
    db: Session,
    *,
    job_name: str,
    started_at: datetime,
    finished_at: datetime,
    status: str,
    affected_rows: int,
    details_json: dict[str, Any],
    error_text: str | None,
) -> None:
    db.execute(
        text(
            """
            INSERT INTO retention_job_runs
                (job_name, started_at, finished_at, status, affected_rows, details_json, error_text)
            VALUES
                (:job_name, :started_at, :finished_at, :status, :affected_rows, :details_json, :error_text)
            """
        ).bindparams(
            bindparam("started_at", type_=DateTime(timezone=True)),
            bindparam("finished_at", type_=DateTime(timezone=True)),
            bindparam("details_json", type_=JSON),
        ),
        {
            "job_name": job_name,
            "started_at": started_at,
            "finished_at": finished_at,
            "status": status,
            "affected_rows": affected_rows,
            "details_json": details_json,
            "error_text": error_text,
        },
    )


def get_job_snapshot(db: Session, *, job_name: str) -> JobRunSnapshot | None:
    row = db.execute(
        text(
            """
            SELECT id, job_name, started_at, finished_at, status, affected_rows, details_json, error_text
            FROM retention_job_runs
            WHERE job_name = :job_name
            ORDER BY started_at DESC, id DESC
            LIMIT 1
            """
        ).columns(
            started_at=DateTime(timezone=True),
            finished_at=DateTime(timezone=True),
            details_json=JSON,
        ),
        {"job_name": job_name},
    ).mappings().first()
    if row is None:
        return None
    return JobRunSnapshot(
        id=int(row["id"]),
        job_name=str(row["job_name"]),
        started_at=_to_utc(row["started_at"]),
        finished_at=_to_utc(row["finished_at"]) if row["finished_at"] is not None else None,
        status=str(row["status"]),
        affected_rows=int(row["affected_rows"]),
        details_json=row["details_json"],
        error_text=row["error_text"],
    )


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class WeatherPipelineStatus:
    last_rollup_run: JobRunSnapshot | None
    last_retention_run: JobRunSnapshot | None
    last_backfill_run: JobRunSnapshot | None
    raw_rows_24h: int
    hourly_rows_24h: int
    daily_rows_total: int


def get_pipeline_status(db: Session, *, now_ms: int) -> WeatherPipelineStatus:
    since_ms = int(now_ms) - 24 * 60 * 60 * 1000
    return WeatherPipelineStatus(
        last_rollup_run=get_job_snapshot(db, job_name="rollup"),
        last_retention_run=get_job_snapshot(db, job_name="retention"),
        last_backfill_run=get_job_snapshot(db, job_name="backfill"),
        raw_rows_24h=count_rows(db, collection="raw", since_ms=since_ms),
        hourly_rows_24h=count_rows(db, collection="hourly", since_ms=since_ms),
        daily_rows_total=count_rows(db, collection="daily"),
    )


def run_recorded_job(
    db: Session,
    *,
    job_name: str,
    work: Callable[[Session], tuple[int, dict[str, Any], T]],
) -> T:
    """Run ``work`` and record one job row, committing on success and on failure.

    The original exception is re-raised after the error row is stored.
    """
    started_at = datetime.now(timezone.utc)
    try:
        affected_rows, details, result = work(db)
        insert_job_run(
            db,
            job_name=job_name,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            status="ok",
            affected_rows=affected_rows,
            details_json=details,
            error_text=None,
        )
        db.commit()
        return result
    except Exception as exc:
        db.rollback()
        insert_job_run(
            db,
            job_name=job_name,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            status="error",
            affected_rows=0,
            details_json={},
            error_text=str(exc),
        )
        db.commit()
        raise
