from __future__ import annotations

from dataclasses import asdict
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from weather_backbone.core.config import Settings
from weather_backbone.db.session import get_db
from weather_backbone.dependencies import (
    get_data_pipeline_service,
    get_series_service,
    get_settings_from_app,
)
from weather_backbone.schemas.weather import (
    JobRunResponse,
    JobRunSnapshotResponse,
    PipelineStatusResponse,
    SeriesPointResponse,
    SeriesResponse,
    StorageStatsResponse,
)
from weather_backbone.services.data_pipeline import DataPipelineService
from weather_backbone.services.periods import DAY_MS, now_ms
from weather_backbone.services.retention import collect_storage_stats
from weather_backbone.services.series import SeriesQueryService
from weather_backbone.services.tier_selector import ClientProfile, QueryRange


router = APIRouter(prefix="/api/weather", tags=["weather"])


@router.get("/series", response_model=SeriesResponse)
def get_series(
    start: int | None = Query(default=None, ge=0, description="Range start, epoch ms"),
    end: int | None = Query(default=None, ge=0, description="Range end, epoch ms"),
    latest: bool = Query(default=False, description="Serve the most recent readings instead of a range"),
    device: Literal["mobile", "desktop"] = Query(default="desktop"),
    network: Literal["fast", "slow"] = Query(default="fast"),
    group_by: Literal["hour", "day", "week", "month", "year"] | None = Query(default=None),
    view_id: str | None = Query(default=None, min_length=1, max_length=120),
    series_service: SeriesQueryService = Depends(get_series_service),
) -> SeriesResponse:
    current = now_ms()
    try:
        if latest:
            query_range = QueryRange.most_recent(current)
        else:
            end_value = end if end is not None else current
            start_value = start if start is not None else end_value - DAY_MS
            if start_value >= end_value:
                raise ValueError("'start' must be before 'end'")
            query_range = QueryRange.from_bounds(start_value, end_value)
        result = series_service.get_series(
            query_range,
            ClientProfile(device=device, network=network),
            view_id=view_id,
            group_by=group_by,
            now=current,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Weather store unavailable: {type(exc).__name__}",
        )

    return SeriesResponse(
        status=result.status,
        tier_used=result.tier_used,  # type: ignore[arg-type]
        sampling_stride=result.sampling_stride,
        record_cap=result.record_cap,
        span_days=result.span_days,
        live=result.live,
        group_by=result.group_by,
        coverage_description=result.coverage_description,
        points=[SeriesPointResponse.model_validate(point) for point in result.points],
    )


@router.get("/pipeline/status", response_model=PipelineStatusResponse)
def get_pipeline_status(
    db: Session = Depends(get_db),
    pipeline_service: DataPipelineService = Depends(get_data_pipeline_service),
    series_service: SeriesQueryService = Depends(get_series_service),
) -> PipelineStatusResponse:
    try:
        snapshot = pipeline_service.get_status_snapshot(db)
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Weather store unavailable: {type(exc).__name__}",
        )
    return PipelineStatusResponse(
        running=bool(snapshot.get("running", False)),
        last_error=snapshot.get("last_error"),  # type: ignore[arg-type]
        last_rollup_run=_job_snapshot(snapshot.get("last_rollup_run")),
        last_retention_run=_job_snapshot(snapshot.get("last_retention_run")),
        last_backfill_run=_job_snapshot(snapshot.get("last_backfill_run")),
        raw_rows_24h=int(snapshot.get("raw_rows_24h", 0)),
        hourly_rows_24h=int(snapshot.get("hourly_rows_24h", 0)),
        daily_rows_total=int(snapshot.get("daily_rows_total", 0)),
        chunk_cache=series_service.fetcher.cache.stats(),
    )


@router.get("/storage/stats", response_model=StorageStatsResponse)
def get_storage_stats(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings_from_app),
) -> StorageStatsResponse:
    try:
        stats = collect_storage_stats(db, settings=settings)
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Weather store unavailable: {type(exc).__name__}",
        )
    return StorageStatsResponse.model_validate(asdict(stats))


@router.post("/rollup/run", response_model=JobRunResponse)
def run_rollup(
    pipeline_service: DataPipelineService = Depends(get_data_pipeline_service),
) -> JobRunResponse:
    try:
        summary = pipeline_service.run_rollup_once()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Rollup failed: {type(exc).__name__}",
        )
    return JobRunResponse(job_name="rollup", affected_rows=summary.created, details_json=summary.to_details())


@router.post("/retention/run", response_model=JobRunResponse)
def run_retention(
    pipeline_service: DataPipelineService = Depends(get_data_pipeline_service),
) -> JobRunResponse:
    try:
        result = pipeline_service.run_retention_once()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Retention failed: {type(exc).__name__}",
        )
    return JobRunResponse(job_name="retention", affected_rows=result.deleted, details_json=result.to_details())


def _job_snapshot(value: object) -> JobRunSnapshotResponse | None:
    if not value:
        return None
    return JobRunSnapshotResponse.model_validate(value)
