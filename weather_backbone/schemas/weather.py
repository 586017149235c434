from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


Tier = Literal["raw", "hourly", "daily"]
SeriesStatus = Literal["ok", "no_data", "cancelled"]


class SeriesPointResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    timestamp: int
    period: str | None = None
    temperature: float | None = None
    humidity: float | None = None
    rainfall_rate: float | None = None
    rainfall_cumulative: float | None = None
    avg_temperature: float | None = None
    min_temperature: float | None = None
    max_temperature: float | None = None
    avg_humidity: float | None = None
    min_humidity: float | None = None
    max_humidity: float | None = None
    avg_rainfall_rate: float | None = None
    total_rainfall: float | None = None
    record_count: int | None = None


class SeriesResponse(BaseModel):
    status: SeriesStatus
    tier_used: Tier | None = None
    sampling_stride: int
    record_cap: int
    span_days: int
    live: bool = False
    group_by: str | None = None
    coverage_description: str
    points: list[SeriesPointResponse] = Field(default_factory=list)


class JobRunSnapshotResponse(BaseModel):
    id: int
    job_name: str
    started_at: datetime
    finished_at: datetime | None = None
    status: str
    affected_rows: int
    details_json: dict[str, Any] | list[Any] | None = None
    error_text: str | None = None


class PipelineStatusResponse(BaseModel):
    running: bool
    last_error: str | None = None
    last_rollup_run: JobRunSnapshotResponse | None = None
    last_retention_run: JobRunSnapshotResponse | None = None
    last_backfill_run: JobRunSnapshotResponse | None = None
    raw_rows_24h: int
    hourly_rows_24h: int
    daily_rows_total: int
    chunk_cache: dict[str, int] = Field(default_factory=dict)


class StorageStatsResponse(BaseModel):
    raw_records: int
    hourly_records: int
    daily_records: int
    oldest_raw_ms: int | None = None
    oldest_hourly_ms: int | None = None
    oldest_daily_ms: int | None = None
    estimated_size_mb: float
    quota_mb: float
    usage_percent: float
    health: Literal["excellent", "good", "warning", "critical"]


class JobRunResponse(BaseModel):
    job_name: str
    affected_rows: int
    details_json: dict[str, Any] = Field(default_factory=dict)
