from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Request
from sqlalchemy.orm import Session

from weather_backbone.api.weather import router as weather_router
from weather_backbone.core.config import Settings, get_settings
from weather_backbone.core.logging import configure_logging
from weather_backbone.db.session import SessionLocal, check_db_connection, get_db
from weather_backbone.services.chunk_cache import ChunkCache
from weather_backbone.services.data_pipeline import DataPipelineService
from weather_backbone.services.rollup import RollupEngine
from weather_backbone.services.series import SeriesQueryService


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    settings = get_settings()
    rollup_engine = RollupEngine(settings=settings, session_factory=SessionLocal)
    data_pipeline_service = DataPipelineService(
        settings=settings,
        session_factory=SessionLocal,
        rollup_engine=rollup_engine,
    )
    series_service = SeriesQueryService.from_session_factory(
        settings=settings,
        session_factory=SessionLocal,
        cache=ChunkCache(settings.chunk_cache_capacity),
    )

    app.state.settings = settings
    app.state.data_pipeline_service = data_pipeline_service
    app.state.series_service = series_service

    data_pipeline_service.start()
    try:
        yield
    finally:
        data_pipeline_service.stop()


app = FastAPI(title="Weather Backbone", lifespan=lifespan)
app.include_router(weather_router)


@app.get("/health")
def health():
    return {"status": "ok", "service": "weather-backbone"}


@app.get("/status")
def status(request: Request, db: Session = Depends(get_db)):
    db_ok, db_error = check_db_connection(db)
    data_pipeline_service: DataPipelineService | None = getattr(
        request.app.state,
        "data_pipeline_service",
        None,
    )
    series_service: SeriesQueryService | None = getattr(request.app.state, "series_service", None)
    settings: Settings | None = getattr(request.app.state, "settings", None)

    db_status: dict[str, object] = {"ok": db_ok}
    if db_error:
        db_status["error"] = db_error

    if data_pipeline_service is None:
        data_pipeline_status: dict[str, object] = {
            "running": False,
            "last_error": "Data pipeline service not initialized",
            "last_rollup_run": None,
            "last_retention_run": None,
            "raw_rows_24h": 0,
            "hourly_rows_24h": 0,
            "daily_rows_total": 0,
        }
    elif not db_ok:
        data_pipeline_status = {"running": False, "last_error": db_error}
    else:
        data_pipeline_status = data_pipeline_service.get_status_snapshot(db)

    return {
        "status": "working" if db_ok else "degraded",
        "service": "weather-backbone",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_status,
        "data_pipeline": data_pipeline_status,
        "chunk_cache": series_service.fetcher.cache.stats() if series_service else None,
        "config": {
            "station_timezone": settings.station_timezone if settings else None,
            "raw_retention_days": settings.raw_retention_days if settings else None,
            "hourly_retention_days": settings.hourly_retention_days if settings else None,
            "retention_batch_size": settings.retention_batch_size if settings else None,
            "rollup_job_seconds": settings.rollup_job_seconds if settings else None,
            "retention_job_seconds": settings.retention_job_seconds if settings else None,
            "tier_long_horizon_days": settings.tier_long_horizon_days if settings else None,
            "tier_medium_span_days": settings.tier_medium_span_days if settings else None,
            "rainfall_reset_baseline": settings.rainfall_reset_baseline if settings else None,
        },
    }
