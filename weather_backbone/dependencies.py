from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

from weather_backbone.core.config import Settings

if TYPE_CHECKING:
    from weather_backbone.services.data_pipeline import DataPipelineService
    from weather_backbone.services.series import SeriesQueryService


def get_settings_from_app(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        raise HTTPException(status_code=503, detail="Application settings are not initialized")
    return settings


def get_data_pipeline_service(request: Request) -> "DataPipelineService":
    service = getattr(request.app.state, "data_pipeline_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Data pipeline service is not initialized")
    return service


def get_series_service(request: Request) -> "SeriesQueryService":
    service = getattr(request.app.state, "series_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Series query service is not initialized")
    return service
