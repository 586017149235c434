from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from weather_backbone.core.config import Settings
from weather_backbone.db import models  # noqa: F401
from weather_backbone.db.base import Base
from weather_backbone.services.periods import to_ms
from weather_backbone.services.reading_ingest import ingest_payloads

MINUTE_MS = 60 * 1000


def memory_session_factory() -> sessionmaker:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {"database_url": "sqlite+pysqlite:///:memory:", "station_timezone": "UTC"}
    values.update(overrides)
    return Settings(**values)


def utc_ms(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> int:
    return to_ms(datetime(year, month, day, hour, minute, tzinfo=timezone.utc))


def seed_readings(session_factory: sessionmaker, payloads: list[dict[str, Any]]) -> int:
    with session_factory() as db:
        return ingest_payloads(db, payloads).stored


def reading(
    ts_ms: int,
    *,
    temperature: float | None = 20.0,
    humidity: float | None = 50.0,
    rainfall_rate: float | None = 0.0,
    rainfall_cumulative: float | None = 0.0,
) -> dict[str, Any]:
    return {
        "timestamp": ts_ms,
        "temperature": temperature,
        "humidity": humidity,
        "rainfall_rate": rainfall_rate,
        "rainfall_cumulative": rainfall_cumulative,
    }
