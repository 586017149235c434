from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from weather_backbone.db.base import Base

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
_ID_TYPE = BigInteger().with_variant(Integer(), "sqlite")
_JSON_TYPE = JSON().with_variant(JSONB(), "postgresql")


class WeatherReadingRaw(Base):
    __tablename__ = "weather_readings_raw"
    __table_args__ = (Index("ix_weather_readings_raw_ts", "ts_ms"),)

    id: Mapped[int] = mapped_column(_ID_TYPE, primary_key=True, autoincrement=True)
    ts_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    temperature: Mapped[float | None] = mapped_column(Float)
    humidity: Mapped[float | None] = mapped_column(Float)
    rainfall_rate: Mapped[float | None] = mapped_column(Float)
    rainfall_cumulative: Mapped[float | None] = mapped_column(Float)
    extra_json: Mapped[dict | None] = mapped_column(_JSON_TYPE)
    ingested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class WeatherRollupHourly(Base):
    __tablename__ = "weather_rollup_hourly"
    hour_start_ms: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    hour_key: Mapped[str] = mapped_column(String(16), nullable=False)
    avg_temperature: Mapped[float | None] = mapped_column(Float)
    min_temperature: Mapped[float | None] = mapped_column(Float)
    max_temperature: Mapped[float | None] = mapped_column(Float)
    avg_humidity: Mapped[float | None] = mapped_column(Float)
    min_humidity: Mapped[float | None] = mapped_column(Float)
    max_humidity: Mapped[float | None] = mapped_column(Float)
    avg_rainfall_rate: Mapped[float | None] = mapped_column(Float)
    total_rainfall: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    record_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class WeatherRollupDaily(Base):
    __tablename__ = "weather_rollup_daily"
    __table_args__ = (
        Index("ix_weather_rollup_daily_day_start", "day_start_ms", unique=True),
        CheckConstraint("source_tier IN ('raw','hourly')", name="ck_weather_rollup_daily_source"),
    )

    date_key: Mapped[str] = mapped_column(String(10), primary_key=True)
    day_start_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    avg_temperature: Mapped[float | None] = mapped_column(Float)
    min_temperature: Mapped[float | None] = mapped_column(Float)
    max_temperature: Mapped[float | None] = mapped_column(Float)
    avg_humidity: Mapped[float | None] = mapped_column(Float)
    min_humidity: Mapped[float | None] = mapped_column(Float)
    max_humidity: Mapped[float | None] = mapped_column(Float)
    avg_rainfall_rate: Mapped[float | None] = mapped_column(Float)
    total_rainfall: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    record_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    source_tier: Mapped[str] = mapped_column(String(16), nullable=False, default="raw", server_default="raw")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class RetentionJobRun(Base):
    __tablename__ = "retention_job_runs"
    __table_args__ = (
        Index("ix_retention_job_runs_name_started", "job_name", "started_at"),
        CheckConstraint(
            "job_name IN ('rollup','retention','backfill')",
            name="ck_retention_job_runs_name",
        ),
        CheckConstraint("status IN ('ok','error')", name="ck_retention_job_runs_status"),
    )

    id: Mapped[int] = mapped_column(_ID_TYPE, primary_key=True, autoincrement=True)
    job_name: Mapped[str] = mapped_column(String(64), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    affected_rows: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
        server_default="0",
    )
    details_json: Mapped[dict | list | None] = mapped_column(_JSON_TYPE)
    error_text: Mapped[str | None] = mapped_column(Text)
