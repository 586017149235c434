"""weather raw/hourly/daily tiers + retention job runs

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _aggregate_columns() -> list[sa.Column]:
    return [
        sa.Column("avg_temperature", sa.Float(), nullable=True),
        sa.Column("min_temperature", sa.Float(), nullable=True),
        sa.Column("max_temperature", sa.Float(), nullable=True),
        sa.Column("avg_humidity", sa.Float(), nullable=True),
        sa.Column("min_humidity", sa.Float(), nullable=True),
        sa.Column("max_humidity", sa.Float(), nullable=True),
        sa.Column("avg_rainfall_rate", sa.Float(), nullable=True),
        sa.Column("total_rainfall", sa.Float(), nullable=False, server_default="0"),
        sa.Column("record_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "weather_readings_raw",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("ts_ms", sa.BigInteger(), nullable=False),
        sa.Column("temperature", sa.Float(), nullable=True),
        sa.Column("humidity", sa.Float(), nullable=True),
        sa.Column("rainfall_rate", sa.Float(), nullable=True),
        sa.Column("rainfall_cumulative", sa.Float(), nullable=True),
        sa.Column("extra_json", _JSON, nullable=True),
        sa.Column("ingested_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_weather_readings_raw_ts", "weather_readings_raw", ["ts_ms"])

    op.create_table(
        "weather_rollup_hourly",
        sa.Column("hour_start_ms", sa.BigInteger(), nullable=False),
        sa.Column("hour_key", sa.String(length=16), nullable=False),
        *_aggregate_columns(),
        sa.PrimaryKeyConstraint("hour_start_ms"),
    )

    op.create_table(
        "weather_rollup_daily",
        sa.Column("date_key", sa.String(length=10), nullable=False),
        sa.Column("day_start_ms", sa.BigInteger(), nullable=False),
        sa.Column("source_tier", sa.String(length=16), nullable=False, server_default="raw"),
        *_aggregate_columns(),
        sa.PrimaryKeyConstraint("date_key"),
        sa.CheckConstraint("source_tier IN ('raw','hourly')", name="ck_weather_rollup_daily_source"),
    )
    op.create_index(
        "ix_weather_rollup_daily_day_start",
        "weather_rollup_daily",
        ["day_start_ms"],
        unique=True,
    )

    op.create_table(
        "retention_job_runs",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("job_name", sa.String(length=64), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("affected_rows", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("details_json", _JSON, nullable=True),
        sa.Column("error_text", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "job_name IN ('rollup','retention','backfill')",
            name="ck_retention_job_runs_name",
        ),
        sa.CheckConstraint("status IN ('ok','error')", name="ck_retention_job_runs_status"),
    )
    op.create_index(
        "ix_retention_job_runs_name_started",
        "retention_job_runs",
        ["job_name", "started_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_retention_job_runs_name_started", table_name="retention_job_runs")
    op.drop_table("retention_job_runs")

    op.drop_index("ix_weather_rollup_daily_day_start", table_name="weather_rollup_daily")
    op.drop_table("weather_rollup_daily")

    op.drop_table("weather_rollup_hourly")

    op.drop_index("ix_weather_readings_raw_ts", table_name="weather_readings_raw")
    op.drop_table("weather_readings_raw")
