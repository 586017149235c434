from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from sqlalchemy import JSON, bindparam, text
from sqlalchemy.orm import Session

COLLECTIONS = ("raw", "hourly", "daily")

# collection -> (table, order column, key column)
_TABLES: dict[str, tuple[str, str, str]] = {
    "raw": ("weather_readings_raw", "ts_ms", "id"),
    "hourly": ("weather_rollup_hourly", "hour_start_ms", "hour_start_ms"),
    "daily": ("weather_rollup_daily", "day_start_ms", "date_key"),
}

_AGGREGATE_COLUMNS = (
    "avg_temperature",
    "min_temperature",
    "max_temperature",
    "avg_humidity",
    "min_humidity",
    "max_humidity",
    "avg_rainfall_rate",
    "total_rainfall",
    "record_count",
)
_AGGREGATE_SELECT = ", ".join(_AGGREGATE_COLUMNS)
_AGGREGATE_VALUES = ", ".join(f":{name}" for name in _AGGREGATE_COLUMNS)


def append_raw_reading(
    db: Session,
    *,
    ts_ms: int,
    temperature: float | None = None,
    humidity: float | None = None,
    rainfall_rate: float | None = None,
    rainfall_cumulative: float | None = None,
    extra: dict[str, Any] | None = None,
) -> None:
    db.execute(
        text(
            """
            INSERT INTO weather_readings_raw
                (ts_ms, temperature, humidity, rainfall_rate, rainfall_cumulative, extra_json)
            VALUES
                (:ts_ms, :temperature, :humidity, :rainfall_rate, :rainfall_cumulative, :extra_json)
            """
        ).bindparams(bindparam("extra_json", type_=JSON)),
        {
            "ts_ms": int(ts_ms),
            "temperature": temperature,
            "humidity": humidity,
            "rainfall_rate": rainfall_rate,
            "rainfall_cumulative": rainfall_cumulative,
            "extra_json": extra or None,
        },
    )


def fetch_range(
    db: Session,
    *,
    collection: str,
    start_ms: int,
    end_ms: int,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """Read ``[start_ms, end_ms)`` from one collection ordered by timestamp."""
    if collection == "raw":
        return fetch_raw_range(db, start_ms=start_ms, end_ms=end_ms, limit=limit)
    if collection == "hourly":
        return fetch_hourly_range(db, start_ms=start_ms, end_ms=end_ms, limit=limit)
    if collection == "daily":
        return fetch_daily_range(db, start_ms=start_ms, end_ms=end_ms, limit=limit)
    raise ValueError("collection must be one of raw|hourly|daily")


def fetch_raw_range(
    db: Session,
    *,
    start_ms: int,
    end_ms: int,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    rows = db.execute(
        text(
            f"""
            SELECT id, ts_ms, temperature, humidity, rainfall_rate, rainfall_cumulative, extra_json
            FROM weather_readings_raw
            WHERE ts_ms >= :start_ms AND ts_ms < :end_ms
            ORDER BY ts_ms ASC, id ASC
            {_limit_clause(limit)}
            """
        ).columns(extra_json=JSON),
        _range_params(start_ms, end_ms, limit),
    ).mappings()
    return [_raw_record(row) for row in rows]


def fetch_latest_raw(db: Session, *, limit: int) -> list[dict[str, Any]]:
    rows = db.execute(
        text(
            """
            SELECT id, ts_ms, temperature, humidity, rainfall_rate, rainfall_cumulative, extra_json
            FROM weather_readings_raw
            ORDER BY ts_ms DESC, id DESC
            LIMIT :limit
            """
        ).columns(extra_json=JSON),
        {"limit": max(1, int(limit))},
    ).mappings()
    records = [_raw_record(row) for row in rows]
    records.reverse()
    return records


def fetch_hourly_range(
    db: Session,
    *,
    start_ms: int,
    end_ms: int,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    rows = db.execute(
        text(
            f"""
            SELECT hour_start_ms, hour_key, {_AGGREGATE_SELECT}
            FROM weather_rollup_hourly
            WHERE hour_start_ms >= :start_ms AND hour_start_ms < :end_ms
            ORDER BY hour_start_ms ASC
            {_limit_clause(limit)}
            """
        ),
        _range_params(start_ms, end_ms, limit),
    ).mappings()
    records = []
    for row in rows:
        record = dict(row)
        record["timestamp"] = int(record.pop("hour_start_ms"))
        records.append(record)
    return records


def fetch_daily_range(
    db: Session,
    *,
    start_ms: int,
    end_ms: int,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    rows = db.execute(
        text(
            f"""
            SELECT date_key, day_start_ms, source_tier, {_AGGREGATE_SELECT}
            FROM weather_rollup_daily
            WHERE day_start_ms >= :start_ms AND day_start_ms < :end_ms
            ORDER BY day_start_ms ASC
            {_limit_clause(limit)}
            """
        ),
        _range_params(start_ms, end_ms, limit),
    ).mappings()
    records = []
    for row in rows:
        record = dict(row)
        record["timestamp"] = int(record.pop("day_start_ms"))
        record["date"] = record.pop("date_key")
        records.append(record)
    return records


def hourly_aggregate_exists(db: Session, *, hour_start_ms: int) -> bool:
    row = db.execute(
        text("SELECT 1 FROM weather_rollup_hourly WHERE hour_start_ms = :hour_start_ms"),
        {"hour_start_ms": int(hour_start_ms)},
    ).first()
    return row is not None


def daily_aggregate_exists(db: Session, *, date_key: str) -> bool:
    row = db.execute(
        text("SELECT 1 FROM weather_rollup_daily WHERE date_key = :date_key"),
        {"date_key": date_key},
    ).first()
    return row is not None


def insert_hourly_aggregate(
    db: Session,
    *,
    hour_start_ms: int,
    hour_key: str,
    fields: Mapping[str, Any],
) -> bool:
    result = db.execute(
        text(
            f"""
            INSERT INTO weather_rollup_hourly
                (hour_start_ms, hour_key, {_AGGREGATE_SELECT})
            VALUES
                (:hour_start_ms, :hour_key, {_AGGREGATE_VALUES})
            ON CONFLICT DO NOTHING
            """
        ),
        {
            "hour_start_ms": int(hour_start_ms),
            "hour_key": hour_key,
            **_aggregate_params(fields),
        },
    )
    return (result.rowcount or 0) > 0


def insert_daily_aggregate(
    db: Session,
    *,
    date_key: str,
    day_start_ms: int,
    fields: Mapping[str, Any],
    source_tier: str = "raw",
) -> bool:
    result = db.execute(
        text(
            f"""
            INSERT INTO weather_rollup_daily
                (date_key, day_start_ms, source_tier, {_AGGREGATE_SELECT})
            VALUES
                (:date_key, :day_start_ms, :source_tier, {_AGGREGATE_VALUES})
            ON CONFLICT DO NOTHING
            """
        ),
        {
            "date_key": date_key,
            "day_start_ms": int(day_start_ms),
            "source_tier": source_tier,
            **_aggregate_params(fields),
        },
    )
    return (result.rowcount or 0) > 0


def list_expired_keys(
    db: Session,
    *,
    collection: str,
    cutoff_ms: int,
    limit: int,
) -> list[Any]:
    table, order_column, key_column = _table_for(collection)
    if collection == "daily":
        raise ValueError("daily aggregates never expire")
    rows = db.execute(
        text(
            f"""
            SELECT {key_column}
            FROM {table}
            WHERE {order_column} < :cutoff_ms
            ORDER BY {order_column} ASC
            LIMIT :limit
            """
        ),
        {"cutoff_ms": int(cutoff_ms), "limit": max(1, int(limit))},
    )
    return [row[0] for row in rows]


def delete_by_keys(db: Session, *, collection: str, keys: list[Any], cutoff_ms: int) -> int:
    """Delete the given keys, re-checking the cutoff so nothing inside the window goes."""
    if not keys:
        return 0
    table, order_column, key_column = _table_for(collection)
    if collection == "daily":
        raise ValueError("daily aggregates never expire")
    result = db.execute(
        text(
            f"""
            DELETE FROM {table}
            WHERE {key_column} IN :keys
              AND {order_column} < :cutoff_ms
            """
        ).bindparams(bindparam("keys", expanding=True)),
        {"keys": list(keys), "cutoff_ms": int(cutoff_ms)},
    )
    return max(0, result.rowcount or 0)


def oldest_timestamp(db: Session, *, collection: str) -> int | None:
    table, order_column, _ = _table_for(collection)
    value = db.scalar(text(f"SELECT MIN({order_column}) FROM {table}"))
    return int(value) if value is not None else None


def count_rows(db: Session, *, collection: str, since_ms: int | None = None) -> int:
    table, order_column, _ = _table_for(collection)
    if since_ms is None:
        return int(db.scalar(text(f"SELECT COUNT(*) FROM {table}")) or 0)
    return int(
        db.scalar(
            text(f"SELECT COUNT(*) FROM {table} WHERE {order_column} >= :since_ms"),
            {"since_ms": int(since_ms)},
        )
        or 0
    )


def _table_for(collection: str) -> tuple[str, str, str]:
    table = _TABLES.get(collection)
    if table is None:
        raise ValueError("collection must be one of raw|hourly|daily")
    return table


def _limit_clause(limit: int | None) -> str:
    return "" if limit is None else "LIMIT :limit"


def _range_params(start_ms: int, end_ms: int, limit: int | None) -> dict[str, int]:
    params = {"start_ms": int(start_ms), "end_ms": int(end_ms)}
    if limit is not None:
        params["limit"] = max(1, int(limit))
    return params


def _aggregate_params(fields: Mapping[str, Any]) -> dict[str, Any]:
    params = {name: fields.get(name) for name in _AGGREGATE_COLUMNS}
    params["total_rainfall"] = float(params["total_rainfall"] or 0.0)
    params["record_count"] = int(params["record_count"] or 0)
    return params


def _raw_record(row: Mapping[str, Any]) -> dict[str, Any]:
    extra = row.get("extra_json")
    record: dict[str, Any] = dict(extra) if isinstance(extra, dict) else {}
    record["id"] = int(row["id"])
    record["timestamp"] = int(row["ts_ms"])
    for name in ("temperature", "humidity", "rainfall_rate", "rainfall_cumulative"):
        value = row.get(name)
        if value is not None or name not in record:
            record[name] = value
    return record
