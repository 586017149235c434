from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any

# Ordered per attribute: the first alias carrying a numeric value wins.
# New firmware field names are added here, not in the aggregation code.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "temperature": ("temperature", "temp", "avgTemperature"),
    "humidity": ("humidity", "hum", "avgHumidity"),
    "rainfall_rate": (
        "rainfall_rate",
        "rainRateEstimated_mm_hr_bucket",
        "rainRate_mm_hr",
        "rainRate_mm",
        "rainRate",
    ),
    "rainfall_cumulative": (
        "rainfall_cumulative",
        "rainfall_daily_mm",
        "rainfall_total_estimated_mm_bucket",
        "rainfall_cumulative_mm",
    ),
}


def as_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def resolve_number(record: Mapping[str, Any], attribute: str) -> float | None:
    aliases = FIELD_ALIASES.get(attribute)
    if aliases is None:
        raise KeyError(f"unknown reading attribute: {attribute}")
    for alias in aliases:
        number = as_number(record.get(alias))
        if number is not None:
            return number
    return None


def resolve_timestamp(record: Mapping[str, Any]) -> int | None:
    for key in ("timestamp", "ts_ms"):
        number = as_number(record.get(key))
        if number is not None:
            return int(number)
    return None
