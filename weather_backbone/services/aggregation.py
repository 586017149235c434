from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import asdict, dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Any

from weather_backbone.core.config import Settings
from weather_backbone.services.field_aliases import as_number, resolve_number, resolve_timestamp
from weather_backbone.services.periods import day_bounds, hour_key, hour_start_ms, local_date
from weather_backbone.services.rainfall import ResetBaseline, reconcile_counter

_logger = logging.getLogger("weather_backbone.aggregation")


class CombineRule(str, Enum):
    MEAN = "mean"
    MIN = "min"
    MAX = "max"
    SUM = "sum"


# Applied identically at every cascade level (hour -> day -> week/month/year).
# Averages are averaged without record_count weighting; totals are summed.
FIELD_RULES: dict[str, CombineRule] = {
    "avg_temperature": CombineRule.MEAN,
    "min_temperature": CombineRule.MIN,
    "max_temperature": CombineRule.MAX,
    "avg_humidity": CombineRule.MEAN,
    "min_humidity": CombineRule.MIN,
    "max_humidity": CombineRule.MAX,
    "avg_rainfall_rate": CombineRule.MEAN,
    "total_rainfall": CombineRule.SUM,
    "record_count": CombineRule.SUM,
}

GROUP_PERIODS = ("hour", "day", "week", "month", "year")


@dataclass(frozen=True)
class ValueBounds:
    temperature_min: float = -50.0
    temperature_max: float = 70.0
    humidity_min: float = 0.0
    humidity_max: float = 100.0
    rainfall_rate_max: float = 500.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ValueBounds":
        return cls(
            temperature_min=settings.temperature_min_c,
            temperature_max=settings.temperature_max_c,
            humidity_min=settings.humidity_min_pct,
            humidity_max=settings.humidity_max_pct,
            rainfall_rate_max=settings.rainfall_rate_max_mm_hr,
        )

    def accepts(self, attribute: str, value: float) -> bool:
        if attribute == "temperature":
            return self.temperature_min <= value <= self.temperature_max
        if attribute == "humidity":
            return self.humidity_min <= value <= self.humidity_max
        if attribute == "rainfall_rate":
            return 0.0 <= value <= self.rainfall_rate_max
        return True


@dataclass(frozen=True)
class PeriodSummary:
    avg_temperature: float | None
    min_temperature: float | None
    max_temperature: float | None
    avg_humidity: float | None
    min_humidity: float | None
    max_humidity: float | None
    avg_rainfall_rate: float | None
    total_rainfall: float
    record_count: int
    anomalies: int = 0
    rainfall_resets: int = 0

    def aggregate_fields(self) -> dict[str, Any]:
        payload = asdict(self)
        return {name: payload[name] for name in FIELD_RULES}


class _Stat:
    __slots__ = ("total", "count", "low", "high")

    def __init__(self) -> None:
        self.total = 0.0
        self.count = 0
        self.low: float | None = None
        self.high: float | None = None

    def add(self, value: float) -> None:
        self.total += value
        self.count += 1
        self.low = value if self.low is None else min(self.low, value)
        self.high = value if self.high is None else max(self.high, value)

    @property
    def mean(self) -> float | None:
        return self.total / self.count if self.count else None


def summarize_readings(
    readings: Sequence[Mapping[str, Any]],
    *,
    bounds: ValueBounds | None = None,
    reset_baseline: ResetBaseline = "zero",
) -> PeriodSummary:
    bounds = bounds or ValueBounds()
    temperature = _Stat()
    humidity = _Stat()
    rate = _Stat()
    rejected: dict[str, int] = {}

    for record in readings:
        for attribute, stat in (("temperature", temperature), ("humidity", humidity)):
            value = resolve_number(record, attribute)
            if value is None:
                continue
            if not bounds.accepts(attribute, value):
                rejected[attribute] = rejected.get(attribute, 0) + 1
                continue
            stat.add(value)

        rate_value = resolve_number(record, "rainfall_rate")
        if rate_value is not None and rate_value > 0:
            if bounds.accepts("rainfall_rate", rate_value):
                rate.add(rate_value)
            else:
                rejected["rainfall_rate"] = rejected.get("rainfall_rate", 0) + 1

    for attribute, count in sorted(rejected.items()):
        _logger.warning("anomaly out-of-range values excluded field=%s count=%s", attribute, count)

    rainfall = reconcile_counter(readings, reset_baseline=reset_baseline)
    return PeriodSummary(
        avg_temperature=temperature.mean,
        min_temperature=temperature.low,
        max_temperature=temperature.high,
        avg_humidity=humidity.mean,
        min_humidity=humidity.low,
        max_humidity=humidity.high,
        avg_rainfall_rate=rate.mean,
        total_rainfall=rainfall.total_mm,
        record_count=len(readings),
        anomalies=sum(rejected.values()) + rainfall.resets,
        rainfall_resets=rainfall.resets,
    )


def combine_aggregates(aggregates: Iterable[Mapping[str, Any]]) -> dict[str, Any]:
    """Combine lower-level aggregates into one using ``FIELD_RULES``."""
    collected: dict[str, list[float]] = {name: [] for name in FIELD_RULES}
    for aggregate in aggregates:
        for name in FIELD_RULES:
            value = as_number(aggregate.get(name))
            if value is not None:
                collected[name].append(value)

    combined: dict[str, Any] = {}
    for name, rule in FIELD_RULES.items():
        values = collected[name]
        if rule is CombineRule.SUM:
            combined[name] = sum(values)
        elif not values:
            combined[name] = None
        elif rule is CombineRule.MEAN:
            combined[name] = sum(values) / len(values)
        elif rule is CombineRule.MIN:
            combined[name] = min(values)
        else:
            combined[name] = max(values)
    combined["record_count"] = int(combined["record_count"])
    return combined


def bucket_for(ts_ms: int, period: str, tz_name: str) -> tuple[int, str]:
    """Return ``(bucket_start_ms, bucket_key)`` for a timestamp."""
    if period == "hour":
        start = hour_start_ms(ts_ms, tz_name)
        return start, hour_key(start, tz_name)

    day = local_date(ts_ms, tz_name)
    if period == "day":
        bucket_day = day
    elif period == "week":
        bucket_day = day - timedelta(days=day.weekday())
    elif period == "month":
        bucket_day = date(day.year, day.month, 1)
    elif period == "year":
        bucket_day = date(day.year, 1, 1)
    else:
        raise ValueError(f"group_by must be one of {'|'.join(GROUP_PERIODS)}")
    return day_bounds(bucket_day, tz_name)[0], bucket_day.isoformat()


def regroup(
    points: Sequence[Mapping[str, Any]],
    *,
    tier: str,
    period: str,
    tz_name: str,
    bounds: ValueBounds | None = None,
    reset_baseline: ResetBaseline = "zero",
) -> list[dict[str, Any]]:
    """Group series points into coarser buckets for display.

    Raw readings are summarized from scratch; aggregate tiers are combined with
    ``FIELD_RULES`` so rainfall totals stay sums at every level.
    """
    groups: dict[int, tuple[str, list[Mapping[str, Any]]]] = {}
    for point in points:
        ts = resolve_timestamp(point)
        if ts is None:
            continue
        start, key = bucket_for(ts, period, tz_name)
        groups.setdefault(start, (key, []))[1].append(point)

    result: list[dict[str, Any]] = []
    for start in sorted(groups):
        key, members = groups[start]
        if tier == "raw":
            fields = summarize_readings(
                members,
                bounds=bounds,
                reset_baseline=reset_baseline,
            ).aggregate_fields()
        else:
            fields = combine_aggregates(members)
        result.append({"timestamp": start, "period": key, **fields})
    return result
