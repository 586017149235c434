from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Literal

from weather_backbone.services.field_aliases import resolve_number, resolve_timestamp

ResetBaseline = Literal["zero", "post_reset"]

_logger = logging.getLogger("weather_backbone.rainfall")


@dataclass(frozen=True)
class RainfallReconciliation:
    total_mm: float
    readings_used: int
    resets: int


def counter_points(readings: Iterable[Mapping[str, Any]]) -> list[tuple[int, float]]:
    """Extract ``(timestamp, cumulative)`` pairs sorted by time.

    Readings without a timestamp or a non-negative cumulative value are dropped.
    """
    points: list[tuple[int, float]] = []
    for record in readings:
        ts = resolve_timestamp(record)
        cumulative = resolve_number(record, "rainfall_cumulative")
        if ts is None or cumulative is None or cumulative < 0:
            continue
        points.append((ts, cumulative))
    points.sort(key=lambda point: point[0])
    return points


def reconcile_counter(
    readings: Iterable[Mapping[str, Any]],
    *,
    reset_baseline: ResetBaseline = "zero",
) -> RainfallReconciliation:
    points = counter_points(readings)
    if not points:
        return RainfallReconciliation(total_mm=0.0, readings_used=0, resets=0)

    values = [value for _, value in points]
    reset_indexes = [index for index in range(1, len(values)) if values[index] < values[index - 1]]
    if not reset_indexes:
        return RainfallReconciliation(
            total_mm=max(0.0, values[-1] - values[0]),
            readings_used=len(values),
            resets=0,
        )

    total = 0.0
    for index in range(1, len(values)):
        previous, current = values[index - 1], values[index]
        if current >= previous:
            total += current - previous
        elif reset_baseline == "zero":
            # Counter restarted from zero: everything it shows fell after the reset.
            total += current

    for index in reset_indexes:
        _logger.warning(
            "anomaly rainfall counter reset ts=%s before_mm=%s after_mm=%s",
            points[index][0],
            values[index - 1],
            values[index],
        )

    return RainfallReconciliation(
        total_mm=max(0.0, total),
        readings_used=len(values),
        resets=len(reset_indexes),
    )


def reconcile_period(
    readings: Iterable[Mapping[str, Any]],
    *,
    reset_baseline: ResetBaseline = "zero",
) -> float:
    return reconcile_counter(readings, reset_baseline=reset_baseline).total_mm
