from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Literal

from sqlalchemy.orm import Session, sessionmaker

from weather_backbone.core.config import Settings
from weather_backbone.repositories.job_runs import run_recorded_job
from weather_backbone.repositories.weather_store import (
    daily_aggregate_exists,
    fetch_hourly_range,
    fetch_raw_range,
    hourly_aggregate_exists,
    insert_daily_aggregate,
    insert_hourly_aggregate,
)
from weather_backbone.services.aggregation import ValueBounds, combine_aggregates, summarize_readings
from weather_backbone.services.periods import (
    DAY_MS,
    HOUR_MS,
    date_key,
    day_bounds,
    hour_key,
    hour_start_ms,
    iter_days,
    iter_hours,
    now_ms,
)

RollupOutcome = Literal["created", "exists", "no_data", "period_not_elapsed"]
RollupSource = Literal["raw", "hourly"]
ROLLUP_OUTCOMES: tuple[str, ...] = ("created", "exists", "no_data", "period_not_elapsed")


@dataclass(frozen=True)
class RollupResult:
    period: Literal["hour", "day"]
    key: str
    start_ms: int
    end_ms: int
    outcome: RollupOutcome
    record_count: int = 0
    source_tier: RollupSource = "raw"


@dataclass
class RollupRunSummary:
    start_ms: int
    end_ms: int
    hours: Counter = field(default_factory=Counter)
    days: Counter = field(default_factory=Counter)

    def add(self, result: RollupResult) -> None:
        target = self.hours if result.period == "hour" else self.days
        target[result.outcome] += 1

    @property
    def created(self) -> int:
        return self.hours["created"] + self.days["created"]

    def to_details(self) -> dict[str, Any]:
        return {
            "start_ms": self.start_ms,
            "end_ms": self.end_ms,
            "hours": {outcome: self.hours[outcome] for outcome in ROLLUP_OUTCOMES},
            "days": {outcome: self.days[outcome] for outcome in ROLLUP_OUTCOMES},
        }


class RollupEngine:
    """Builds hourly and daily aggregates from raw readings.

    Every write is insert-if-absent keyed by the period start, so re-running any
    operation over the same periods is a no-op.
    """

    def __init__(self, *, settings: Settings, session_factory: sessionmaker):
        self._settings = settings
        self._session_factory = session_factory
        self._logger = logging.getLogger("weather_backbone.rollup")
        self._bounds = ValueBounds.from_settings(settings)

    @property
    def tz_name(self) -> str:
        return self._settings.station_timezone

    def rollup_hour(self, hour_start: int, *, now: int | None = None) -> RollupResult:
        with self._session_factory() as db:
            result = self.rollup_hour_in(db, hour_start, now=_resolve_now(now))
            db.commit()
            return result

    def rollup_day(
        self,
        day: date,
        *,
        source: RollupSource = "raw",
        now: int | None = None,
    ) -> RollupResult:
        with self._session_factory() as db:
            result = self.rollup_day_in(db, day, source=source, now=_resolve_now(now))
            db.commit()
            return result

    def rollup_hour_in(self, db: Session, hour_start: int, *, now: int) -> RollupResult:
        start = hour_start_ms(hour_start, self.tz_name)
        end = start + HOUR_MS
        key = hour_key(start, self.tz_name)
        if end > now:
            return self._log_result(RollupResult("hour", key, start, end, "period_not_elapsed"))
        if hourly_aggregate_exists(db, hour_start_ms=start):
            return self._log_result(RollupResult("hour", key, start, end, "exists"))

        readings = fetch_raw_range(db, start_ms=start, end_ms=end)
        if not readings:
            return self._log_result(RollupResult("hour", key, start, end, "no_data"))

        summary = summarize_readings(
            readings,
            bounds=self._bounds,
            reset_baseline=self._settings.rainfall_reset_baseline,
        )
        inserted = insert_hourly_aggregate(
            db,
            hour_start_ms=start,
            hour_key=key,
            fields=summary.aggregate_fields(),
        )
        outcome: RollupOutcome = "created" if inserted else "exists"
        return self._log_result(
            RollupResult("hour", key, start, end, outcome, record_count=summary.record_count)
        )

    def rollup_day_in(
        self,
        db: Session,
        day: date,
        *,
        source: RollupSource = "raw",
        now: int,
    ) -> RollupResult:
        if source not in ("raw", "hourly"):
            raise ValueError("source must be raw|hourly")
        start, end = day_bounds(day, self.tz_name)
        key = date_key(day)
        if end > now:
            return self._log_result(
                RollupResult("day", key, start, end, "period_not_elapsed", source_tier=source)
            )
        if daily_aggregate_exists(db, date_key=key):
            return self._log_result(RollupResult("day", key, start, end, "exists", source_tier=source))

        if source == "raw":
            readings = fetch_raw_range(db, start_ms=start, end_ms=end)
            if not readings:
                return self._log_result(
                    RollupResult("day", key, start, end, "no_data", source_tier=source)
                )
            fields = summarize_readings(
                readings,
                bounds=self._bounds,
                reset_baseline=self._settings.rainfall_reset_baseline,
            ).aggregate_fields()
        else:
            hourly = fetch_hourly_range(db, start_ms=start, end_ms=end)
            if not hourly:
                return self._log_result(
                    RollupResult("day", key, start, end, "no_data", source_tier=source)
                )
            fields = combine_aggregates(hourly)

        inserted = insert_daily_aggregate(
            db,
            date_key=key,
            day_start_ms=start,
            fields=fields,
            source_tier=source,
        )
        outcome: RollupOutcome = "created" if inserted else "exists"
        return self._log_result(
            RollupResult(
                "day",
                key,
                start,
                end,
                outcome,
                record_count=int(fields["record_count"]),
                source_tier=source,
            )
        )

    def rollup_range(
        self,
        db: Session,
        *,
        start_ms: int,
        end_ms: int,
        now: int,
        cascade_missing_days: bool = False,
    ) -> RollupRunSummary:
        """Roll up every elapsed hour and day in ``[start_ms, end_ms)``.

        Commits after each created aggregate. With ``cascade_missing_days`` a day
        without raw readings is built from its hourly aggregates instead.
        """
        summary = RollupRunSummary(start_ms=int(start_ms), end_ms=int(end_ms))
        for hour in iter_hours(start_ms, end_ms, self.tz_name):
            result = self.rollup_hour_in(db, hour, now=now)
            summary.add(result)
            if result.outcome == "created":
                db.commit()

        for day, _, _ in iter_days(start_ms, max(start_ms, end_ms - 1), self.tz_name):
            result = self.rollup_day_in(db, day, source="raw", now=now)
            if result.outcome == "no_data" and cascade_missing_days:
                result = self.rollup_day_in(db, day, source="hourly", now=now)
            summary.add(result)
            if result.outcome == "created":
                db.commit()
        return summary

    def run_scheduled_rollup(self, *, now: int | None = None) -> RollupRunSummary:
        """Catch up on the last ``rollup_catchup_hours`` hours and the days they touch."""
        current = _resolve_now(now)
        start = current - self._settings.rollup_catchup_hours * HOUR_MS
        summary = self._run_recorded(
            "rollup",
            start_ms=start,
            end_ms=current,
            now=current,
            cascade_missing_days=False,
        )
        self._logger.info(
            "rollup run finished hours=%s days=%s",
            dict(summary.hours),
            dict(summary.days),
        )
        return summary

    def backfill(
        self,
        start_ms: int,
        end_ms: int,
        *,
        now: int | None = None,
    ) -> RollupRunSummary:
        current = _resolve_now(now)
        if end_ms < start_ms:
            raise ValueError("backfill end must not be before start")
        summary = self._run_recorded(
            "backfill",
            start_ms=start_ms,
            end_ms=min(end_ms, current),
            now=current,
            cascade_missing_days=True,
        )
        self._logger.info(
            "backfill finished start_ms=%s end_ms=%s hours=%s days=%s",
            start_ms,
            end_ms,
            dict(summary.hours),
            dict(summary.days),
        )
        return summary

    def backfill_days(self, days: int, *, now: int | None = None) -> RollupRunSummary:
        if days < 1:
            raise ValueError("days must be >= 1")
        current = _resolve_now(now)
        return self.backfill(current - days * DAY_MS, current, now=current)

    def _run_recorded(
        self,
        job_name: str,
        *,
        start_ms: int,
        end_ms: int,
        now: int,
        cascade_missing_days: bool,
    ) -> RollupRunSummary:
        def work(db: Session) -> tuple[int, dict[str, Any], RollupRunSummary]:
            summary = self.rollup_range(
                db,
                start_ms=start_ms,
                end_ms=end_ms,
                now=now,
                cascade_missing_days=cascade_missing_days,
            )
            return summary.created, summary.to_details(), summary

        with self._session_factory() as db:
            return run_recorded_job(db, job_name=job_name, work=work)

    def _log_result(self, result: RollupResult) -> RollupResult:
        if result.outcome == "created":
            self._logger.info(
                "rollup created period=%s key=%s records=%s source=%s",
                result.period,
                result.key,
                result.record_count,
                result.source_tier,
            )
        elif result.outcome == "no_data":
            self._logger.info("rollup no_data period=%s key=%s", result.period, result.key)
        else:
            self._logger.debug(
                "rollup skipped period=%s key=%s outcome=%s",
                result.period,
                result.key,
                result.outcome,
            )
        return result


def _resolve_now(now: int | None) -> int:
    return now_ms() if now is None else int(now)
