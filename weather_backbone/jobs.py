from __future__ import annotations

import argparse
import json
import logging
import time
from collections.abc import Callable
from dataclasses import asdict
from typing import Any, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from weather_backbone.core.config import Settings, get_settings
from weather_backbone.core.logging import configure_logging
from weather_backbone.services.retention import RetentionManager, collect_storage_stats
from weather_backbone.services.rollup import RollupEngine

T = TypeVar("T")

logger = logging.getLogger("weather_backbone.jobs")


def call_with_retry(
    *,
    action: str,
    call: Callable[[], T],
    max_attempts: int = 3,
    initial_delay_seconds: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Retry ``call`` on transient store errors with exponential backoff capped at 8s."""
    attempts = max(1, int(max_attempts))
    delay_seconds = max(0.0, float(initial_delay_seconds))

    for attempt in range(1, attempts + 1):
        try:
            return call()
        except OperationalError as exc:
            if attempt >= attempts:
                raise
            logger.warning(
                "transient store failure action=%s attempt=%s/%s error=%s",
                action,
                attempt,
                attempts,
                str(exc).splitlines()[0] if str(exc) else type(exc).__name__,
            )
            if delay_seconds > 0.0:
                sleep(delay_seconds)
            delay_seconds = min(8.0, delay_seconds * 2.0 if delay_seconds > 0.0 else 0.5)
    raise RuntimeError(f"retry aborted before first attempt for action={action}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="weather-backbone")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("rollup", help="Roll up elapsed hours and days in the catch-up window")
    subparsers.add_parser("retention", help="Roll up expiring days, then delete expired raw and hourly data")
    backfill = subparsers.add_parser("backfill", help="Roll up every elapsed period of the last N days")
    backfill.add_argument("--days", type=int, default=7, help="Days to backfill (default: 7)")
    subparsers.add_parser("stats", help="Print storage statistics as JSON")
    return parser


def main(
    argv: list[str] | None = None,
    *,
    settings: Settings | None = None,
    session_factory: sessionmaker | None = None,
) -> int:
    args = build_parser().parse_args(argv)
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    if session_factory is None:
        from weather_backbone.db.session import SessionLocal

        session_factory = SessionLocal

    rollup_engine = RollupEngine(settings=settings, session_factory=session_factory)
    retry = {
        "max_attempts": settings.job_retry_attempts,
        "initial_delay_seconds": settings.job_retry_backoff_seconds,
    }

    try:
        if args.command == "rollup":
            summary = call_with_retry(action="rollup", call=rollup_engine.run_scheduled_rollup, **retry)
            _print_json(summary.to_details())
        elif args.command == "retention":
            manager = RetentionManager(
                settings=settings,
                session_factory=session_factory,
                rollup_engine=rollup_engine,
            )
            result = call_with_retry(action="retention", call=manager.run_retention, **retry)
            _print_json(result.to_details())
        elif args.command == "backfill":
            if args.days < 1:
                logger.error("backfill requires --days >= 1 days=%s", args.days)
                return 2
            summary = call_with_retry(
                action="backfill",
                call=lambda: rollup_engine.backfill_days(args.days),
                **retry,
            )
            _print_json(summary.to_details())
        elif args.command == "stats":

            def read_stats() -> dict[str, Any]:
                with session_factory() as db:
                    return asdict(collect_storage_stats(db, settings=settings))

            _print_json(call_with_retry(action="stats", call=read_stats, **retry))
    except Exception:
        logger.exception("job failed command=%s", args.command)
        return 1
    return 0


def _print_json(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


if __name__ == "__main__":
    import sys

    raise SystemExit(main(sys.argv[1:]))
