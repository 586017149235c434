from __future__ import annotations

import io
import json
from contextlib import redirect_stdout
from unittest import TestCase
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from weather_backbone.jobs import call_with_retry, main
from weather_backbone.repositories.job_runs import get_job_snapshot

from tests.helpers import make_settings, memory_session_factory, reading, seed_readings, utc_ms


def _transient_error() -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception("server closed the connection"))


class CallWithRetryTests(TestCase):
    def test_backs_off_exponentially_then_succeeds(self) -> None:
        delays: list[float] = []
        outcomes = [_transient_error(), _transient_error(), "done"]

        def flaky() -> str:
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        result = call_with_retry(action="rollup", call=flaky, max_attempts=3, sleep=delays.append)

        self.assertEqual(result, "done")
        self.assertEqual(delays, [2.0, 4.0])

    def test_reraises_after_last_attempt(self) -> None:
        delays: list[float] = []
        calls: list[int] = []

        def always_down() -> None:
            calls.append(1)
            raise _transient_error()

        with self.assertRaises(OperationalError):
            call_with_retry(action="retention", call=always_down, max_attempts=4, sleep=delays.append)

        self.assertEqual(len(calls), 4)
        self.assertEqual(delays, [2.0, 4.0, 8.0])

    def test_non_transient_errors_are_not_retried(self) -> None:
        calls: list[int] = []

        def broken() -> None:
            calls.append(1)
            raise ValueError("bad input")

        with self.assertRaises(ValueError):
            call_with_retry(action="stats", call=broken, sleep=lambda _: None)
        self.assertEqual(len(calls), 1)


class JobsCliTests(TestCase):
    def setUp(self) -> None:
        self.session_factory = memory_session_factory()
        self.settings = make_settings(job_retry_backoff_seconds=0.0)

    def _run(self, argv: list[str]) -> tuple[int, str]:
        output = io.StringIO()
        with redirect_stdout(output):
            code = main(argv, settings=self.settings, session_factory=self.session_factory)
        return code, output.getvalue()

    def test_rollup_command_records_job(self) -> None:
        code, output = self._run(["rollup"])

        self.assertEqual(code, 0)
        self.assertIn("hours", json.loads(output))
        with self.session_factory() as db:
            self.assertEqual(get_job_snapshot(db, job_name="rollup").status, "ok")

    def test_stats_command_prints_counts(self) -> None:
        seed_readings(self.session_factory, [reading(utc_ms(2026, 6, 1, hour)) for hour in range(3)])

        code, output = self._run(["stats"])

        self.assertEqual(code, 0)
        self.assertEqual(json.loads(output)["raw_records"], 3)

    def test_backfill_rejects_non_positive_days(self) -> None:
        code, _ = self._run(["backfill", "--days", "0"])

        self.assertEqual(code, 2)

    def test_failure_returns_exit_code_one(self) -> None:
        with patch(
            "weather_backbone.services.retention.RetentionManager.run_retention",
            side_effect=RuntimeError("disk full"),
        ):
            with self.assertLogs("weather_backbone.jobs", level="ERROR"):
                code, output = self._run(["retention"])

        self.assertEqual(code, 1)
        self.assertEqual(output, "")
