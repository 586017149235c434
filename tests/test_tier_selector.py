from __future__ import annotations

from unittest import TestCase

from weather_backbone.services.periods import DAY_MS, HOUR_MS
from weather_backbone.services.tier_selector import (
    ClientProfile,
    QueryRange,
    TierPolicy,
    record_cap_for,
    sampling_stride_for,
    select_tier,
)

from tests.helpers import utc_ms

NOW = utc_ms(2026, 9, 1, 12)
DESKTOP = ClientProfile()
MOBILE = ClientProfile(device="mobile")
SLOW_MOBILE = ClientProfile(device="mobile", network="slow")


class QueryRangeTests(TestCase):
    def test_span_days_counts_started_days(self) -> None:
        self.assertEqual(QueryRange.from_bounds(NOW - HOUR_MS, NOW).span_days, 1)
        self.assertEqual(QueryRange.from_bounds(NOW - 7 * DAY_MS, NOW).span_days, 7)
        self.assertEqual(QueryRange.from_bounds(NOW - 7 * DAY_MS - 1, NOW).span_days, 8)

    def test_most_recent_query_has_zero_span(self) -> None:
        query_range = QueryRange.most_recent(NOW)

        self.assertTrue(query_range.is_most_recent)
        self.assertEqual(query_range.span_days, 0)

    def test_reversed_bounds_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            QueryRange.from_bounds(NOW, NOW - 1)


class ClientProfileTests(TestCase):
    def test_capability(self) -> None:
        self.assertEqual(DESKTOP.capability, "desktop")
        self.assertEqual(MOBILE.capability, "mobile")
        self.assertEqual(SLOW_MOBILE.capability, "slow")
        self.assertEqual(ClientProfile(network="slow").capability, "slow")


class SelectTierTests(TestCase):
    def test_most_recent_query_is_live_raw_with_small_cap(self) -> None:
        decision = select_tier(QueryRange.most_recent(NOW), DESKTOP, now_ms=NOW)

        self.assertEqual(decision.tier, "raw")
        self.assertEqual(decision.sampling_stride, 1)
        self.assertEqual(decision.record_cap, 7)
        self.assertTrue(decision.live)

    def test_two_year_query_prefers_daily_with_strict_fallbacks(self) -> None:
        decision = select_tier(QueryRange.from_bounds(NOW - 730 * DAY_MS, NOW), DESKTOP, now_ms=NOW)

        self.assertEqual(decision.tier, "daily")
        self.assertEqual(decision.order, ("daily", "hourly", "raw"))
        self.assertFalse(decision.live)

    def test_medium_span_inside_horizon_prefers_hourly(self) -> None:
        decision = select_tier(QueryRange.from_bounds(NOW - 14 * DAY_MS, NOW), MOBILE, now_ms=NOW)

        self.assertEqual(decision.tier, "hourly")
        self.assertEqual(decision.fallbacks, ("raw",))
        self.assertEqual(decision.stride_for("hourly"), 1)
        self.assertEqual(decision.stride_for("raw"), 5)

    def test_short_recent_span_uses_raw(self) -> None:
        decision = select_tier(QueryRange.from_bounds(NOW - 2 * DAY_MS, NOW), DESKTOP, now_ms=NOW)

        self.assertEqual(decision.tier, "raw")
        self.assertEqual(decision.fallbacks, ())
        self.assertEqual(decision.sampling_stride, 2)
        self.assertEqual(decision.record_cap, 15000)

    def test_short_span_in_the_distant_past_still_prefers_daily(self) -> None:
        start = NOW - 200 * DAY_MS
        decision = select_tier(QueryRange.from_bounds(start, start + DAY_MS), DESKTOP, now_ms=NOW)

        self.assertEqual(decision.tier, "daily")

    def test_policy_thresholds_are_tunable(self) -> None:
        policy = TierPolicy(long_horizon_days=10, medium_span_days=1, live_record_cap=3)

        decision = select_tier(QueryRange.from_bounds(NOW - 2 * DAY_MS, NOW), DESKTOP, now_ms=NOW, policy=policy)
        live = select_tier(QueryRange.most_recent(NOW), DESKTOP, now_ms=NOW, policy=policy)

        self.assertEqual(decision.tier, "hourly")
        self.assertEqual(live.record_cap, 3)


class LookupTableTests(TestCase):
    def test_weaker_clients_and_longer_spans_get_larger_strides(self) -> None:
        for capability in ("slow", "mobile", "desktop"):
            strides = [sampling_stride_for(span, capability) for span in (1, 31, 61, 181, 366)]
            self.assertEqual(strides, sorted(strides))
            self.assertTrue(all(stride >= 1 for stride in strides))

        for span in (1, 45, 400):
            self.assertGreaterEqual(sampling_stride_for(span, "slow"), sampling_stride_for(span, "mobile"))
            self.assertGreaterEqual(sampling_stride_for(span, "mobile"), sampling_stride_for(span, "desktop"))

    def test_stride_table_values(self) -> None:
        self.assertEqual(sampling_stride_for(400, "desktop"), 30)
        self.assertEqual(sampling_stride_for(90, "mobile"), 15)
        self.assertEqual(sampling_stride_for(10, "slow"), 10)

    def test_record_caps(self) -> None:
        self.assertEqual(record_cap_for(28, "slow"), 5000)
        self.assertEqual(record_cap_for(29, "mobile"), 20000)
        self.assertEqual(record_cap_for(730, "desktop"), 60000)
