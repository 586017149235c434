from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Literal

from weather_backbone.core.config import Settings
from weather_backbone.services.periods import DAY_MS

Tier = Literal["raw", "hourly", "daily"]
Capability = Literal["slow", "mobile", "desktop"]

TIERS: tuple[str, ...] = ("raw", "hourly", "daily")

# (max span days, cap); the last row covers every longer span.
RECORD_CAPS: dict[str, tuple[tuple[float, int], ...]] = {
    "slow": ((28, 5000), (180, 10000), (math.inf, 15000)),
    "mobile": ((28, 8000), (180, 20000), (math.inf, 30000)),
    "desktop": ((28, 15000), (180, 40000), (math.inf, 60000)),
}

# (min span days exclusive, stride), checked top-down; the fallback row has min -1.
SAMPLING_STRIDES: dict[str, tuple[tuple[int, int], ...]] = {
    "slow": ((365, 60), (180, 30), (30, 20), (-1, 10)),
    "mobile": ((365, 60), (180, 30), (60, 15), (30, 10), (-1, 5)),
    "desktop": ((365, 30), (180, 15), (60, 10), (30, 5), (-1, 2)),
}


@dataclass(frozen=True)
class QueryRange:
    start_ms: int
    end_ms: int

    @classmethod
    def from_bounds(cls, start_ms: int, end_ms: int) -> "QueryRange":
        if end_ms < start_ms:
            raise ValueError("range end must not be before start")
        return cls(start_ms=int(start_ms), end_ms=int(end_ms))

    @classmethod
    def most_recent(cls, now_ms: int) -> "QueryRange":
        return cls(start_ms=int(now_ms), end_ms=int(now_ms))

    @property
    def is_most_recent(self) -> bool:
        return self.start_ms == self.end_ms

    @property
    def span_days(self) -> int:
        if self.is_most_recent:
            return 0
        return max(1, math.ceil((self.end_ms - self.start_ms) / DAY_MS))


@dataclass(frozen=True)
class ClientProfile:
    device: Literal["mobile", "desktop"] = "desktop"
    network: Literal["fast", "slow"] = "fast"

    @property
    def capability(self) -> Capability:
        if self.network == "slow":
            return "slow"
        if self.device == "mobile":
            return "mobile"
        return "desktop"


@dataclass(frozen=True)
class TierPolicy:
    long_horizon_days: int = 60
    medium_span_days: int = 4
    live_record_cap: int = 7

    @classmethod
    def from_settings(cls, settings: Settings) -> "TierPolicy":
        return cls(
            long_horizon_days=settings.tier_long_horizon_days,
            medium_span_days=settings.tier_medium_span_days,
            live_record_cap=settings.live_record_cap,
        )


@dataclass(frozen=True)
class TierDecision:
    tier: Tier
    record_cap: int
    sampling_stride: int
    fallbacks: tuple[Tier, ...] = ()
    live: bool = False

    @property
    def order(self) -> tuple[Tier, ...]:
        return (self.tier, *self.fallbacks)

    def stride_for(self, tier: str) -> int:
        """Aggregate tiers are never downsampled; raw uses the decided stride."""
        return self.sampling_stride if tier == "raw" else 1


def record_cap_for(span_days: int, capability: Capability) -> int:
    for max_span, cap in RECORD_CAPS[capability]:
        if span_days <= max_span:
            return cap
    return RECORD_CAPS[capability][-1][1]


def sampling_stride_for(span_days: int, capability: Capability) -> int:
    for min_span, stride in SAMPLING_STRIDES[capability]:
        if span_days > min_span:
            return max(1, stride)
    return 1


def select_tier(
    query_range: QueryRange,
    profile: ClientProfile,
    *,
    now_ms: int,
    policy: TierPolicy | None = None,
) -> TierDecision:
    policy = policy or TierPolicy()
    span = query_range.span_days
    if span == 0:
        return TierDecision(
            tier="raw",
            record_cap=policy.live_record_cap,
            sampling_stride=1,
            live=True,
        )

    capability = profile.capability
    cap = record_cap_for(span, capability)
    stride = sampling_stride_for(span, capability)
    long_horizon_start = now_ms - policy.long_horizon_days * DAY_MS

    if query_range.start_ms < long_horizon_start:
        return TierDecision(tier="daily", record_cap=cap, sampling_stride=stride, fallbacks=("hourly", "raw"))
    if span > policy.medium_span_days:
        return TierDecision(tier="hourly", record_cap=cap, sampling_stride=stride, fallbacks=("raw",))
    return TierDecision(tier="raw", record_cap=cap, sampling_stride=stride)
