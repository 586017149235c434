from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from threading import Event, Lock, RLock, Thread, current_thread
from typing import Any, Literal

from sqlalchemy.orm import sessionmaker

from weather_backbone.core.config import Settings
from weather_backbone.repositories.weather_store import fetch_latest_raw
from weather_backbone.services.aggregation import GROUP_PERIODS, ValueBounds, regroup
from weather_backbone.services.chunk_cache import (
    CancellationToken,
    ChunkCache,
    ChunkedFetcher,
    QueryCancelled,
    store_chunk_reader,
)
from weather_backbone.services.field_aliases import resolve_timestamp
from weather_backbone.services.periods import now_ms
from weather_backbone.services.tier_selector import (
    ClientProfile,
    QueryRange,
    TierDecision,
    TierPolicy,
    select_tier,
)

SeriesStatus = Literal["ok", "no_data", "cancelled"]
NO_DATA_DESCRIPTION = "No data available for this range"
CANCELLED_DESCRIPTION = "Query cancelled"

LatestReader = Callable[[int], Sequence[Mapping[str, Any]]]


@dataclass(frozen=True)
class SeriesResult:
    points: list[dict[str, Any]]
    tier_used: str | None
    sampling_stride: int
    coverage_description: str
    status: SeriesStatus
    record_cap: int
    span_days: int
    live: bool = False
    group_by: str | None = None
    fallback_steps: int = 0


class SeriesQueryService:
    """Serves series queries from the cheapest tier that has data.

    A query for a ``view_id`` cancels whatever query that view still has in flight.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        fetcher: ChunkedFetcher,
        latest_reader: LatestReader,
        clock: Callable[[], int] = now_ms,
    ):
        self._settings = settings
        self._fetcher = fetcher
        self._latest_reader = latest_reader
        self._clock = clock
        self._policy = TierPolicy.from_settings(settings)
        self._bounds = ValueBounds.from_settings(settings)
        self._logger = logging.getLogger("weather_backbone.series")
        self._views: dict[str, CancellationToken] = {}
        self._views_lock = Lock()

    @classmethod
    def from_session_factory(
        cls,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        cache: ChunkCache | None = None,
    ) -> "SeriesQueryService":
        def read_latest(limit: int) -> list[dict[str, Any]]:
            with session_factory() as db:
                return fetch_latest_raw(db, limit=limit)

        fetcher = ChunkedFetcher(
            settings=settings,
            cache=cache or ChunkCache(settings.chunk_cache_capacity),
            reader=store_chunk_reader(session_factory),
        )
        return cls(settings=settings, fetcher=fetcher, latest_reader=read_latest)

    @property
    def fetcher(self) -> ChunkedFetcher:
        return self._fetcher

    def get_series(
        self,
        query_range: QueryRange,
        profile: ClientProfile | None = None,
        *,
        view_id: str | None = None,
        group_by: str | None = None,
        now: int | None = None,
    ) -> SeriesResult:
        if group_by is not None and group_by not in GROUP_PERIODS:
            raise ValueError(f"group_by must be one of {'|'.join(GROUP_PERIODS)}")
        current = self._clock() if now is None else int(now)
        decision = select_tier(query_range, profile or ClientProfile(), now_ms=current, policy=self._policy)

        token = self._register_view(view_id)
        try:
            if decision.live:
                points = [dict(record) for record in self._latest_reader(decision.record_cap)]
                return self.live_result(points, decision=decision)
            tier_used, points = self._fetch_with_fallback(query_range, decision, token)
        except QueryCancelled:
            self._logger.info("series query cancelled view_id=%s span_days=%s", view_id, query_range.span_days)
            return SeriesResult(
                points=[],
                tier_used=None,
                sampling_stride=decision.stride_for(decision.tier),
                coverage_description=CANCELLED_DESCRIPTION,
                status="cancelled",
                record_cap=decision.record_cap,
                span_days=query_range.span_days,
                group_by=group_by,
            )
        finally:
            self._release_view(view_id, token)

        if tier_used is None:
            return SeriesResult(
                points=[],
                tier_used=None,
                sampling_stride=decision.stride_for(decision.tier),
                coverage_description=NO_DATA_DESCRIPTION,
                status="no_data",
                record_cap=decision.record_cap,
                span_days=query_range.span_days,
                group_by=group_by,
            )

        if len(points) > decision.record_cap:
            points = points[-decision.record_cap:]
        stride = decision.stride_for(tier_used)
        description = coverage_description(
            count=len(points),
            span_days=query_range.span_days,
            tier=tier_used,
            stride=stride,
        )
        if group_by is not None:
            output = regroup(
                points,
                tier=tier_used,
                period=group_by,
                tz_name=self._settings.station_timezone,
                bounds=self._bounds,
                reset_baseline=self._settings.rainfall_reset_baseline,
            )
        else:
            output = [dict(point) for point in points]

        return SeriesResult(
            points=output,
            tier_used=tier_used,
            sampling_stride=stride,
            coverage_description=description,
            status="ok",
            record_cap=decision.record_cap,
            span_days=query_range.span_days,
            group_by=group_by,
            fallback_steps=decision.order.index(tier_used),
        )

    def cancel_view(self, view_id: str) -> bool:
        with self._views_lock:
            token = self._views.pop(view_id, None)
        if token is None:
            return False
        token.cancel()
        return True

    def latest(self, *, limit: int | None = None) -> SeriesResult:
        cap = limit or self._policy.live_record_cap
        decision = TierDecision(tier="raw", record_cap=cap, sampling_stride=1, live=True)
        points = [dict(record) for record in self._latest_reader(cap)]
        return self.live_result(points, decision=decision)

    def live_result(self, points: list[dict[str, Any]], *, decision: TierDecision) -> SeriesResult:
        if not points:
            return SeriesResult(
                points=[],
                tier_used=None,
                sampling_stride=1,
                coverage_description=NO_DATA_DESCRIPTION,
                status="no_data",
                record_cap=decision.record_cap,
                span_days=0,
                live=True,
            )
        return SeriesResult(
            points=points,
            tier_used="raw",
            sampling_stride=1,
            coverage_description=f"{len(points)} live readings, real-time",
            status="ok",
            record_cap=decision.record_cap,
            span_days=0,
            live=True,
        )

    def subscribe_latest(
        self,
        callback: Callable[[SeriesResult], None],
        *,
        limit: int | None = None,
        interval_seconds: float | None = None,
    ) -> "LiveSubscription":
        """Return an unstarted handle polling the newest readings; call ``start()``."""
        return LiveSubscription(
            poll=lambda: self.latest(limit=limit),
            callback=callback,
            interval_seconds=interval_seconds or self._settings.live_poll_seconds,
        )

    def _fetch_with_fallback(
        self,
        query_range: QueryRange,
        decision: TierDecision,
        token: CancellationToken,
    ) -> tuple[str | None, list[Mapping[str, Any]]]:
        for tier in decision.order:
            points = self._fetcher.fetch_range(
                query_range,
                tier=tier,
                stride=decision.stride_for(tier),
                cancel_token=token,
            )
            if points:
                if tier != decision.tier:
                    self._logger.info(
                        "series tier fallback preferred=%s used=%s span_days=%s",
                        decision.tier,
                        tier,
                        query_range.span_days,
                    )
                return tier, points
        return None, []

    def _register_view(self, view_id: str | None) -> CancellationToken:
        token = CancellationToken()
        if view_id is None:
            return token
        with self._views_lock:
            previous = self._views.get(view_id)
            self._views[view_id] = token
        if previous is not None:
            previous.cancel()
        return token

    def _release_view(self, view_id: str | None, token: CancellationToken) -> None:
        if view_id is None:
            return
        with self._views_lock:
            if self._views.get(view_id) is token:
                del self._views[view_id]


def coverage_description(*, count: int, span_days: int, tier: str, stride: int) -> str:
    description = f"{count} readings, {span_days}-day span, {tier} resolution"
    if stride > 1:
        description += f", every {stride} readings"
    return description


@dataclass
class _SubscriptionState:
    active: bool = False
    deliveries: int = 0
    last_signature: tuple[Any, ...] | None = None
    last_error: str | None = None
    thread: Thread | None = field(default=None, repr=False)
    stop_event: Event | None = field(default=None, repr=False)


class LiveSubscription:
    """Polls for the newest readings and hands changed snapshots to ``callback``.

    Delivery happens under the subscription lock and re-checks the active flag,
    so once ``stop()`` returns no further callback runs.
    """

    def __init__(
        self,
        *,
        poll: Callable[[], SeriesResult],
        callback: Callable[[SeriesResult], None],
        interval_seconds: float,
    ):
        self._poll = poll
        self._callback = callback
        self._interval_seconds = max(0.01, float(interval_seconds))
        self._lock = RLock()
        self._state = _SubscriptionState()
        self._logger = logging.getLogger("weather_backbone.live")

    @property
    def active(self) -> bool:
        with self._lock:
            return self._state.active

    @property
    def deliveries(self) -> int:
        with self._lock:
            return self._state.deliveries

    @property
    def last_error(self) -> str | None:
        with self._lock:
            return self._state.last_error

    def start(self) -> None:
        with self._lock:
            if self._state.active:
                return
            self._state.active = True
            stop_event = Event()
            thread = Thread(target=self._loop, args=(stop_event,), name="live-subscription", daemon=True)
            self._state.thread = thread
            self._state.stop_event = stop_event
        thread.start()
        self._logger.info("live subscription started interval_seconds=%s", self._interval_seconds)

    def stop(self) -> None:
        with self._lock:
            was_active = self._state.active
            self._state.active = False
            if self._state.stop_event is not None:
                self._state.stop_event.set()
            thread = self._state.thread
            self._state.thread = None
            self._state.stop_event = None
        if thread is not None and thread is not current_thread() and thread.is_alive():
            thread.join(timeout=5.0)
        if was_active:
            self._logger.info("live subscription stopped deliveries=%s", self.deliveries)

    def poll_once(self) -> bool:
        """Poll once and deliver if the snapshot changed; returns whether a callback ran."""
        if not self.active:
            return False
        snapshot = self._poll()
        signature = tuple(resolve_timestamp(point) for point in snapshot.points)
        with self._lock:
            if not self._state.active or signature == self._state.last_signature:
                return False
            self._state.last_signature = signature
            self._callback(snapshot)
            self._state.deliveries += 1
            return True

    def _loop(self, stop_event: Event) -> None:
        while not stop_event.is_set():
            try:
                self.poll_once()
                with self._lock:
                    self._state.last_error = None
            except Exception as exc:
                self._logger.exception("live subscription poll failed")
                with self._lock:
                    self._state.last_error = str(exc)
            stop_event.wait(self._interval_seconds)
